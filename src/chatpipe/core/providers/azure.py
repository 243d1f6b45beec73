import json
from typing import Any, Optional

from chatpipe.configs.models import ModelConfig
from chatpipe.configs.prompts import DEFAULT_SYSTEM_PROMPT
from chatpipe.core.pipeline.context import ChatUser, Message

from .base import OpenAIProtocolHandler, to_openai_message

DEFAULT_MAX_COMPLETION_TOKENS = 16384


class AzureOpenAIHandler(OpenAIProtocolHandler):
    """Azure OpenAI deployments: reasoning effort and verbosity aware."""

    name = "AzureOpenAIHandler"

    def prepare_messages(
        self,
        messages: list[Message],
        system_prompt: Optional[str],
        model: ModelConfig,
    ) -> list[dict[str, Any]]:
        return [
            {"role": "system", "content": system_prompt or DEFAULT_SYSTEM_PROMPT},
            *(to_openai_message(m) for m in messages),
        ]

    def build_request_params(
        self,
        model_id: str,
        messages: list[dict[str, Any]],
        temperature: float,
        user: ChatUser,
        stream: bool,
        model: ModelConfig,
        reasoning_effort: Optional[str] = None,
        verbosity: Optional[str] = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "model": model_id,
            "messages": messages,
            "user": json.dumps(user.model_dump(exclude_none=True)),
            "stream": stream,
            "max_completion_tokens": model.token_limit or DEFAULT_MAX_COMPLETION_TOKENS,
        }
        if model.supports_temperature is not False:
            params["temperature"] = temperature
        if model.supports_reasoning_effort and reasoning_effort:
            params["reasoning_effort"] = reasoning_effort
        if model.supports_verbosity and verbosity:
            params["verbosity"] = verbosity
        return params
