"""OpenAI-compatible endpoints (Llama, Grok, DeepSeek ...)."""

from typing import Any, Optional

from chatpipe.configs.models import ModelConfig
from chatpipe.configs.prompts import DEFAULT_SYSTEM_PROMPT
from chatpipe.core.pipeline.context import ChatUser, Message

from .base import OpenAIProtocolHandler, fold_system_messages, to_openai_message


class StandardOpenAIHandler(OpenAIProtocolHandler):
    name = "StandardOpenAIHandler"

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
            "stream": stream,
            "max_tokens": model.token_limit,
        }
        if model.supports_temperature is not False:
            params["temperature"] = temperature
        return params


class MergeSystemPromptHandler(StandardOpenAIHandler):
    """For providers that reject the ``system`` role.

    The system prompt is folded into the first user message instead.
    """

    name = "MergeSystemPromptHandler"

    def prepare_messages(
        self,
        messages: list[Message],
        system_prompt: Optional[str],
        model: ModelConfig,
    ) -> list[dict[str, Any]]:
        prompt, conversation = fold_system_messages(
            messages, system_prompt or DEFAULT_SYSTEM_PROMPT
        )
        prepared: list[dict[str, Any]] = []
        merged = False
        for message in conversation:
            payload = to_openai_message(message)
            if not merged and message.role == "user":
                payload = _prefix_content(payload, prompt)
                merged = True
            prepared.append(payload)
        if not merged:
            prepared.insert(0, {"role": "user", "content": prompt})
        return prepared


def _prefix_content(payload: dict[str, Any], prefix: str) -> dict[str, Any]:
    content = payload["content"]
    if isinstance(content, str):
        return {**payload, "content": f"{prefix}\n\n{content}"}
    return {**payload, "content": [{"type": "text", "text": prefix}, *content]}
