"""Anthropic Messages API handler.

Differs from the OpenAI family in three ways: the system prompt is a
separate ``system`` parameter, content must be plain text, and the
stream is made of typed events.  ``text_delta`` and ``thinking_delta``
events are translated to ``ChatChunk`` and ``message_stop`` becomes a
final chunk with ``finish_reason="stop"``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any, Optional

from anthropic import AsyncAnthropic

from chatpipe.configs.models import ModelConfig
from chatpipe.core.pipeline.context import ChatUser, Message
from chatpipe.core.stream.processor import ChatChunk

from .base import Completion, ModelHandler, ProviderResult, fold_system_messages

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 8192


class AnthropicHandler(ModelHandler):
    name = "AnthropicHandler"

    def __init__(self, client: AsyncAnthropic) -> None:
        self._client = client

    def prepare_messages(
        self,
        messages: list[Message],
        system_prompt: Optional[str],
        model: ModelConfig,
    ) -> list[dict[str, Any]]:
        """Plain-text turns, led by one folded system entry when there is a prompt.

        ``build_request_params`` lifts that entry into the ``system`` parameter.
        """
        system, conversation = fold_system_messages(messages, system_prompt)
        prepared: list[dict[str, Any]] = []
        if system:
            prepared.append({"role": "system", "content": system})
        for message in conversation:
            content = message.text()
            if content:
                prepared.append({"role": message.role, "content": content})
        return prepared

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
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        params: dict[str, Any] = {
            "model": model_id,
            "messages": [m for m in messages if m["role"] != "system"],
            "max_tokens": model.token_limit or DEFAULT_MAX_TOKENS,
            "metadata": {"user_id": user.id},
            "stream": stream,
        }
        if system:
            params["system"] = system
        if model.supports_temperature is not False:
            params["temperature"] = temperature
        return params

    async def execute_request(self, params: dict[str, Any]) -> ProviderResult:
        request = {k: v for k, v in params.items() if k != "stream"}
        logger.debug(
            "Anthropic request: model=%s messages=%d system_len=%d",
            request["model"],
            len(request["messages"]),
            len(request.get("system", "")),
        )
        if params.get("stream"):
            return self._stream(request)

        response = await self._client.messages.create(**request)
        text = "".join(
            block.text for block in response.content if block.type == "text"
        )
        thinking = "".join(
            block.thinking for block in response.content if block.type == "thinking"
        )
        return Completion(text=text, thinking=thinking or None)

    async def _stream(self, request: dict[str, Any]) -> AsyncIterator[ChatChunk]:
        async with self._client.messages.stream(**request) as stream:
            async for event in stream:
                if event.type == "content_block_delta":
                    delta = event.delta
                    if delta.type == "text_delta" and delta.text:
                        yield ChatChunk(content=delta.text)
                    elif delta.type == "thinking_delta" and delta.thinking:
                        yield ChatChunk(thinking=delta.thinking)
                elif event.type == "message_stop":
                    yield ChatChunk(finish_reason="stop")
