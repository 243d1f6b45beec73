"""Provider handler strategy.

A ``ModelHandler`` shapes messages and request parameters for one
provider family and executes the call.  Streaming results are always
normalized to ``ChatChunk`` so the stream processor is provider
agnostic; non-streaming results become a ``Completion``.

Every OpenAI-protocol handler (Azure, OpenAI-compatible, merged system
prompt) shares ``OpenAIProtocolHandler.execute_request``.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, ClassVar, Optional, Union

from openai import AsyncOpenAI
from openai.types.chat import ChatCompletionChunk

from chatpipe.configs.models import ModelConfig
from chatpipe.core.pipeline.context import ChatUser, Message
from chatpipe.core.stream.processor import ChatChunk

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Completion:
    """A non-streamed model answer."""

    text: str
    thinking: Optional[str] = None


ProviderResult = Union[AsyncIterator[ChatChunk], Completion]


def to_openai_message(message: Message) -> dict[str, Any]:
    if isinstance(message.content, str):
        return {"role": message.role, "content": message.content}
    return {
        "role": message.role,
        "content": [block.model_dump(exclude_none=True) for block in message.content],
    }


def fold_system_messages(
    messages: list[Message], system_prompt: Optional[str]
) -> tuple[str, list[Message]]:
    """Move in-conversation system messages into the system prompt.

    Enrichers inject sources and file context as system messages; this is
    for providers that only accept a single system prompt.
    """
    extra = [m.text() for m in messages if m.role == "system"]
    prompt = "\n\n".join(p for p in [system_prompt or "", *extra] if p)
    return prompt, [m for m in messages if m.role != "system"]


class ModelHandler(ABC):
    """Per-provider message shaping, parameter building and execution."""

    name: ClassVar[str]

    @abstractmethod
    def prepare_messages(
        self,
        messages: list[Message],
        system_prompt: Optional[str],
        model: ModelConfig,
    ) -> list[dict[str, Any]]: ...

    @abstractmethod
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
    ) -> dict[str, Any]: ...

    @abstractmethod
    async def execute_request(self, params: dict[str, Any]) -> ProviderResult: ...


# ---------------------------------------------------------------------------
# Shared OpenAI-protocol execution
# ---------------------------------------------------------------------------


async def iter_openai_chunks(
    stream: AsyncIterator[ChatCompletionChunk],
) -> AsyncIterator[ChatChunk]:
    """Normalize ``chat.completions`` stream chunks to ``ChatChunk``."""
    async for chunk in stream:
        if not chunk.choices:
            continue
        choice = chunk.choices[0]
        delta = choice.delta
        content = (delta.content or "") if delta else ""
        # DeepSeek-style reasoning arrives beside the content
        thinking = (getattr(delta, "reasoning_content", None) or "") if delta else ""
        if content or thinking or choice.finish_reason:
            yield ChatChunk(
                content=content,
                thinking=thinking,
                finish_reason=choice.finish_reason,
            )


class OpenAIProtocolHandler(ModelHandler):
    """Base for handlers that talk ``chat.completions``."""

    def __init__(self, client: AsyncOpenAI) -> None:
        self._client = client

    async def execute_request(self, params: dict[str, Any]) -> ProviderResult:
        start = time.perf_counter()
        response = await self._client.chat.completions.create(**params)
        logger.debug(
            "%s chat.completions.create: %.1fms",
            self.name,
            (time.perf_counter() - start) * 1000,
        )
        if params.get("stream"):
            return iter_openai_chunks(response)
        message = response.choices[0].message if response.choices else None
        return Completion(text=(message.content if message else None) or "")
