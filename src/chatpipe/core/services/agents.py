"""Agent execution: threads, messages, runs and files.

``AgentBackend`` is the boundary to the hosted agent service.  The
OpenAI Assistants implementation normalizes run-stream events into
``AgentEvent`` values so the capability stream handlers never see SDK
types.  ``AgentChatService`` drives one turn: reuse or create the
thread, post the last message, start the run and hand the event stream
to the selected capability handler.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Union

from openai import AsyncOpenAI

from chatpipe.configs.models import ModelConfig
from chatpipe.core.capabilities import (
    AgentEvent,
    AgentStreamContext,
    CapabilityKind,
    create_capability_stream,
    select_capability,
)
from chatpipe.core.capabilities.events import EVENT_DONE
from chatpipe.core.errors import ErrorCode, PipelineError
from chatpipe.core.pipeline.context import (
    AgentCapabilities,
    ChatUser,
    FileUrlBlock,
    ImageUrlBlock,
    Message,
    TextBlock,
)
from chatpipe.core.stream.metadata import Citation, parse_metadata
from chatpipe.infra.logging import sanitize_for_log
from chatpipe.infra.telemetry import (
    ATTR_AGENT_CAPABILITY,
    ATTR_AGENT_ID,
    ATTR_AGENT_THREAD_ID,
    ATTR_MODEL_ID,
    SPAN_AGENT_EXECUTE,
    tracer,
)

logger = logging.getLogger(__name__)

AgentContent = Union[str, list[dict[str, Any]]]

# ---------------------------------------------------------------------------
# Backend boundary
# ---------------------------------------------------------------------------


class AgentBackend(Protocol):
    async def create_thread(self) -> str: ...

    async def create_message(
        self,
        thread_id: str,
        content: AgentContent,
        attachments: Optional[list[dict[str, Any]]] = None,
    ) -> None: ...

    def stream_run(
        self,
        thread_id: str,
        agent_id: str,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[AgentEvent]: ...

    async def upload_file(
        self, filename: str, data: bytes, purpose: str = "assistants"
    ) -> str: ...

    async def download_file(self, file_id: str) -> bytes: ...

    async def delete_file(self, file_id: str) -> None: ...


class OpenAIAssistantsBackend:
    """``AgentBackend`` over the OpenAI / Azure OpenAI Assistants API."""

    def __init__(self, client: AsyncOpenAI) -> None:
        self._client = client

    async def create_thread(self) -> str:
        thread = await self._client.beta.threads.create()
        return thread.id

    async def create_message(
        self,
        thread_id: str,
        content: AgentContent,
        attachments: Optional[list[dict[str, Any]]] = None,
    ) -> None:
        kwargs: dict[str, Any] = {}
        if attachments:
            kwargs["attachments"] = attachments
        await self._client.beta.threads.messages.create(
            thread_id, role="user", content=content, **kwargs
        )

    async def stream_run(
        self,
        thread_id: str,
        agent_id: str,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[AgentEvent]:
        kwargs: dict[str, Any] = {}
        if temperature is not None:
            kwargs["temperature"] = temperature
        async with self._client.beta.threads.runs.stream(
            thread_id=thread_id, assistant_id=agent_id, **kwargs
        ) as stream:
            async for event in stream:
                data = event.data.model_dump() if hasattr(event.data, "model_dump") else {}
                yield AgentEvent(event=event.event, data=data)
        yield AgentEvent(event=EVENT_DONE)

    async def upload_file(
        self, filename: str, data: bytes, purpose: str = "assistants"
    ) -> str:
        uploaded = await self._client.files.create(file=(filename, data), purpose=purpose)
        return uploaded.id

    async def download_file(self, file_id: str) -> bytes:
        response = await self._client.files.content(file_id)
        return response.content

    async def delete_file(self, file_id: str) -> None:
        await self._client.files.delete(file_id)


# ---------------------------------------------------------------------------
# Message conversion
# ---------------------------------------------------------------------------


def to_agent_content(message: Message) -> AgentContent:
    """Convert a chat message for an agent thread.

    Attachments the agent cannot read directly become a text note.
    """
    if isinstance(message.content, str):
        return message.content
    parts: list[dict[str, Any]] = []
    for block in message.content:
        if isinstance(block, TextBlock):
            parts.append({"type": "text", "text": block.text})
        elif isinstance(block, ImageUrlBlock):
            parts.append(
                {
                    "type": "image_url",
                    "image_url": {
                        "url": block.image_url.url,
                        "detail": block.image_url.detail,
                    },
                }
            )
        elif isinstance(block, FileUrlBlock):
            parts.append(
                {
                    "type": "text",
                    "text": f"[File attached: {block.original_filename or 'file'}]",
                }
            )
    return parts


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WebSearchResult:
    text: str
    citations: list[Citation] = field(default_factory=list)


class AgentChatService:
    def __init__(self, backend: Optional[AgentBackend]) -> None:
        self._backend = backend

    @property
    def available(self) -> bool:
        return self._backend is not None

    def _require_backend(self) -> AgentBackend:
        if self._backend is None:
            raise PipelineError.critical(
                "Agent backend is not configured", ErrorCode.AGENT_FAILED
            )
        return self._backend

    async def run(
        self,
        *,
        agent_id: str,
        model: ModelConfig,
        message: Message,
        thread_id: Optional[str] = None,
        temperature: Optional[float] = None,
        capabilities: Optional[AgentCapabilities] = None,
    ) -> tuple[AsyncIterator[str], AgentStreamContext]:
        """Start one agent turn and return its processed text stream."""
        backend = self._require_backend()
        kind = select_capability(capabilities)

        with tracer.start_as_current_span(SPAN_AGENT_EXECUTE) as span:
            span.set_attribute(ATTR_AGENT_ID, agent_id)
            span.set_attribute(ATTR_MODEL_ID, model.id)
            span.set_attribute(ATTR_AGENT_CAPABILITY, kind.value)

            is_new_thread = not thread_id
            if not thread_id:
                thread_id = await backend.create_thread()
            span.set_attribute(ATTR_AGENT_THREAD_ID, thread_id)

            uploaded = ()
            if kind is CapabilityKind.CODE_INTERPRETER and capabilities is not None:
                uploaded = tuple(capabilities.code_interpreter.uploaded_files)
                await backend.create_message(
                    thread_id,
                    message.text(),
                    attachments=[
                        {"file_id": f.id, "tools": [{"type": "code_interpreter"}]}
                        for f in uploaded
                    ],
                )
            else:
                await backend.create_message(thread_id, to_agent_content(message))

            context = AgentStreamContext(
                thread_id=thread_id,
                is_new_thread=is_new_thread,
                started_at=time.monotonic(),
                uploaded_files=uploaded,
            )
            events = backend.stream_run(thread_id, agent_id, temperature)

        logger.info(
            "Agent run started: agent=%s thread=%s new=%s capability=%s",
            sanitize_for_log(agent_id),
            sanitize_for_log(thread_id),
            is_new_thread,
            kind.value,
        )
        return create_capability_stream(kind, events, context), context

    async def execute_web_search(
        self, query: str, model: ModelConfig, user: ChatUser
    ) -> WebSearchResult:
        """Run a grounded search on a fresh thread and collect the answer."""
        if not model.agent_id:
            raise PipelineError.error(
                f"Model {model.id} has no agent configured for web search",
                ErrorCode.AGENT_FAILED,
            )
        stream, _ = await self.run(
            agent_id=model.agent_id,
            model=model,
            message=Message(role="user", content=query),
        )
        chunks = [chunk async for chunk in stream]
        text, metadata = parse_metadata("".join(chunks))
        citations = metadata.citations if metadata else []
        logger.info(
            "Web search for user %s: %d chars, %d citation(s)",
            sanitize_for_log(user.id),
            len(text),
            len(citations),
        )
        return WebSearchResult(text=text.strip(), citations=citations)
