"""Shared fixtures: a minimal chat context factory."""

from __future__ import annotations

from typing import Any

import pytest

from chatpipe.configs.models import ModelConfig
from chatpipe.core.pipeline.context import ChatContext, ChatUser, Message


@pytest.fixture
def user() -> ChatUser:
    return ChatUser(id="user-1", email="sam@example.org", name="Sam")


@pytest.fixture
def make_context(user):
    """Build a ``ChatContext`` with sensible defaults; override any field."""

    def _make(
        text: str | list[dict[str, Any]] = "Hello",
        *,
        model: ModelConfig | None = None,
        messages: list[Message] | None = None,
        **changes: Any,
    ) -> ChatContext:
        model = model or ModelConfig(id="gpt-5.2-chat", name="GPT-5.2 Chat")
        if messages is None:
            messages = [Message.model_validate({"role": "user", "content": text})]
        return ChatContext(
            request_id="req-1",
            user=user,
            model_id=model.id,
            model=model,
            messages=messages,
            system_prompt="SYSTEM",
            **changes,
        )

    return _make


class FakeAgentBackend:
    """In-memory ``AgentBackend`` that replays a fixed list of run events."""

    def __init__(self, events=None) -> None:
        self.events = list(events or [])
        self.threads_created = 0
        self.messages: list[tuple[str, Any, Any]] = []
        self.runs: list[tuple[str, str, Any]] = []
        self.uploads: list[tuple[str, bytes]] = []
        self.fail_uploads: set[str] = set()

    async def create_thread(self) -> str:
        self.threads_created += 1
        return f"thread_new_{self.threads_created}"

    async def create_message(self, thread_id, content, attachments=None) -> None:
        self.messages.append((thread_id, content, attachments))

    async def stream_run(self, thread_id, agent_id, temperature=None):
        self.runs.append((thread_id, agent_id, temperature))
        for event in self.events:
            yield event

    async def upload_file(self, filename, data, purpose="assistants") -> str:
        if filename in self.fail_uploads:
            raise RuntimeError(f"upload of {filename} rejected")
        self.uploads.append((filename, data))
        return f"file_{len(self.uploads)}"

    async def download_file(self, file_id) -> bytes:
        return b""

    async def delete_file(self, file_id) -> None:
        return None


@pytest.fixture
def agent_backend() -> FakeAgentBackend:
    return FakeAgentBackend()
