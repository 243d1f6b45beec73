"""Agent run events and the per-stream execution context."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any

from chatpipe.core.stream.metadata import UploadedFileRef

EVENT_MESSAGE_DELTA = "thread.message.delta"
EVENT_STEP_DELTA = "thread.run.step.delta"
EVENT_MESSAGE_COMPLETED = "thread.message.completed"
EVENT_RUN_COMPLETED = "thread.run.completed"
EVENT_ERROR = "error"
EVENT_DONE = "done"


@dataclass(frozen=True)
class AgentEvent:
    """One normalized event from an agent run stream."""

    event: str
    data: dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        return json.dumps(self.data, default=str)


@dataclass(frozen=True)
class AgentStreamContext:
    thread_id: str
    is_new_thread: bool
    started_at: float = field(default_factory=time.monotonic)
    uploaded_files: tuple[UploadedFileRef, ...] = ()

    @property
    def new_thread_id(self) -> str | None:
        """The thread id, reported to the client only when it was just created."""
        return self.thread_id if self.is_new_thread else None


class AgentStreamError(Exception):
    """The agent backend reported an error mid-stream."""


def delta_texts(data: dict[str, Any]) -> list[str]:
    """Text values of a ``thread.message.delta`` payload."""
    parts = (data.get("delta") or {}).get("content") or []
    texts = []
    for part in parts:
        if part.get("type") != "text":
            continue
        value = (part.get("text") or {}).get("value")
        if value:
            texts.append(value)
    return texts


def completed_annotations(data: dict[str, Any]) -> list[dict[str, Any]]:
    """Annotations on the first text part of a completed message."""
    content = data.get("content") or []
    if not content:
        return []
    return (content[0].get("text") or {}).get("annotations") or []
