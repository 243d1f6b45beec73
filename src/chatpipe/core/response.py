"""Transport-neutral response artifacts set by the execution handlers.

The API layer turns these into FastAPI responses; nothing in the core
imports Starlette.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Union


@dataclass
class StreamedChatResponse:
    """Text chunks ending with an optional metadata block."""

    chunks: AsyncIterator[str]
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class JSONChatResponse:
    body: dict[str, Any]
    status_code: int = 200


@dataclass(frozen=True)
class TextChatResponse:
    """A plain-text answer produced without a model call."""

    text: str
    status_code: int = 200


ChatResponse = Union[StreamedChatResponse, JSONChatResponse, TextChatResponse]
