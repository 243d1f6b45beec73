"""Streaming citation-marker rewriting.

Agent providers annotate text with opaque markers (``【4:0†source】``)
that can be split across any number of streamed deltas.  The rewrite
is a fold over the deltas: ``feed`` appends a delta to the buffer,
replaces every complete marker with ``[n]`` and returns the text that
is safe to emit; an unterminated marker at the tail stays buffered
until the next delta (or ``flush``) completes it.

Numbers are assigned in order of first appearance and an identical
marker always maps to the same number.  The state is a plain value, so
one stream's markers never leak into another's.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Mapping, Protocol


class CitationMarkerParser(Protocol):
    """Marker syntax of one provider family."""

    @property
    def pattern(self) -> re.Pattern[str]: ...

    @property
    def open_glyph(self) -> str: ...

    @property
    def close_glyph(self) -> str: ...


@dataclass(frozen=True)
class BracketMarkerParser:
    """Azure AI agent markers: ``【{message}:{index}†{label}】``."""

    pattern: re.Pattern[str] = re.compile(r"\u3010(\d+):(\d+)\u2020[^\u3011]+\u3011")
    open_glyph: str = "\u3010"
    close_glyph: str = "\u3011"


DEFAULT_MARKER_PARSER = BracketMarkerParser()


@dataclass(frozen=True)
class MarkerState:
    """Rolling buffer plus the marker -> number map for one stream."""

    buffer: str = ""
    numbers: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    first_number: int = 1

    @property
    def next_number(self) -> int:
        return self.first_number + len(self.numbers)


def _renumber(
    text: str, numbers: dict[str, int], state: MarkerState, parser: CitationMarkerParser
) -> str:
    def substitute(match: re.Match[str]) -> str:
        marker = match.group(0)
        if marker not in numbers:
            numbers[marker] = state.first_number + len(numbers)
        return f"[{numbers[marker]}]"

    return parser.pattern.sub(substitute, text)


def feed(
    state: MarkerState,
    delta: str,
    parser: CitationMarkerParser = DEFAULT_MARKER_PARSER,
) -> tuple[MarkerState, str]:
    """Consume *delta*; return the new state and the text ready to emit."""
    numbers = dict(state.numbers)
    text = _renumber(state.buffer + delta, numbers, state, parser)

    last_open = text.rfind(parser.open_glyph)
    last_close = text.rfind(parser.close_glyph)
    if last_open != -1 and last_open > last_close:
        emit, buffer = text[:last_open], text[last_open:]
    else:
        emit, buffer = text, ""

    return replace(state, buffer=buffer, numbers=MappingProxyType(numbers)), emit


def flush(state: MarkerState) -> tuple[MarkerState, str]:
    """Release whatever is still buffered, complete marker or not."""
    return replace(state, buffer=""), state.buffer

