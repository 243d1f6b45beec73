"""Provider stream -> client text stream.

Every provider handler normalizes its SDK stream into ``ChatChunk``
values, so this module never sees a vendor type.  The processor emits
content as it arrives (renumbering knowledge-base references when a
``SequentialCitationRenumberer`` is supplied) and, once the provider
stream ends, appends the metadata block with citations, extracted
thinking, transcript info and pending transcription jobs.
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncGenerator, AsyncIterable, Awaitable, Callable
from dataclasses import dataclass
from typing import Optional

from .metadata import (
    Citation,
    PendingTranscription,
    StreamMetadata,
    TranscriptMetadata,
    deduplicate_citations,
    format_metadata,
)
from .renumber import SequentialCitationRenumberer

logger = logging.getLogger(__name__)

_THINK_OPEN = "<think>"
_THINK_CLOSE = "</think>"
_THINK_BLOCK = re.compile(
    re.escape(_THINK_OPEN) + r"(.*?)(?:" + re.escape(_THINK_CLOSE) + r"|$)",
    re.DOTALL,
)

StopSignal = Callable[[], Awaitable[bool]]


@dataclass(frozen=True)
class ChatChunk:
    """One provider-agnostic streamed increment."""

    content: str = ""
    thinking: str = ""
    finish_reason: Optional[str] = None


def parse_thinking(text: str) -> tuple[Optional[str], str]:
    """Pull ``<think>`` blocks out of *text*.

    Returns ``(thinking, remaining_content)``; ``thinking`` is ``None``
    when there were no blocks.  An unclosed block runs to the end.
    """
    blocks = [m.group(1).strip() for m in _THINK_BLOCK.finditer(text)]
    blocks = [b for b in blocks if b]
    content = _THINK_BLOCK.sub("", text).strip()
    return ("\n\n".join(blocks) if blocks else None), content


async def process_chat_stream(
    chunks: AsyncIterable[ChatChunk],
    *,
    renumberer: Optional[SequentialCitationRenumberer] = None,
    citations: Optional[list[Citation]] = None,
    transcript: Optional[TranscriptMetadata] = None,
    pending_transcriptions: Optional[list[PendingTranscription]] = None,
    should_stop: Optional[StopSignal] = None,
) -> AsyncGenerator[str, None]:
    """Yield client text for *chunks*, then the trailing metadata block.

    *citations* are appended after any the renumberer collected.  When
    *should_stop* returns true between chunks the stream ends quietly
    without metadata.  Provider errors propagate to the consumer.
    """
    all_content: list[str] = []
    reasoning: list[str] = []

    async for chunk in chunks:
        if should_stop is not None and await should_stop():
            logger.debug("Stream stopped by client")
            return

        if chunk.thinking:
            reasoning.append(chunk.thinking)
        if chunk.content:
            all_content.append(chunk.content)
            text = (
                renumberer.process_chunk(chunk.content)
                if renumberer is not None
                else chunk.content
            )
            if text:
                yield text

    if renumberer is not None:
        tail = renumberer.flush()
        if tail:
            yield tail

    full_text = "".join(all_content)
    inline_thinking, _ = parse_thinking(full_text)
    thinking_parts = ["".join(reasoning).strip(), inline_thinking or ""]
    thinking = "\n\n".join(p for p in thinking_parts if p) or None

    all_citations: list[Citation] = []
    if renumberer is not None:
        all_citations.extend(
            deduplicate_citations(renumberer.citations(), renumber=False)
        )
    all_citations.extend(citations or [])

    if transcript is not None:
        transcript = transcript.model_copy(update={"processed_content": full_text})

    block = format_metadata(
        StreamMetadata(
            citations=all_citations,
            thinking=thinking,
            transcript=transcript,
            pending_transcriptions=list(pending_transcriptions or []),
        )
    )
    if block:
        yield block
