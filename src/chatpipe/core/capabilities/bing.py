"""Web-grounded agent streams.

Text deltas go through the citation-marker fold, so ``【3:0†source】``
becomes ``[1]`` the first time it appears.  The completed message
carries ``url_citation`` annotations keyed by the raw marker; they are
matched back to the assigned numbers to build the citation list.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, AsyncIterator, Mapping
from typing import Any

from chatpipe.core.stream.markers import (
    DEFAULT_MARKER_PARSER,
    CitationMarkerParser,
    MarkerState,
    feed,
    flush,
)
from chatpipe.core.stream.metadata import Citation, StreamMetadata, format_metadata

from .events import (
    EVENT_DONE,
    EVENT_ERROR,
    EVENT_MESSAGE_COMPLETED,
    EVENT_MESSAGE_DELTA,
    EVENT_RUN_COMPLETED,
    AgentEvent,
    AgentStreamContext,
    AgentStreamError,
    completed_annotations,
    delta_texts,
)

logger = logging.getLogger(__name__)


def _url_citation(annotation: dict[str, Any]) -> dict[str, Any] | None:
    return annotation.get("url_citation") or annotation.get("urlCitation")


def citations_from_annotations(
    data: dict[str, Any], numbers: Mapping[str, int]
) -> list[Citation]:
    """One citation per numbered marker, in number order.

    A marker without a matching annotation still gets a placeholder so
    the inline numbers and the list stay aligned.
    """
    by_marker: dict[str, dict[str, Any]] = {}
    for annotation in completed_annotations(data):
        cited = _url_citation(annotation)
        if annotation.get("type") == "url_citation" and annotation.get("text") and cited:
            by_marker[annotation["text"]] = cited

    citations = []
    for marker, number in sorted(numbers.items(), key=lambda item: item[1]):
        cited = by_marker.get(marker)
        if cited is None:
            logger.warning("No annotation for citation marker %d", number)
            cited = {}
        citations.append(
            Citation(
                number=number,
                title=cited.get("title") or f"Source {number}",
                url=cited.get("url") or "",
                date="",
            )
        )
    return citations


async def bing_grounding_stream(
    events: AsyncIterable[AgentEvent],
    context: AgentStreamContext,
    parser: CitationMarkerParser = DEFAULT_MARKER_PARSER,
    first_number: int = 1,
) -> AsyncIterator[str]:
    state = MarkerState(first_number=first_number)
    citations: list[Citation] = []
    finished = False

    async for event in events:
        if event.event == EVENT_MESSAGE_DELTA:
            for text in delta_texts(event.data):
                state, emit = feed(state, text, parser)
                if emit:
                    yield emit

        elif event.event == EVENT_MESSAGE_COMPLETED:
            citations = citations_from_annotations(event.data, state.numbers)

        elif event.event == EVENT_RUN_COMPLETED:
            state, rest = flush(state)
            if rest:
                yield rest
            block = format_metadata(
                StreamMetadata(citations=citations, thread_id=context.new_thread_id)
            )
            if block:
                yield block
            finished = True

        elif event.event == EVENT_ERROR:
            raise AgentStreamError(f"Agent error: {event.describe()}")

        elif event.event == EVENT_DONE:
            break

    if not finished:
        # Stream ended without a completion event; release what we hold.
        state, rest = flush(state)
        if rest:
            yield rest
