"""Sequential renumbering of ``[n]`` source references.

The knowledge-base completion prompt numbers its sources ``Source 1``
.. ``Source k`` in search order.  The model cites them in whatever order
it likes, so the streamed ``[7]`` becomes ``[1]`` if source 7 is the
first one cited, and the citation list is emitted in that same order.

Bracketed text that is not a bare number (``[Note]``, ``[a, b]``) passes
through untouched.  A ``[`` followed only by digits at a chunk boundary
is held back until the next chunk decides what it is.
"""

from __future__ import annotations

import re

from .metadata import Citation

_NUMERIC_REF = re.compile(r"\[(\d+)\]")
_PARTIAL_REF = re.compile(r"\[\d*$")


class SequentialCitationRenumberer:
    """Per-stream renumbering state.  Create one per response."""

    def __init__(self, sources: dict[int, Citation] | None = None) -> None:
        self._sources = dict(sources or {})
        self._sequence: dict[object, int] = {}
        self._first_source: dict[object, int] = {}
        self._pending = ""

    def _source_key(self, source_number: int) -> object:
        # Chunks of one document share a url and therefore a number
        source = self._sources.get(source_number)
        if source is None:
            return source_number
        return source.url or source.title or source_number

    def _substitute(self, match: re.Match[str]) -> str:
        source_number = int(match.group(1))
        key = self._source_key(source_number)
        if key not in self._sequence:
            self._sequence[key] = len(self._sequence) + 1
            self._first_source[key] = source_number
        return f"[{self._sequence[key]}]"

    def process_chunk(self, chunk: str) -> str:
        """Return the renumbered part of ``pending + chunk`` safe to emit."""
        text = self._pending + chunk
        self._pending = ""

        partial = _PARTIAL_REF.search(text)
        if partial:
            self._pending = text[partial.start() :]
            text = text[: partial.start()]

        return _NUMERIC_REF.sub(self._substitute, text)

    def flush(self) -> str:
        text, self._pending = self._pending, ""
        return _NUMERIC_REF.sub(self._substitute, text)

    def process_content(self, content: str) -> str:
        return self.process_chunk(content) + self.flush()

    def citations(self) -> list[Citation]:
        """Cited sources, numbered in order of first citation.

        References to source numbers that were never provided are
        dropped.  Sources sharing a url collapse into one number.
        """
        result: list[Citation] = []
        for key, sequential in sorted(self._sequence.items(), key=lambda item: item[1]):
            source = self._sources.get(self._first_source[key])
            if source is not None:
                result.append(source.model_copy(update={"number": sequential}))
        return result
