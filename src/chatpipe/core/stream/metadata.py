"""Trailing metadata block appended to every streamed response.

Clients read the body as plain text up to the sentinel and parse the
JSON between the sentinels as structured data::

    Answer text with citations [1][2]

    <<<METADATA_START>>>{"citations":[...],"threadId":"thread_..."}<<<METADATA_END>>>

Keys are camelCase on the wire; empty keys are dropped and a metadata
value with nothing to say produces no block at all.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

METADATA_START = "<<<METADATA_START>>>"
METADATA_END = "<<<METADATA_END>>>"
METADATA_SEPARATOR = f"\n\n{METADATA_START}"

_METADATA_BLOCK = re.compile(
    r"\n\n" + re.escape(METADATA_START) + r"(.*?)" + re.escape(METADATA_END),
    re.DOTALL,
)
_TRAILING_CITATIONS = re.compile(r"\n*\s*(?:\[\d+\]\s*)+\s*$")


class WireModel(BaseModel):
    """Base for payloads serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Payload types
# ---------------------------------------------------------------------------


class Citation(WireModel):
    number: int
    title: str = ""
    url: str = ""
    date: str = ""


class TranscriptMetadata(WireModel):
    filename: str
    transcript: str
    processed_content: Optional[str] = None
    job_id: Optional[str] = None


class PendingTranscription(WireModel):
    filename: str
    job_id: str
    blob_path: Optional[str] = None
    total_chunks: Optional[int] = None
    job_type: Literal["chunked", "batch"] = "chunked"


class UploadedFileRef(WireModel):
    id: str
    filename: str
    purpose: str = "assistants"


class CodeInterpreterOutput(WireModel):
    type: Literal["logs", "image", "file"]
    content: Optional[str] = None
    file_id: Optional[str] = None
    filename: Optional[str] = None
    mime_type: Optional[str] = None


class CodeInterpreterMetadata(WireModel):
    execution_phase: Literal["executing", "completed", "error"] = "executing"
    outputs: list[CodeInterpreterOutput] = Field(default_factory=list)
    uploaded_files: list[UploadedFileRef] = Field(default_factory=list)
    code: Optional[str] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None


class StreamMetadata(WireModel):
    citations: list[Citation] = Field(default_factory=list)
    thread_id: Optional[str] = None
    thinking: Optional[str] = None
    transcript: Optional[TranscriptMetadata] = None
    action: Optional[str] = None
    pending_transcriptions: list[PendingTranscription] = Field(default_factory=list)
    code_interpreter: Optional[CodeInterpreterMetadata] = None

    def to_wire(self) -> dict[str, Any]:
        return {key: value for key, value in super().to_wire().items() if value}

    def is_empty(self) -> bool:
        return not self.to_wire()


# ---------------------------------------------------------------------------
# Encode / decode
# ---------------------------------------------------------------------------


def format_metadata(metadata: StreamMetadata) -> str:
    """Render the sentinel block, or ``""`` when there is nothing to send."""
    payload = metadata.to_wire()
    if not payload:
        return ""
    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"{METADATA_SEPARATOR}{body}{METADATA_END}"


def parse_metadata(content: str) -> tuple[str, Optional[StreamMetadata]]:
    """Split a complete response into display text and its metadata.

    A bare run of ``[n]`` markers left dangling at the end of the text
    is stripped.  Unparseable metadata is logged and reported as ``None``.
    """
    metadata: Optional[StreamMetadata] = None
    text = content

    match = _METADATA_BLOCK.search(content)
    if match:
        text = content[: match.start()] + content[match.end() :]
        try:
            metadata = StreamMetadata.model_validate(json.loads(match.group(1)))
        except (json.JSONDecodeError, ValidationError):
            logger.warning("Could not parse stream metadata block", exc_info=True)

    return _TRAILING_CITATIONS.sub("", text), metadata


def deduplicate_citations(
    citations: list[Citation], renumber: bool = True
) -> list[Citation]:
    """Drop repeats by url (or title) and renumber from 1.

    Citations with neither url nor title cannot be keyed and are dropped.
    Pass ``renumber=False`` when the numbers are already in the text.
    """
    unique: dict[str, Citation] = {}
    for citation in citations:
        key = citation.url or citation.title
        if key and key not in unique:
            unique[key] = citation
    if not renumber:
        return list(unique.values())
    return [
        citation.model_copy(update={"number": number})
        for number, citation in enumerate(unique.values(), start=1)
    ]
