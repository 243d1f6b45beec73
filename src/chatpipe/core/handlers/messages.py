"""Final message assembly for the standard handler."""

from __future__ import annotations

import re
from typing import Optional

from chatpipe.core.errors import PipelineError
from chatpipe.core.pipeline.context import (
    ChatContext,
    ImageUrlBlock,
    Message,
    ProcessedContent,
    TextBlock,
)
from chatpipe.core.stream.metadata import TranscriptMetadata

EMPTY_CONTENT_PLACEHOLDER = "[File content could not be processed]"

# A turn whose only text is an attachment label, e.g. "[Audio/Video: talk.mp3]"
_LABEL_ONLY = re.compile(
    r"^(?:\[Audio/Video:\s*[^\]]+\]|\[[^\]]+\])?$", re.IGNORECASE
)

FAILURE_MESSAGES = {
    "no_audio_track": (
        "We were unable to detect an audio track in the provided video file. "
        "You can try uploading a video with audio or an audio file directly."
    ),
    "ffmpeg_unavailable": (
        "We're currently unable to process video files. "
        "You can try uploading an audio file instead."
    ),
    "generic": (
        "We were unable to process the uploaded file. You can try uploading "
        "the file again or using a different file format."
    ),
}


def failure_message(errors: list[PipelineError]) -> str:
    """Pick the template for the first file error with a known reason."""
    for error in errors:
        reason = error.details.get("reason")
        if reason in FAILURE_MESSAGES and reason != "generic":
            return FAILURE_MESSAGES[reason]
    return FAILURE_MESSAGES["generic"]


def user_text(message: Message) -> str:
    if isinstance(message.content, str):
        return message.content.strip()
    blocks = message.text_blocks()
    return blocks[0].text.strip() if blocks else ""


def is_transcript_only(message: Message) -> bool:
    """True when the user sent an attachment and no real question."""
    return bool(_LABEL_ONLY.match(user_text(message)))


def transcript_metadata(processed: ProcessedContent) -> Optional[TranscriptMetadata]:
    if not processed.transcripts:
        return None
    first = processed.transcripts[0]
    job_id = first.job_id
    if job_id is None and processed.pending_transcriptions:
        job_id = processed.pending_transcriptions[0].job_id
    return TranscriptMetadata(
        filename=first.filename, transcript=first.transcript, job_id=job_id
    )


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


def _content_sections(processed: ProcessedContent) -> list[str]:
    sections = [
        f"[Document summary: {s.filename}]\n{s.summary}" for s in processed.file_summaries
    ]
    sections += [f"```{f.filename}\n{f.content}\n```" for f in processed.inline_files]
    sections += [
        f"[Audio/Video: {t.filename}]\n{t.transcript}" for t in processed.transcripts
    ]
    return sections


def merge_processed_content(
    message: Message, processed: ProcessedContent, include_text: bool = True
) -> Message:
    """Fold extracted attachment text and inlined images into *message*.

    Image blocks are replaced, in order, by the processed images; file
    blocks are dropped.
    """
    if processed.is_empty():
        return message
    sections = _content_sections(processed) if include_text else []
    if not sections and not processed.images:
        return message

    texts = [message.text()] if message.text() else []
    texts += sections
    others = []
    if isinstance(message.content, list):
        replacements = iter(processed.images)
        for block in message.content:
            if isinstance(block, ImageUrlBlock):
                replacement = next(replacements, None) if processed.images else block
                if replacement is not None:
                    others.append(replacement)
    text = "\n\n".join(texts)
    if not others:
        return Message(role=message.role, content=text)
    blocks = [TextBlock(text=text)] if text else []
    return Message(role=message.role, content=[*blocks, *others])


def strip_internal_blocks(messages: list[Message]) -> list[Message]:
    """Keep only what a provider accepts: text and image blocks."""
    stripped = []
    for message in messages:
        if isinstance(message.content, str):
            stripped.append(message)
            continue
        blocks = [b for b in message.content if isinstance(b, (TextBlock, ImageUrlBlock))]
        if not blocks:
            content = EMPTY_CONTENT_PLACEHOLDER
        elif len(blocks) == 1 and isinstance(blocks[0], TextBlock):
            content = blocks[0].text
        else:
            content = blocks
        stripped.append(Message(role=message.role, content=content))
    return stripped


def build_final_messages(context: ChatContext) -> list[Message]:
    messages = context.current_messages
    processed = context.processed_content
    last = merge_processed_content(
        messages[-1], processed, include_text=not processed.content_injected
    )
    return strip_internal_blocks([*messages[:-1], last])
