"""Attachment processing: documents, audio/video and images.

``FileProcessor`` handles every ``file_url`` block of the last message in
three phases:

1. size validation for all files at once (nothing is downloaded before
   every size is known),
2. concurrent download + read into the sandboxed temp root,
3. sequential extraction, summarization or transcription.

Phase 3 is serial on purpose so that one request never fans out a burst
of summarization calls against a shared rate limit.  Temp files are
removed in a ``finally`` whatever happens.

A failing file never aborts the others.  It is recorded as a
``PipelineError`` with a ``reason`` detail (``no_audio_track``,
``ffmpeg_unavailable`` or ``generic``); when no file could be used at
all, ``file_processing_failed`` is set in the metadata so the standard
handler answers with a user-facing message instead of a model call.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import aiofiles.os

from chatpipe.configs.system import TranscriptionConfig
from chatpipe.core.errors import ErrorCode, FileValidationError, PipelineError
from chatpipe.core.metrics import FILES_PROCESSED_TOTAL
from chatpipe.core.pipeline.context import (
    ChatContext,
    ChatUser,
    FileSummary,
    FileUrlBlock,
    ImageUrl,
    ImageUrlBlock,
    InlineFile,
    Message,
    Transcript,
)
from chatpipe.core.pipeline.stage import PipelineStage
from chatpipe.core.services.documents import (
    DocumentSummarizer,
    inline_budget,
    load_document,
)
from chatpipe.core.services.files import FileProcessingService
from chatpipe.core.services.transcription import (
    ChunkedTranscriptionService,
    FFmpeg,
    FFmpegUnavailableError,
    NoAudioTrackError,
    WhisperTranscriptionService,
    is_audio_video_file,
    is_video_file,
)
from chatpipe.core.stream.metadata import PendingTranscription
from chatpipe.infra.logging import sanitize_for_log
from chatpipe.infra.telemetry import (
    ATTR_FILE_COUNT,
    SPAN_FILE_PROCESS,
    tracer,
)

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY_QUERY = "Summarize this document"
ORIGINAL_CONTENT_PREVIEW = 1000
DEFAULT_IMAGE_MIME = "image/jpeg"

REASON_NO_AUDIO_TRACK = "no_audio_track"
REASON_FFMPEG_UNAVAILABLE = "ffmpeg_unavailable"
REASON_GENERIC = "generic"


def failure_reason(exc: BaseException) -> str:
    if isinstance(exc, NoAudioTrackError):
        return REASON_NO_AUDIO_TRACK
    if isinstance(exc, FFmpegUnavailableError):
        return REASON_FFMPEG_UNAVAILABLE
    return REASON_GENERIC


def transcript_placeholder(filename: str) -> str:
    return f"[Transcription in progress: {filename}]"


def _prompt_text(message: Message) -> str:
    blocks = message.text_blocks()
    return blocks[-1].text.strip() if blocks else ""


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


async def inline_images(
    files: FileProcessingService, message: Message, user: ChatUser
) -> tuple[list[ImageUrlBlock], list[PipelineError]]:
    """Turn stored image references into ``data:`` URLs.

    Blocks that already carry a data URL pass through untouched.
    """
    blocks = message.image_blocks()

    async def convert(block: ImageUrlBlock) -> ImageUrlBlock:
        url = block.image_url.url
        if url.startswith("data:"):
            return block
        data = await files.read_image(url, user)
        if data.startswith(b"data:"):
            inlined = data.decode("ascii")
        else:
            mime = mimetypes.guess_type(url)[0] or DEFAULT_IMAGE_MIME
            inlined = f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"
        return ImageUrlBlock(image_url=ImageUrl(url=inlined, detail=block.image_url.detail))

    results = await asyncio.gather(*(convert(b) for b in blocks), return_exceptions=True)
    images: list[ImageUrlBlock] = []
    errors: list[PipelineError] = []
    for block, result in zip(blocks, results):
        if isinstance(result, BaseException):
            logger.warning("Could not inline image %s: %s", sanitize_for_log(block.image_url.url), result)
            FILES_PROCESSED_TOTAL.labels(kind="image", status="error").inc()
            errors.append(
                PipelineError.warning(
                    f"Image could not be loaded: {result}",
                    ErrorCode.FILE_PROCESSING_FAILED,
                    details={"reason": REASON_GENERIC},
                    cause=result,
                )
            )
            continue
        FILES_PROCESSED_TOTAL.labels(kind="image", status="ok").inc()
        images.append(result)
    return images, errors


class ImageProcessor(PipelineStage):
    """Inlines images for turns that carry no other attachments."""

    name = "ImageProcessor"

    def __init__(self, files: FileProcessingService) -> None:
        self._files = files

    def should_run(self, context: ChatContext) -> bool:
        return context.has_images and not context.has_files

    async def execute(self, context: ChatContext) -> ChatContext:
        images, errors = await inline_images(
            self._files, context.current_messages[-1], context.user
        )
        context = context.with_(
            processed_content=context.processed_content.model_copy(
                update={"images": images}
            )
        )
        for error in errors:
            context = context.with_error(error)
        return context


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


@dataclass
class _Staged:
    block: FileUrlBlock
    path: Path
    data: bytes = b""


@dataclass
class _Collected:
    file_summaries: list[FileSummary] = field(default_factory=list)
    inline_files: list[InlineFile] = field(default_factory=list)
    transcripts: list[Transcript] = field(default_factory=list)
    pending: list[PendingTranscription] = field(default_factory=list)
    errors: list[PipelineError] = field(default_factory=list)
    succeeded: int = 0

    def fail(self, block: FileUrlBlock, exc: BaseException, kind: str) -> None:
        reason = failure_reason(exc)
        code = ErrorCode.FILE_PROCESSING_FAILED
        if isinstance(exc, FileValidationError):
            code = exc.code
        elif kind == "audio":
            code = ErrorCode.TRANSCRIPTION_FAILED
        logger.warning(
            "Processing %s failed (%s): %s",
            sanitize_for_log(block.filename),
            reason,
            sanitize_for_log(exc),
        )
        FILES_PROCESSED_TOTAL.labels(kind=kind, status="error").inc()
        self.errors.append(
            PipelineError.error(
                str(exc) or f"Failed to process {block.filename}",
                code,
                details={"filename": block.filename, "reason": reason},
                cause=exc,
            )
        )


def _kind(block: FileUrlBlock) -> str:
    return "audio" if is_audio_video_file(block.filename) else "document"


class FileProcessor(PipelineStage):
    name = "FileProcessor"

    def __init__(
        self,
        files: FileProcessingService,
        summarizer: Optional[DocumentSummarizer],
        ffmpeg: FFmpeg,
        whisper: Optional[WhisperTranscriptionService],
        chunked: Optional[ChunkedTranscriptionService],
        config: TranscriptionConfig,
    ) -> None:
        self._files = files
        self._summarizer = summarizer
        self._ffmpeg = ffmpeg
        self._whisper = whisper
        self._chunked = chunked
        self._config = config

    def should_run(self, context: ChatContext) -> bool:
        return context.has_files

    async def execute(self, context: ChatContext) -> ChatContext:
        message = context.current_messages[-1]
        blocks = message.file_blocks()
        collected = _Collected()

        with tracer.start_as_current_span(SPAN_FILE_PROCESS) as span:
            span.set_attribute(ATTR_FILE_COUNT, len(blocks))
            staged = await self._validate(blocks, context.user, collected)
            try:
                staged = await self._download(staged, context.user, collected)
                prompt = _prompt_text(message) or DEFAULT_SUMMARY_QUERY
                for item in staged:
                    kind = _kind(item.block)
                    try:
                        if kind == "audio":
                            await self._transcribe(item, context.user, collected)
                        else:
                            await self._extract(item, prompt, context, collected)
                    except Exception as e:
                        collected.fail(item.block, e, kind)
                        continue
                    collected.succeeded += 1
                    FILES_PROCESSED_TOTAL.labels(kind=kind, status="ok").inc()
            finally:
                await asyncio.gather(
                    *(self._files.cleanup_file(item.path) for item in staged)
                )

        images = context.processed_content.images
        image_errors: list[PipelineError] = []
        if context.has_images:
            images, image_errors = await inline_images(self._files, message, context.user)

        logger.info(
            "[%s] Processed %d/%d file(s): %d summarized, %d inline, %d transcript(s), %d pending",
            context.request_id,
            collected.succeeded,
            len(blocks),
            len(collected.file_summaries),
            len(collected.inline_files),
            len(collected.transcripts),
            len(collected.pending),
        )

        current = context.processed_content
        processed = current.model_copy(
            update={
                "file_summaries": [*current.file_summaries, *collected.file_summaries],
                "inline_files": [*current.inline_files, *collected.inline_files],
                "transcripts": [*current.transcripts, *collected.transcripts],
                "pending_transcriptions": [
                    *current.pending_transcriptions,
                    *collected.pending,
                ],
                "images": images,
            }
        )
        if collected.errors and collected.succeeded == 0:
            processed = processed.merge_metadata({"file_processing_failed": True})

        context = context.with_(processed_content=processed)
        for error in [*collected.errors, *image_errors]:
            context = context.with_error(error)
        return context

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _validate(
        self, blocks: list[FileUrlBlock], user: ChatUser, collected: _Collected
    ) -> list[_Staged]:
        results = await asyncio.gather(
            *(self._files.validate_file_size(b.url, user) for b in blocks),
            return_exceptions=True,
        )
        staged = []
        for block, result in zip(blocks, results):
            if isinstance(result, BaseException):
                collected.fail(block, result, _kind(block))
                continue
            try:
                _, path = self._files.get_temp_file_path(block.url)
            except FileValidationError as e:
                collected.fail(block, e, _kind(block))
                continue
            staged.append(_Staged(block=block, path=path))
        return staged

    async def _download(
        self, staged: list[_Staged], user: ChatUser, collected: _Collected
    ) -> list[_Staged]:
        async def fetch(item: _Staged) -> bytes:
            await self._files.download_file(item.block.url, item.path, user)
            return await self._files.read_file(item.path)

        results = await asyncio.gather(
            *(fetch(item) for item in staged), return_exceptions=True
        )
        ready = []
        for item, result in zip(staged, results):
            if isinstance(result, BaseException):
                collected.fail(item.block, result, _kind(item.block))
                # partial download
                await self._files.cleanup_file(item.path)
                continue
            item.data = result
            ready.append(item)
        return ready

    async def _extract(
        self, item: _Staged, prompt: str, context: ChatContext, collected: _Collected
    ) -> None:
        filename = item.block.filename
        text = await asyncio.to_thread(load_document, item.data, filename)
        budget = inline_budget(text, context.model)
        if len(text) <= budget:
            logger.debug(
                "Inlining %s (%d <= %d chars)", sanitize_for_log(filename), len(text), budget
            )
            collected.inline_files.append(InlineFile(filename=filename, content=text))
            return

        if self._summarizer is None:
            raise RuntimeError("No provider configured for document summarization")
        logger.info(
            "Summarizing %s (%d > %d chars)", sanitize_for_log(filename), len(text), budget
        )
        summary = await self._summarizer.parse_and_query_file(
            text, prompt, context.model, context.user
        )
        collected.file_summaries.append(
            FileSummary(
                filename=filename,
                summary=summary,
                original_content=text[:ORIGINAL_CONTENT_PREVIEW],
            )
        )

    async def _transcribe(
        self, item: _Staged, user: ChatUser, collected: _Collected
    ) -> None:
        block = item.block
        filename = block.filename
        extracted: Optional[Path] = None
        audio_path = item.path
        if is_video_file(filename):
            extracted = await self._ffmpeg.extract_audio(item.path, filename)
            audio_path = extracted

        try:
            size = await aiofiles.os.path.getsize(audio_path)
            if size <= self._config.sync_max_bytes:
                if self._whisper is None:
                    raise PipelineError.error(
                        "Transcription is not configured", ErrorCode.TRANSCRIPTION_FAILED
                    )
                text = await self._whisper.transcribe(
                    audio_path, block.transcription_language, block.transcription_prompt
                )
                collected.transcripts.append(Transcript(filename=filename, transcript=text))
                return

            if self._chunked is None or not self._chunked.is_available():
                raise FFmpegUnavailableError(
                    f'Cannot transcribe "{filename}": chunked transcription is unavailable'
                )
            job_id, total_chunks = await self._chunked.start_job(
                audio_path,
                filename,
                block.transcription_language,
                block.transcription_prompt,
                user_id=user.id,
            )
            collected.pending.append(
                PendingTranscription(
                    filename=filename,
                    job_id=job_id,
                    total_chunks=total_chunks,
                    job_type="chunked",
                )
            )
            collected.transcripts.append(
                Transcript(
                    filename=filename,
                    transcript=transcript_placeholder(filename),
                    job_id=job_id,
                )
            )
            logger.info(
                "Large audio %s (%d bytes) queued as job %s",
                sanitize_for_log(filename),
                size,
                job_id,
            )
        finally:
            if extracted is not None:
                await self._files.cleanup_file(extracted)
