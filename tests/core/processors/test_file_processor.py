"""Tests for attachment and image processing."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from chatpipe.configs.models import ModelConfig
from chatpipe.configs.system import FileProcessingConfig, TranscriptionConfig
from chatpipe.core.errors import ErrorCode
from chatpipe.core.processors.file_processor import (
    REASON_FFMPEG_UNAVAILABLE,
    REASON_GENERIC,
    FileProcessor,
    ImageProcessor,
    transcript_placeholder,
)
from chatpipe.core.services.files import FileProcessingService
from chatpipe.core.services.transcription import FFmpegUnavailableError
from chatpipe.infra.blob import LocalBlobStorage

# chunk budget bottoms out at 8000 chars for this window
SMALL_MODEL = ModelConfig(id="small", max_length=3300, token_limit=4000)


def _file(name: str, blob_id: str | None = None) -> dict:
    return {
        "type": "file_url",
        "url": f"https://store/files/{blob_id or name}",
        "original_filename": name,
    }


@pytest.fixture
def blob_root(tmp_path):
    root = tmp_path / "blobs"
    (root / "user-1/uploads/files").mkdir(parents=True)
    (root / "user-1/uploads/images").mkdir(parents=True)
    return root


@pytest.fixture
def temp_root(tmp_path):
    return tmp_path / "tmp"


@pytest.fixture
def files(blob_root, temp_root):
    config = FileProcessingConfig(
        max_download_bytes=20_000,
        temp_root=str(temp_root),
        read_retries=0,
        read_retry_delay=timedelta(0),
    )
    return FileProcessingService(LocalBlobStorage(blob_root), config)


def _put(blob_root, name: str, data: bytes) -> None:
    (blob_root / "user-1/uploads/files" / name).write_bytes(data)


class TestFileProcessor:
    @pytest.fixture(autouse=True)
    def _processor(self, files):
        self.summarizer = MagicMock()
        self.summarizer.parse_and_query_file = AsyncMock(return_value="the summary")
        self.whisper = MagicMock()
        self.whisper.transcribe = AsyncMock(return_value="spoken words")
        self.chunked = MagicMock()
        self.chunked.is_available.return_value = True
        self.chunked.start_job = AsyncMock(return_value=("tj_abc", 4))
        self.ffmpeg = MagicMock()
        self.config = TranscriptionConfig(sync_max_bytes=1000)
        self.processor = FileProcessor(
            files, self.summarizer, self.ffmpeg, self.whisper, self.chunked, self.config
        )

    def _context(self, make_context, *blocks, text="What does it say?"):
        return make_context(
            [{"type": "text", "text": text}, *blocks], model=SMALL_MODEL, has_files=True
        )

    async def test_small_document_inlined(self, make_context, blob_root, temp_root):
        _put(blob_root, "notes.txt", b"short notes")
        result = await self.processor.execute(self._context(make_context, _file("notes.txt")))

        inline = result.processed_content.inline_files
        assert [(f.filename, f.content) for f in inline] == [("notes.txt", "short notes")]
        assert result.errors == []
        self.summarizer.parse_and_query_file.assert_not_awaited()
        assert list(temp_root.iterdir()) == []

    async def test_large_document_summarized_against_question(self, make_context, blob_root):
        _put(blob_root, "report.txt", b"x" * 9000)
        result = await self.processor.execute(self._context(make_context, _file("report.txt")))

        summary = result.processed_content.file_summaries[0]
        assert summary.summary == "the summary"
        assert len(summary.original_content) == 1000
        args = self.summarizer.parse_and_query_file.await_args.args
        assert args[1] == "What does it say?"

    async def test_inline_boundary(self, make_context, blob_root):
        _put(blob_root, "edge.txt", b"y" * 8000)
        result = await self.processor.execute(self._context(make_context, _file("edge.txt")))
        assert len(result.processed_content.inline_files) == 1

    async def test_summary_just_over_boundary(self, make_context, blob_root):
        _put(blob_root, "edge.txt", b"y" * 8001)
        result = await self.processor.execute(self._context(make_context, _file("edge.txt")))
        assert result.processed_content.inline_files == []
        self.summarizer.parse_and_query_file.assert_awaited_once()
        assert len(result.processed_content.file_summaries) == 1

    async def test_default_query_without_text(self, make_context, blob_root):
        _put(blob_root, "report.txt", b"x" * 9000)
        await self.processor.execute(self._context(make_context, _file("report.txt"), text=""))
        assert self.summarizer.parse_and_query_file.await_args.args[1] == "Summarize this document"

    async def test_oversized_file_rejected_alone(self, make_context, blob_root, temp_root):
        _put(blob_root, "huge.txt", b"z" * 20_001)
        result = await self.processor.execute(self._context(make_context, _file("huge.txt")))

        assert result.processed_content.file_processing_failed
        assert result.errors[0].code is ErrorCode.FILE_TOO_LARGE
        assert result.errors[0].details["filename"] == "huge.txt"
        assert not temp_root.exists() or list(temp_root.iterdir()) == []

    async def test_one_failure_does_not_fail_the_turn(self, make_context, blob_root):
        _put(blob_root, "ok.txt", b"fine")
        result = await self.processor.execute(
            self._context(make_context, _file("ok.txt"), _file("missing.txt"))
        )
        assert len(result.processed_content.inline_files) == 1
        assert len(result.errors) == 1
        assert not result.processed_content.file_processing_failed

    async def test_no_summarizer_is_a_per_file_failure(self, make_context, files, blob_root):
        _put(blob_root, "report.txt", b"x" * 9000)
        processor = FileProcessor(files, None, self.ffmpeg, None, None, self.config)
        result = await processor.execute(self._context(make_context, _file("report.txt")))
        assert result.processed_content.file_processing_failed
        assert result.errors[0].details["reason"] == REASON_GENERIC

    async def test_small_audio_transcribed(self, make_context, blob_root):
        _put(blob_root, "memo.mp3", b"a" * 500)
        block = {**_file("memo.mp3"), "transcription_language": "fr"}
        result = await self.processor.execute(self._context(make_context, block))

        transcript = result.processed_content.transcripts[0]
        assert (transcript.filename, transcript.transcript) == ("memo.mp3", "spoken words")
        assert self.whisper.transcribe.await_args.args[1] == "fr"

    async def test_large_audio_becomes_pending_job(self, make_context, blob_root):
        _put(blob_root, "long.mp3", b"a" * 5000)
        result = await self.processor.execute(self._context(make_context, _file("long.mp3")))

        pending = result.processed_content.pending_transcriptions[0]
        assert (pending.job_id, pending.total_chunks) == ("tj_abc", 4)
        transcript = result.processed_content.transcripts[0]
        assert transcript.transcript == transcript_placeholder("long.mp3")
        assert transcript.job_id == "tj_abc"
        self.whisper.transcribe.assert_not_awaited()
        assert self.chunked.start_job.await_args.kwargs["user_id"] == "user-1"

    async def test_large_audio_without_ffmpeg(self, make_context, blob_root):
        _put(blob_root, "long.mp3", b"a" * 5000)
        self.chunked.is_available.return_value = False
        result = await self.processor.execute(self._context(make_context, _file("long.mp3")))
        error = result.errors[0]
        assert error.code is ErrorCode.TRANSCRIPTION_FAILED
        assert error.details["reason"] == REASON_FFMPEG_UNAVAILABLE

    async def test_video_audio_extracted_and_cleaned(self, make_context, blob_root, temp_root):
        _put(blob_root, "clip.mp4", b"v" * 100)

        async def extract(path, filename):
            out = path.with_name(f"{path.stem}_audio.mp3")
            out.write_bytes(b"a" * 50)
            return out

        self.ffmpeg.extract_audio = AsyncMock(side_effect=extract)
        result = await self.processor.execute(self._context(make_context, _file("clip.mp4")))
        assert result.processed_content.transcripts[0].transcript == "spoken words"
        assert list(temp_root.iterdir()) == []

    async def test_video_without_ffmpeg(self, make_context, blob_root):
        _put(blob_root, "clip.mp4", b"v" * 100)
        self.ffmpeg.extract_audio = AsyncMock(side_effect=FFmpegUnavailableError("no ffmpeg"))
        result = await self.processor.execute(self._context(make_context, _file("clip.mp4")))
        assert result.errors[0].details["reason"] == REASON_FFMPEG_UNAVAILABLE
        assert result.processed_content.file_processing_failed


class TestImageProcessor:
    async def test_stored_image_inlined(self, make_context, files, blob_root):
        (blob_root / "user-1/uploads/images/photo.png").write_bytes(b"\x89PNG")
        context = make_context(
            [
                {"type": "text", "text": "what is this"},
                {"type": "image_url", "image_url": {"url": "https://store/images/photo.png"}},
                {"type": "image_url", "image_url": {"url": "data:image/gif;base64,R0lG"}},
            ],
            has_images=True,
        )
        processor = ImageProcessor(files)
        assert processor.should_run(context)
        result = await processor.execute(context)
        urls = [b.image_url.url for b in result.processed_content.images]
        assert urls == ["data:image/png;base64,iVBORw==", "data:image/gif;base64,R0lG"]

    async def test_missing_image_is_warning(self, make_context, files):
        context = make_context(
            [{"type": "image_url", "image_url": {"url": "https://store/images/gone.png"}}],
            has_images=True,
        )
        result = await ImageProcessor(files).execute(context)
        assert result.processed_content.images == []
        assert result.errors[0].code is ErrorCode.FILE_PROCESSING_FAILED

    def test_skipped_when_files_present(self, make_context, files):
        context = make_context("x", has_images=True, has_files=True)
        assert not ImageProcessor(files).should_run(context)
