"""Audio transcription: synchronous Whisper calls and chunked background jobs.

Audio at or under ``TranscriptionConfig.sync_max_bytes`` (25 MB, the
Whisper upload ceiling) is transcribed inline.  Larger audio is split
with FFmpeg into ``chunk_seconds`` pieces by a background task; callers
get a job id back immediately and poll ``get_job``.

Video is reduced to its audio track first.  A video without an audio
track and a host without FFmpeg are user-facing conditions with their
own exception types so the chat handler can explain them.
"""

from __future__ import annotations

import asyncio
import logging
import math
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Optional

import aiofiles
from openai import AsyncOpenAI

from chatpipe.configs.system import TranscriptionConfig
from chatpipe.core.errors import UserFacingError
from chatpipe.core.metrics import TRANSCRIPTION_JOBS_TOTAL
from chatpipe.infra.id_utils import generate_id
from chatpipe.infra.logging import sanitize_for_log

logger = logging.getLogger(__name__)

AUDIO_EXTENSIONS = frozenset(
    {".mp3", ".mpga", ".mpeg", ".m4a", ".wav", ".ogg", ".oga", ".flac", ".aac", ".opus"}
)
VIDEO_EXTENSIONS = frozenset({".mp4", ".mov", ".avi", ".mkv", ".webm", ".m4v", ".wmv"})

_NO_AUDIO_MARKERS = (
    "does not contain any stream",
    "matches no streams",
    "Output file is empty",
)


def _suffix(filename: str) -> str:
    return Path(filename.lower()).suffix


def is_audio_video_file(filename: str) -> bool:
    suffix = _suffix(filename)
    return suffix in AUDIO_EXTENSIONS or suffix in VIDEO_EXTENSIONS


def is_video_file(filename: str) -> bool:
    return _suffix(filename) in VIDEO_EXTENSIONS


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class NoAudioTrackError(UserFacingError):
    """The uploaded video has no audio stream to transcribe."""


class FFmpegUnavailableError(UserFacingError):
    """FFmpeg or FFprobe is not installed or not configured."""


class AudioExtractionError(Exception):
    """FFmpeg failed for a reason other than a missing audio track."""


# ---------------------------------------------------------------------------
# FFmpeg helpers
# ---------------------------------------------------------------------------


class FFmpeg:
    """Locates and runs the FFmpeg/FFprobe binaries."""

    def __init__(self, config: TranscriptionConfig) -> None:
        self.ffmpeg = config.ffmpeg_bin or shutil.which("ffmpeg")
        self.ffprobe = config.ffprobe_bin or shutil.which("ffprobe")

    def is_available(self) -> bool:
        return bool(self.ffmpeg and self.ffprobe)

    async def _run(self, *args: str) -> tuple[int, str, str]:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        return (
            proc.returncode or 0,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )

    async def probe_duration(self, path: Path) -> float:
        if not self.ffprobe:
            raise FFmpegUnavailableError("FFprobe is not available")
        code, out, err = await self._run(
            self.ffprobe,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            str(path),
        )
        if code != 0:
            raise AudioExtractionError(f"ffprobe failed: {err.strip()[:200]}")
        return float(out.strip())

    async def extract_audio(self, video_path: Path, filename: str) -> Path:
        """Write the audio track of *video_path* to a sibling ``.mp3``."""
        if not self.ffmpeg:
            raise FFmpegUnavailableError(
                f'Cannot process video file "{filename}": FFmpeg is not available. '
                "Please configure the ffmpeg binary or install FFmpeg."
            )
        output = video_path.with_name(f"{video_path.stem}_audio.mp3")
        code, _, err = await self._run(
            self.ffmpeg,
            "-y",
            "-i", str(video_path),
            "-vn",
            "-acodec", "libmp3lame",
            "-q:a", "4",
            str(output),
        )
        if code != 0:
            if any(marker in err for marker in _NO_AUDIO_MARKERS):
                raise NoAudioTrackError(
                    f'The video file "{filename}" does not contain an audio track.'
                )
            raise AudioExtractionError(
                f'Cannot transcribe video file "{filename}": Audio extraction failed.'
            )
        return output

    async def cut_chunk(
        self, source: Path, target: Path, start: float, seconds: float
    ) -> None:
        code, _, err = await self._run(
            self.ffmpeg or "ffmpeg",
            "-y",
            "-ss", f"{start:.3f}",
            "-t", f"{seconds:.3f}",
            "-i", str(source),
            "-vn",
            "-ac", "1",
            "-ar", "16000",
            "-b:a", "64k",
            str(target),
        )
        if code != 0:
            raise AudioExtractionError(f"ffmpeg chunking failed: {err.strip()[:200]}")


# ---------------------------------------------------------------------------
# Whisper
# ---------------------------------------------------------------------------


class WhisperTranscriptionService:
    """Synchronous transcription through the OpenAI audio API."""

    def __init__(self, client: AsyncOpenAI, deployment: str) -> None:
        self._client = client
        self._deployment = deployment

    async def transcribe(
        self,
        path: Path,
        language: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> str:
        async with aiofiles.open(path, "rb") as f:
            data = await f.read()
        kwargs = {}
        if language:
            kwargs["language"] = language
        if prompt:
            kwargs["prompt"] = prompt
        result = await self._client.audio.transcriptions.create(
            model=self._deployment,
            file=(path.name, data),
            response_format="text",
            **kwargs,
        )
        TRANSCRIPTION_JOBS_TOTAL.labels(mode="sync").inc()
        text = result if isinstance(result, str) else result.text
        return text.strip()


# ---------------------------------------------------------------------------
# Chunked jobs
# ---------------------------------------------------------------------------

JobStatus = Literal["pending", "processing", "completed", "failed"]


@dataclass
class TranscriptionJob:
    job_id: str
    filename: str
    total_chunks: int
    user_id: Optional[str] = None
    status: JobStatus = "pending"
    completed_chunks: int = 0
    transcript: Optional[str] = None
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def progress(self) -> float:
        if self.total_chunks == 0:
            return 0.0
        return round(self.completed_chunks / self.total_chunks, 3)

    def to_dict(self) -> dict:
        return {
            "jobId": self.job_id,
            "filename": self.filename,
            "status": self.status,
            "progress": self.progress,
            "totalChunks": self.total_chunks,
            "completedChunks": self.completed_chunks,
            "transcript": self.transcript,
            "error": self.error,
        }


class ChunkedTranscriptionService:
    """Background transcription of long audio, one FFmpeg chunk at a time.

    ``start_job`` copies the source into a private work directory before
    returning, so the caller is free to delete its own temp file.
    """

    def __init__(
        self,
        ffmpeg: FFmpeg,
        whisper: WhisperTranscriptionService,
        config: TranscriptionConfig,
    ) -> None:
        self._ffmpeg = ffmpeg
        self._whisper = whisper
        self._chunk_seconds = config.chunk_seconds
        self._job_ttl = config.job_ttl.total_seconds()
        self._max_jobs = config.max_jobs
        self._jobs: dict[str, TranscriptionJob] = {}
        self._tasks: set[asyncio.Task] = set()

    def is_available(self) -> bool:
        return self._ffmpeg.is_available()

    def get_job(self, job_id: str) -> Optional[TranscriptionJob]:
        self._evict_finished()
        return self._jobs.get(job_id)

    def _evict_finished(self) -> None:
        now = time.time()
        finished = sorted(
            (job for job in self._jobs.values() if job.finished_at is not None),
            key=lambda job: job.finished_at,
        )
        overflow = len(self._jobs) - self._max_jobs
        for job in finished:
            if now - job.finished_at >= self._job_ttl or overflow > 0:
                del self._jobs[job.job_id]
                overflow -= 1

    async def start_job(
        self,
        path: Path,
        filename: str,
        language: Optional[str] = None,
        prompt: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> tuple[str, int]:
        """Submit *path* for *user_id* and return ``(job_id, total_chunks)``."""
        self._evict_finished()
        duration = await self._ffmpeg.probe_duration(path)
        total_chunks = max(1, math.ceil(duration / self._chunk_seconds))

        job_id = generate_id("tj")
        workdir = Path(tempfile.mkdtemp(prefix=f"{job_id}_"))
        source = workdir / f"source{path.suffix}"
        await asyncio.to_thread(shutil.copyfile, path, source)

        job = TranscriptionJob(
            job_id=job_id, filename=filename, total_chunks=total_chunks, user_id=user_id
        )
        self._jobs[job_id] = job
        task = asyncio.create_task(
            self._run_job(job, source, workdir, duration, language, prompt)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        TRANSCRIPTION_JOBS_TOTAL.labels(mode="chunked").inc()
        logger.info(
            "Chunked transcription job %s queued: %s, %.0fs in %d chunk(s)",
            job_id,
            sanitize_for_log(filename),
            duration,
            total_chunks,
        )
        return job_id, total_chunks

    async def _run_job(
        self,
        job: TranscriptionJob,
        source: Path,
        workdir: Path,
        duration: float,
        language: Optional[str],
        prompt: Optional[str],
    ) -> None:
        job.status = "processing"
        parts: list[str] = []
        try:
            for index in range(job.total_chunks):
                start = index * self._chunk_seconds
                length = min(self._chunk_seconds, duration - start)
                chunk_path = workdir / f"chunk_{index:04d}.mp3"
                await self._ffmpeg.cut_chunk(source, chunk_path, start, length)
                parts.append(
                    await self._whisper.transcribe(chunk_path, language, prompt)
                )
                chunk_path.unlink(missing_ok=True)
                job.completed_chunks = index + 1
            job.transcript = " ".join(p for p in parts if p)
            job.status = "completed"
            logger.info("Transcription job %s completed", job.job_id)
        except Exception as e:
            job.status = "failed"
            job.error = str(e)
            logger.exception("Transcription job %s failed", job.job_id)
        finally:
            job.finished_at = time.time()
            await asyncio.to_thread(shutil.rmtree, workdir, True)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
