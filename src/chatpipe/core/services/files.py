"""Download user attachments from blob storage into a sandboxed temp dir.

Every temp path is derived from the blob id alone.  Ids are restricted
to ``[A-Za-z0-9_.-]`` and the resolved path must stay inside
``FileProcessingConfig.temp_root``; anything else is rejected before a
path is ever built.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os

from chatpipe.configs.system import FileProcessingConfig
from chatpipe.core.errors import ErrorCode, FileValidationError
from chatpipe.core.pipeline.context import ChatUser
from chatpipe.infra.blob import (
    BlobNotFound,
    BlobStorage,
    cached_text_path,
    should_cache_text,
    user_file_path,
    user_image_path,
)
from chatpipe.infra.logging import sanitize_for_log

logger = logging.getLogger(__name__)

_SAFE_BLOB_ID = re.compile(r"[\w.-]+", re.ASCII)
_TEMP_FILE_MODE = 0o600


@dataclass(frozen=True)
class DownloadResult:
    used_cache: bool


def blob_id_from_url(file_url: str) -> str:
    blob_id = file_url.rstrip("/").rsplit("/", 1)[-1]
    if not blob_id:
        raise FileValidationError(
            f"Could not find file id from URL: {file_url}", ErrorCode.INVALID_PATH
        )
    return blob_id


class FileProcessingService:
    """Size checks, downloads, reads and cleanup for attachment files."""

    def __init__(self, storage: BlobStorage, config: FileProcessingConfig) -> None:
        self._storage = storage
        self._config = config
        self._temp_root = Path(config.temp_root).resolve()

    @property
    def max_download_bytes(self) -> int:
        return self._config.max_download_bytes

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def get_temp_file_path(self, file_url: str) -> tuple[str, Path]:
        """Return ``(blob_id, path)`` for *file_url* inside the temp root."""
        blob_id = os.path.basename(blob_id_from_url(file_url))
        if blob_id in {".", ".."} or not _SAFE_BLOB_ID.fullmatch(blob_id):
            raise FileValidationError(
                "Invalid blob ID: contains unsafe characters", ErrorCode.INVALID_PATH
            )
        resolved = (self._temp_root / blob_id).resolve()
        if resolved.parent != self._temp_root:
            raise FileValidationError(
                "Path traversal detected", ErrorCode.INVALID_PATH
            )
        return blob_id, resolved

    async def get_file_size(self, file_url: str, user: ChatUser) -> int:
        return await self._storage.get_blob_size(
            user_file_path(user.id, blob_id_from_url(file_url))
        )

    async def validate_file_size(self, file_url: str, user: ChatUser) -> int:
        """Reject files over the download ceiling without reading them."""
        size = await self.get_file_size(file_url, user)
        if size > self._config.max_download_bytes:
            limit_mb = self._config.max_download_bytes / (1024 * 1024)
            raise FileValidationError(
                f"File is too large ({size / (1024 * 1024):.1f}MB). "
                f"Maximum size is {limit_mb:.0f}MB.",
                ErrorCode.FILE_TOO_LARGE,
            )
        return size

    # ------------------------------------------------------------------
    # Transfer
    # ------------------------------------------------------------------

    async def download_file(
        self, file_url: str, file_path: Path, user: ChatUser
    ) -> None:
        started = time.perf_counter()
        blob_path = user_file_path(user.id, blob_id_from_url(file_url))
        data = await self._storage.get(blob_path)
        await self._write_temp(file_path, data)
        logger.debug(
            "Downloaded %s (%d bytes) in %.1fms",
            sanitize_for_log(blob_path),
            len(data),
            (time.perf_counter() - started) * 1000,
        )

    async def download_file_prefer_cached(
        self,
        file_url: str,
        file_path: Path,
        user: ChatUser,
        filename: Optional[str] = None,
    ) -> DownloadResult:
        """Download the cached plain-text extraction when one exists.

        Only formats listed as cacheable are looked up; *filename* falls back
        to the blob id when the upload name is not known.
        """
        blob_id = blob_id_from_url(file_url)
        blob_path = user_file_path(user.id, blob_id)
        cached = cached_text_path(blob_path)
        try:
            if should_cache_text(filename or blob_id) and await self._storage.blob_exists(cached):
                await self._write_temp(file_path, await self._storage.get(cached))
                logger.debug("Text cache hit for %s", sanitize_for_log(blob_path))
                return DownloadResult(used_cache=True)
        except (BlobNotFound, OSError) as e:
            logger.warning("Cache check failed, falling back: %s", e)

        await self._write_temp(file_path, await self._storage.get(blob_path))
        return DownloadResult(used_cache=False)

    async def read_image(self, image_url: str, user: ChatUser) -> bytes:
        """Fetch an uploaded image straight from storage (no temp file)."""
        return await self._storage.get(
            user_image_path(user.id, blob_id_from_url(image_url))
        )

    async def read_file(self, file_path: Path) -> bytes:
        """Read a temp file, retrying transient failures."""
        retries = self._config.read_retries
        delay = self._config.read_retry_delay.total_seconds()
        attempt = 0
        while True:
            try:
                async with aiofiles.open(file_path, "rb") as f:
                    return await f.read()
            except OSError as e:
                if attempt >= retries:
                    raise
                attempt += 1
                logger.warning(
                    "Read of %s failed (attempt %d/%d): %s",
                    file_path.name,
                    attempt,
                    retries + 1,
                    e,
                )
                await asyncio.sleep(delay)

    async def cleanup_file(self, file_path: Path) -> None:
        try:
            await aiofiles.os.remove(file_path)
        except FileNotFoundError:
            pass
        except OSError:
            logger.exception("Error unlinking temp file %s", file_path.name)

    async def _write_temp(self, file_path: Path, data: bytes) -> None:
        await aiofiles.os.makedirs(self._temp_root, exist_ok=True)
        async with aiofiles.open(file_path, "wb") as f:
            await f.write(data)
        os.chmod(file_path, _TEMP_FILE_MODE)
