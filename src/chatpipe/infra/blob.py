"""Blob storage boundary.

The pipeline only needs three calls from a blob store: size lookup,
full read and existence check.  ``LocalBlobStorage`` serves blobs from
a directory tree with ``aiofiles`` so reads never block the loop; a
cloud-backed store only has to implement ``BlobStorage``.

Path convention: ``{user_id}/uploads/files/{blob_id}`` (``images`` for
image uploads).  Pre-extracted
plain text for expensive formats lives beside the original at
``{path}.cached.txt``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)

CACHED_TEXT_SUFFIX = ".cached.txt"
CACHEABLE_EXTENSIONS = frozenset({".pdf", ".docx", ".xlsx", ".pptx", ".epub"})


class BlobNotFound(Exception):
    """Raised when a blob path does not exist in the store."""


class BlobStorage(Protocol):
    async def get_blob_size(self, path: str) -> int: ...

    async def get(self, path: str) -> bytes: ...

    async def blob_exists(self, path: str) -> bool: ...


def user_file_path(user_id: str, blob_id: str) -> str:
    return f"{user_id}/uploads/files/{blob_id}"


def user_image_path(user_id: str, blob_id: str) -> str:
    return f"{user_id}/uploads/images/{blob_id}"


def cached_text_path(blob_path: str) -> str:
    return f"{blob_path}{CACHED_TEXT_SUFFIX}"


def should_cache_text(filename: str) -> bool:
    """True for formats whose text extraction is worth caching."""
    return Path(filename.lower()).suffix in CACHEABLE_EXTENSIONS


class LocalBlobStorage:
    """Blob store backed by a local directory."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        target = (self._root / path.lstrip("/")).resolve()
        if not target.is_relative_to(self._root):
            raise BlobNotFound(f"Blob path escapes store root: {path}")
        return target

    async def get_blob_size(self, path: str) -> int:
        target = self._resolve(path)
        try:
            stat = await aiofiles.os.stat(target)
        except FileNotFoundError as exc:
            raise BlobNotFound(path) from exc
        return stat.st_size

    async def get(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            async with aiofiles.open(target, "rb") as f:
                return await f.read()
        except FileNotFoundError as exc:
            raise BlobNotFound(path) from exc

    async def blob_exists(self, path: str) -> bool:
        try:
            return await aiofiles.os.path.isfile(self._resolve(path))
        except BlobNotFound:
            return False
