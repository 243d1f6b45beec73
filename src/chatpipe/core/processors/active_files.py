"""Active files: documents kept in context across turns.

``ActiveFileProcessor`` extracts text for active files that are not
ready yet (at most three at a time).  ``ActiveFileInjector`` then picks
the files that fit a small token budget and appends them to the system
prompt as an ``[[Active Files Context]]`` block.  The message body is
left alone.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Optional

from chatpipe.core.pipeline.context import (
    ActiveFile,
    ChatContext,
    ChatUser,
    ProcessedActiveContent,
)
from chatpipe.core.pipeline.stage import PipelineStage
from chatpipe.core.services.documents import load_document
from chatpipe.core.services.files import FileProcessingService
from chatpipe.infra.logging import sanitize_for_log
from chatpipe.infra.tokens import count_tokens

logger = logging.getLogger(__name__)

ACTIVE_FILE_CONCURRENCY = 3
DEFAULT_TOKEN_BUDGET = 2000
MIN_FILE_TOKENS = 200
UNKNOWN_FILE_BYTES = 50_000
CONTEXT_HEADER = "[[Active Files Context]]"

SelectionPolicy = Literal["recent", "pinned", "sizeAsc"]

_IMAGE_NAME = re.compile(r"\.(png|jpe?g|gif|webp|bmp|svg)$", re.IGNORECASE)


def is_image_file(file: ActiveFile) -> bool:
    if file.mime_type and file.mime_type.startswith("image/"):
        return True
    return bool(_IMAGE_NAME.search(file.original_filename or ""))


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------


def needs_processing(file: ActiveFile) -> bool:
    if is_image_file(file):
        return False
    return file.status != "ready" or file.processed_content is None


class ActiveFileProcessor(PipelineStage):
    name = "ActiveFileProcessor"

    def __init__(self, files: FileProcessingService) -> None:
        self._files = files

    def should_run(self, context: ChatContext) -> bool:
        return any(needs_processing(f) for f in context.active_files)

    async def execute(self, context: ChatContext) -> ChatContext:
        limiter = asyncio.Semaphore(ACTIVE_FILE_CONCURRENCY)

        async def run(file: ActiveFile) -> ActiveFile:
            if not needs_processing(file):
                return file
            async with limiter:
                return await self.process_file(file, context.user)

        updated = await asyncio.gather(*(run(f) for f in context.active_files))
        ready = sum(1 for f in updated if f.status == "ready")
        logger.info(
            "[%s] Active files: %d/%d ready", context.request_id, ready, len(updated)
        )
        return context.with_(active_files=list(updated))

    async def process_file(self, file: ActiveFile, user: ChatUser) -> ActiveFile:
        """Extract *file* and return the updated record; never raises."""
        path: Optional[Path] = None
        try:
            _, path = self._files.get_temp_file_path(file.url)
            result = await self._files.download_file_prefer_cached(
                file.url, path, user, file.original_filename
            )
            data = await self._files.read_file(path)
            if result.used_cache:
                text = data.decode("utf-8", errors="replace")
            else:
                text = await asyncio.to_thread(load_document, data, file.original_filename)
            now = _now()
            return file.model_copy(
                update={
                    "status": "ready",
                    "error_message": None,
                    "last_used_at": now,
                    "processed_content": ProcessedActiveContent(
                        type="document",
                        content=text,
                        token_estimate=count_tokens(text),
                        processed_at=now,
                    ),
                }
            )
        except Exception as e:
            logger.warning(
                "Active file %s failed: %s", sanitize_for_log(file.original_filename), e
            )
            return file.model_copy(update={"status": "error", "error_message": str(e)})
        finally:
            if path is not None:
                await self._files.cleanup_file(path)


# ---------------------------------------------------------------------------
# Selection and injection
# ---------------------------------------------------------------------------


def estimate_file_tokens(file: ActiveFile) -> int:
    if file.processed_content and file.processed_content.token_estimate:
        return file.processed_content.token_estimate
    return max(MIN_FILE_TOKENS, (file.size_bytes or UNKNOWN_FILE_BYTES) // 4)


def _by_recency(files: list[ActiveFile]) -> list[ActiveFile]:
    return sorted(files, key=lambda f: f.recency_key, reverse=True)


def select_files_for_budget(
    files: list[ActiveFile],
    budget: int = DEFAULT_TOKEN_BUDGET,
    policy: SelectionPolicy = "recent",
) -> list[ActiveFile]:
    """Greedy fill of *budget* tokens.

    Pinned files go first, newest first within each group; ``sizeAsc``
    packs the smallest files first instead.  At least one file is always
    returned when *files* is not empty.
    """
    if policy == "sizeAsc":
        ordered = sorted(files, key=estimate_file_tokens)
    else:
        ordered = _by_recency([f for f in files if f.pinned]) + _by_recency(
            [f for f in files if not f.pinned]
        )

    selected: list[ActiveFile] = []
    used = 0
    for file in ordered:
        tokens = estimate_file_tokens(file)
        if used + tokens <= budget:
            selected.append(file)
            used += tokens
    return selected or ordered[:1]


def build_active_file_text_block(files: list[ActiveFile]) -> str:
    seen: set[str] = set()
    unique = []
    for file in files:
        if file.id not in seen:
            seen.add(file.id)
            unique.append(file)

    parts = [CONTEXT_HEADER]
    for file in _by_recency(unique):
        label = file.original_filename or file.id
        content = file.processed_content
        body = content.summary or content.content if content else ""
        if body:
            parts.append(f"[{label}]\n{body}")
        elif file.status == "error":
            parts.append(f"[{label}] (content could not be processed)")
        else:
            parts.append(f"[{label}] (content processing pending)")
    return "\n\n".join(parts)


def vision_note(image_count: int) -> str:
    return (
        f"Active images referenced ({image_count}). "
        "Current model may not support vision."
    )


class ActiveFileInjector(PipelineStage):
    name = "ActiveFileInjector"

    def __init__(
        self,
        budget: int = DEFAULT_TOKEN_BUDGET,
        policy: SelectionPolicy = "recent",
    ) -> None:
        self._budget = budget
        self._policy = policy

    def should_run(self, context: ChatContext) -> bool:
        return bool(context.active_files)

    async def execute(self, context: ChatContext) -> ChatContext:
        documents = [f for f in context.active_files if not is_image_file(f)]
        images = [f for f in context.active_files if is_image_file(f)]

        sections = []
        selected = select_files_for_budget(documents, self._budget, self._policy)
        if selected:
            sections.append(build_active_file_text_block(selected))
        if images and not context.model.vision:
            sections.append(vision_note(len(images)))
        if not sections:
            return context

        logger.debug(
            "[%s] Injecting %d/%d active file(s), %d image(s)",
            context.request_id,
            len(selected),
            len(documents),
            len(images),
        )
        return context.with_(
            system_prompt="\n\n".join([context.system_prompt, *sections])
        )
