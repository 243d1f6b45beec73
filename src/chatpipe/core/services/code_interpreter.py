"""Code-interpreter routing and file staging."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from chatpipe.core.pipeline.context import ChatUser, Message
from chatpipe.core.stream.metadata import UploadedFileRef
from chatpipe.infra.logging import sanitize_for_log

from .agents import AgentBackend
from .auxiliary import AuxiliaryModel
from .files import FileProcessingService

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Supported files
# ---------------------------------------------------------------------------

FILE_TYPES: dict[str, str] = {
    ".csv": "data",
    ".json": "data",
    ".xml": "data",
    ".parquet": "data",
    ".tsv": "data",
    ".xlsx": "spreadsheet",
    ".xls": "spreadsheet",
    ".pdf": "document",
    ".docx": "document",
    ".doc": "document",
    ".txt": "text",
    ".md": "text",
    ".py": "code",
    ".r": "code",
    ".sql": "code",
    ".ipynb": "notebook",
    ".png": "image",
    ".jpg": "image",
    ".jpeg": "image",
    ".gif": "image",
}

MIME_TYPES: dict[str, str] = {
    ".csv": "text/csv",
    ".json": "application/json",
    ".xml": "application/xml",
    ".parquet": "application/octet-stream",
    ".tsv": "text/tab-separated-values",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".xls": "application/vnd.ms-excel",
    ".pdf": "application/pdf",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".doc": "application/msword",
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".py": "text/x-python",
    ".r": "text/plain",
    ".sql": "application/sql",
    ".ipynb": "application/x-ipynb+json",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
}


def _suffix(filename: str) -> str:
    return Path(filename.lower()).suffix


def get_file_type(filename: str) -> str:
    return FILE_TYPES.get(_suffix(filename), "unknown")


def get_mime_type(filename: str) -> Optional[str]:
    return MIME_TYPES.get(_suffix(filename))


def is_code_interpreter_compatible(filename: Optional[str]) -> bool:
    return bool(filename) and _suffix(filename) in FILE_TYPES


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------

ROUTER_HISTORY_WINDOW = 4

_ROUTER_PROMPT = """You are a routing assistant that determines if a query requires Code Interpreter (Python code execution) capabilities.

Code Interpreter IS needed for:
- Generating files (Excel, CSV, charts, images, documents from scratch)
- Data analysis requiring computation (statistics, aggregations, trends, calculations)
- Data transformation (format conversion like PDF to Excel, data extraction to structured format)
- Running Python code or scripts on uploaded data
- Creating visualizations, plots, or charts
- Processing, cleaning, or restructuring data
- Mathematical or scientific computations
- File format conversions (e.g., PDF tables to Excel, JSON to CSV)

Code Interpreter is NOT needed for:
- Summarizing document contents (reading and explaining)
- Explaining or describing code without executing it
- Rewriting code in another programming language (text transformation)
- Answering general questions about file contents
- Text extraction or simple reading of documents
- Translation of content
- Creative writing or text generation
- General knowledge questions
- Code review or explanation

{file_context}

Analyze the user's message and determine if it requires Code Interpreter capabilities."""


class CodeInterpreterDecision(BaseModel):
    needs_code_interpreter: bool = Field(
        description="Whether Code Interpreter (Python execution) is needed for this query"
    )
    reasoning: str = Field(description="Brief explanation of the routing decision")


class CodeInterpreterRouterService:
    def __init__(self, auxiliary: Optional[AuxiliaryModel]) -> None:
        self._auxiliary = auxiliary

    async def route(
        self, messages: list[Message], filenames: list[str]
    ) -> CodeInterpreterDecision:
        """Classify the turn; any failure means "not needed"."""
        if self._auxiliary is None:
            return CodeInterpreterDecision(
                needs_code_interpreter=False, reasoning="No routing model configured"
            )
        file_context = (
            f"Files present: {', '.join(filenames)}" if filenames else "No files uploaded"
        )
        try:
            decision = await self._auxiliary.decide(
                CodeInterpreterDecision,
                _ROUTER_PROMPT.format(file_context=file_context),
                [(m.role, m.text()) for m in messages[-ROUTER_HISTORY_WINDOW:]],
            )
        except Exception as e:
            logger.warning("Code interpreter routing failed: %s", e)
            return CodeInterpreterDecision(
                needs_code_interpreter=False,
                reasoning="Error during intent analysis, defaulting to standard chat",
            )
        logger.info(
            "Code interpreter routing: needed=%s (%s)",
            decision.needs_code_interpreter,
            sanitize_for_log(decision.reasoning),
        )
        return decision


# ---------------------------------------------------------------------------
# File staging
# ---------------------------------------------------------------------------


class CodeInterpreterFileService:
    """Copies attachments from blob storage to the agent file store."""

    def __init__(
        self, backend: Optional[AgentBackend], files: FileProcessingService
    ) -> None:
        self._backend = backend
        self._files = files

    async def upload_file(
        self, file_url: str, filename: str, user: ChatUser
    ) -> UploadedFileRef:
        _, path = self._files.get_temp_file_path(file_url)
        try:
            await self._files.download_file(file_url, path, user)
            data = await self._files.read_file(path)
        finally:
            await self._files.cleanup_file(path)
        file_id = await self._backend.upload_file(filename, data, purpose="assistants")
        logger.info("Uploaded %s for code interpreter as %s", sanitize_for_log(filename), file_id)
        return UploadedFileRef(id=file_id, filename=filename, purpose="assistants")

    async def upload_files(
        self, files: list[tuple[str, str]], user: ChatUser
    ) -> list[UploadedFileRef]:
        """Upload ``(url, filename)`` pairs concurrently, skipping failures."""
        supported = [(u, f) for u, f in files if is_code_interpreter_compatible(f)]
        if self._backend is None:
            logger.warning("No agent backend configured, skipping %d upload(s)", len(supported))
            return []
        results = await asyncio.gather(
            *(self.upload_file(url, filename, user) for url, filename in supported),
            return_exceptions=True,
        )
        uploaded = []
        for (_, filename), result in zip(supported, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Skipping %s, upload failed: %s", sanitize_for_log(filename), result
                )
                continue
            uploaded.append(result)
        return uploaded
