"""Pipeline error taxonomy.

``PipelineError`` carries a machine-readable ``ErrorCode`` and a
``ErrorSeverity``.  Severity drives the runner:

* ``warning`` / ``error`` -- recorded in ``ChatContext.errors``, the
  pipeline keeps going.
* ``critical`` -- aborts the request; the API layer maps it to an HTTP
  error response.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    VALIDATION_FAILED = "VALIDATION_FAILED"
    AUTH_FAILED = "AUTH_FAILED"
    RATE_LIMITED = "RATE_LIMITED"
    PIPELINE_TIMEOUT = "PIPELINE_TIMEOUT"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    FILE_PROCESSING_FAILED = "FILE_PROCESSING_FAILED"
    INVALID_PATH = "INVALID_PATH"
    TRANSCRIPTION_FAILED = "TRANSCRIPTION_FAILED"
    MODEL_CONFIG_INVALID = "MODEL_CONFIG_INVALID"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    NO_RESPONSE = "NO_RESPONSE"
    AGENT_FAILED = "AGENT_FAILED"


class ErrorSeverity(str, Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class PipelineError(Exception):
    """An error raised or recorded while running the chat pipeline."""

    def __init__(
        self,
        message: str,
        code: ErrorCode,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.severity = severity
        self.details = details or {}
        self.cause = cause

    @property
    def is_critical(self) -> bool:
        return self.severity is ErrorSeverity.CRITICAL

    @classmethod
    def warning(cls, message: str, code: ErrorCode, **kwargs: Any) -> PipelineError:
        return cls(message, code, ErrorSeverity.WARNING, **kwargs)

    @classmethod
    def error(cls, message: str, code: ErrorCode, **kwargs: Any) -> PipelineError:
        return cls(message, code, ErrorSeverity.ERROR, **kwargs)

    @classmethod
    def critical(cls, message: str, code: ErrorCode, **kwargs: Any) -> PipelineError:
        return cls(message, code, ErrorSeverity.CRITICAL, **kwargs)

    def __repr__(self) -> str:
        return (
            f"PipelineError(code={self.code.value}, "
            f"severity={self.severity.value}, message={self.message!r})"
        )


class FileValidationError(Exception):
    """A file was rejected before download (size or path)."""

    def __init__(self, message: str, code: ErrorCode) -> None:
        super().__init__(message)
        self.code = code


class UserFacingError(Exception):
    """An error whose message is safe to show to the end user verbatim."""
