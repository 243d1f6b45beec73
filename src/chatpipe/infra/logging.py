"""Structured logging bootstrap.

Configures the root logger so every ``logging.getLogger(__name__)`` call
across the app (and uvicorn) emits either:

* **JSON lines** (``json_output=True``, default), one object per record
  with ``timestamp``, ``level``, ``logger``, ``message``.
* **Human-readable** (``json_output=False``), coloured lines for local
  development.

When OpenTelemetry tracing is active the current ``trace_id`` and
``span_id`` are injected into every log record.

User-controlled values (filenames, queries, provider errors) go through
``sanitize_for_log`` before they are logged so a crafted newline cannot
forge extra log lines.
"""

from __future__ import annotations

import json
import logging
import re
import sys

from opentelemetry import trace

from chatpipe.configs.system import LoggingConfig

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_NEWLINES = re.compile(r"[\r\n]+")
_MAX_LOG_VALUE = 2000


class _TraceContextFilter(logging.Filter):
    """Injects OTEL trace/span IDs into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        span = trace.get_current_span()
        ctx = span.get_span_context()
        if ctx and ctx.is_valid:
            record.trace_id = format(ctx.trace_id, "032x")  # type: ignore[attr-defined]
            record.span_id = format(ctx.span_id, "016x")  # type: ignore[attr-defined]
        else:
            record.trace_id = ""  # type: ignore[attr-defined]
            record.span_id = ""  # type: ignore[attr-defined]
        return True


def sanitize_for_log(value: object) -> str:
    """Render *value* as a single printable line, truncated."""
    if value is None:
        return "None"
    if isinstance(value, BaseException):
        text = str(value) or type(value).__name__
    elif isinstance(value, (dict, list)):
        try:
            text = json.dumps(value, default=str)
        except (TypeError, ValueError):
            text = "[Object]"
    else:
        text = str(value)
    text = _CONTROL_CHARS.sub("", _NEWLINES.sub(" ", text)).strip()
    if len(text) > _MAX_LOG_VALUE:
        text = text[:_MAX_LOG_VALUE] + "..."
    return text


_DEV_FORMAT = "%(levelprefix)s %(asctime)s %(name)s  %(message)s"
_DEV_DATEFMT = "%H:%M:%S"


def setup_logging(config: LoggingConfig | None = None) -> None:
    """Configure the root logger (call once at startup, before lifespan)."""
    if config is None:
        config = LoggingConfig()

    root = logging.getLogger()
    root.setLevel(config.level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(_TraceContextFilter())

    if config.json_output:
        from pythonjsonlogger.json import JsonFormatter

        formatter: logging.Formatter = JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s "
            "%(trace_id)s %(span_id)s",
            rename_fields={
                "asctime": "timestamp",
                "levelname": "level",
                "name": "logger",
            },
            defaults={"trace_id": "", "span_id": ""},
        )
    else:
        from uvicorn.logging import DefaultFormatter

        formatter = DefaultFormatter(
            fmt=_DEV_FORMAT,
            datefmt=_DEV_DATEFMT,
            use_colors=True,
        )

    handler.setFormatter(formatter)
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvi = logging.getLogger(name)
        uvi.handlers = [handler]
        uvi.propagate = False

    for noisy in ("httpx", "httpcore", "opentelemetry", "openai", "anthropic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
