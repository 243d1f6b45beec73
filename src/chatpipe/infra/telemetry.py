"""OpenTelemetry bootstrap: tracing initialisation and span constants.

Configures a ``TracerProvider`` with an OTLP HTTP exporter when tracing is
enabled via ``TracingConfig``.  When disabled the module is a graceful no-op
(local dev without a collector); ``tracer`` still hands out non-recording
spans so call sites never need to check.

Auto-instrumentations wired here:

- **FastAPI** (inbound HTTP spans)
- **httpx** (outbound HTTP spans, covers search and transcription calls)

Usage::

    from chatpipe.infra.telemetry import SPAN_PIPELINE_STAGE, tracer

    with tracer.start_as_current_span(SPAN_PIPELINE_STAGE) as span:
        span.set_attribute(ATTR_STAGE_NAME, stage.name)
"""

from __future__ import annotations

import base64
import logging

from opentelemetry import trace
from opentelemetry.trace import format_trace_id

from chatpipe.configs.system import TracingConfig

logger = logging.getLogger(__name__)

tracer = trace.get_tracer("chatpipe")

# ---------------------------------------------------------------------------
# Span names
# ---------------------------------------------------------------------------

SPAN_PIPELINE_EXECUTE = "pipeline.execute"
SPAN_PIPELINE_STAGE = "pipeline.stage"
SPAN_FILE_PROCESS = "file.process"
SPAN_RAG_ENRICH = "rag.enrich"
SPAN_RAG_SEARCH = "rag.search"
SPAN_TOOL_ROUTER = "tool_router.enrich"
SPAN_AGENT_EXECUTE = "agent.execute"
SPAN_PROVIDER_CHAT = "provider.chat"
SPAN_STREAM_PROCESS = "stream.process"

# ---------------------------------------------------------------------------
# Span attribute keys
# ---------------------------------------------------------------------------

ATTR_STAGE_NAME = "pipeline.stage"
ATTR_STAGE_OUTCOME = "pipeline.stage_outcome"
ATTR_STRATEGY = "pipeline.strategy"
ATTR_ERROR_COUNT = "pipeline.error_count"

ATTR_FILE_COUNT = "file.count"

ATTR_MODEL_ID = "model.id"
ATTR_MODEL_SDK = "model.sdk"

ATTR_RAG_BOT_ID = "rag.bot_id"
ATTR_RAG_QUERY_LEN = "rag.query_len"
ATTR_RAG_TOP_K = "rag.top_k"
ATTR_RAG_RESULT_COUNT = "rag.result_count"

ATTR_TOOL_SELECTED = "tool_router.tools"
ATTR_CITATION_COUNT = "citations.count"

ATTR_AGENT_ID = "agent.id"
ATTR_AGENT_THREAD_ID = "agent.thread_id"
ATTR_AGENT_CAPABILITY = "agent.capability"

ATTR_STREAM_ERROR_CODE = "stream.error_code"


def init_telemetry(
    app: object | None = None,
    settings: TracingConfig | None = None,
) -> bool:
    """Initialise the OTEL ``TracerProvider`` and auto-instrumentations.

    Returns ``True`` when tracing was switched on.
    """
    if settings is None or not settings.enabled:
        logger.info("OpenTelemetry tracing disabled.")
        return False

    if not settings.endpoint:
        logger.warning(
            "Tracing enabled but no endpoint configured, "
            "skipping OpenTelemetry setup."
        )
        return False

    from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
        OTLPSpanExporter,
    )
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor
    from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

    resource = Resource.create({"service.name": settings.service_name})
    sampler = ParentBased(root=TraceIdRatioBased(settings.sample_rate))
    provider = TracerProvider(resource=resource, sampler=sampler)

    headers: dict[str, str] = {}
    if settings.username and settings.password:
        credentials = f"{settings.username}:{settings.password}"
        encoded = base64.b64encode(credentials.encode()).decode()
        headers["Authorization"] = f"Basic {encoded}"

    exporter = OTLPSpanExporter(endpoint=settings.endpoint, headers=headers)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    if app is not None:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        excluded = ",".join(settings.excluded_urls) if settings.excluded_urls else ""
        FastAPIInstrumentor.instrument_app(app, excluded_urls=excluded)

    from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

    HTTPXClientInstrumentor().instrument()

    logger.info(
        "OpenTelemetry tracing initialised (service=%s).", settings.service_name
    )
    return True


def get_current_trace_id() -> str | None:
    """Return the active OTEL trace ID as a 32-char hex string, or ``None``."""
    span = trace.get_current_span()
    ctx = span.get_span_context()
    if ctx is None or not ctx.is_valid:
        return None
    return format_trace_id(ctx.trace_id)

