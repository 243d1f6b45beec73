"""Prometheus metrics for the chat pipeline.

Custom business metrics that complement the auto-instrumented HTTP
metrics provided by ``prometheus-fastapi-instrumentator``.

All metrics use the ``chatpipe_`` prefix.
"""

import logging

from fastapi import FastAPI
from prometheus_client import Counter, Gauge, Histogram
from prometheus_fastapi_instrumentator import Instrumentator

from chatpipe.configs.config import AppConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Chat request metrics
# ---------------------------------------------------------------------------

CHAT_REQUESTS_TOTAL = Counter(
    "chatpipe_chat_requests_total",
    "Total chat requests handled, by execution strategy and outcome",
    ["strategy", "status"],  # status: "ok" | "error"
)

CHAT_REQUEST_DURATION_SECONDS = Histogram(
    "chatpipe_chat_request_duration_seconds",
    "Time from pipeline start until the terminal handler returned",
    ["strategy"],
    buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, 120),
)

CHAT_STREAMS_ACTIVE = Gauge(
    "chatpipe_chat_streams_active",
    "Number of streamed chat responses currently being sent",
)

CHAT_STREAM_OUTCOMES_TOTAL = Counter(
    "chatpipe_chat_stream_outcomes_total",
    "Streamed response outcomes",
    ["code"],  # "ok" | "REQUEST_TIMEOUT" | "CLIENT_DISCONNECTED" | ...
)

# ---------------------------------------------------------------------------
# Pipeline stage metrics
# ---------------------------------------------------------------------------

STAGE_DURATION_SECONDS = Histogram(
    "chatpipe_stage_duration_seconds",
    "Execution time of a single pipeline stage",
    ["stage"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60),
)

STAGE_OUTCOMES_TOTAL = Counter(
    "chatpipe_stage_outcomes_total",
    "Pipeline stage outcomes",
    ["stage", "outcome"],  # "ok" | "skipped" | "timeout" | "error"
)

# ---------------------------------------------------------------------------
# File processing metrics
# ---------------------------------------------------------------------------

FILES_PROCESSED_TOTAL = Counter(
    "chatpipe_files_processed_total",
    "Attachments processed, by kind and outcome",
    ["kind", "status"],  # kind: document | audio | video | image
)

TRANSCRIPTION_JOBS_TOTAL = Counter(
    "chatpipe_transcription_jobs_total",
    "Transcriptions started, by mode",
    ["mode"],  # "sync" | "chunked"
)

# ---------------------------------------------------------------------------
# RAG / search metrics
# ---------------------------------------------------------------------------

RAG_SEARCH_LATENCY_SECONDS = Histogram(
    "chatpipe_rag_search_latency_seconds",
    "Knowledge-base search latency (reformulate + search + rank)",
    buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10),
)

RAG_RESULTS_RETURNED = Histogram(
    "chatpipe_rag_results_returned",
    "Number of sources injected per RAG enrichment",
    buckets=(0, 1, 2, 3, 5, 10, 20),
)

CITATIONS_EMITTED_TOTAL = Counter(
    "chatpipe_citations_emitted_total",
    "Citations attached to responses, by source",
    ["source"],  # "rag" | "web" | "agent"
)

TOOL_ROUTER_DECISIONS_TOTAL = Counter(
    "chatpipe_tool_router_decisions_total",
    "Web-search routing decisions",
    ["decision"],  # "search" | "skip" | "forced"
)

# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

RATE_LIMIT_REJECTIONS_TOTAL = Counter(
    "chatpipe_rate_limit_rejections_total",
    "Total per-user rate-limit rejections (429 responses)",
)


# ---------------------------------------------------------------------------
# App wiring
# ---------------------------------------------------------------------------


def setup_metrics(app: FastAPI, config: AppConfig) -> None:
    """Set up Prometheus HTTP instrumentation.

    Attaches ``prometheus-fastapi-instrumentator`` middleware and the
    ``/metrics`` endpoint to the FastAPI *app*.  Must run before the app
    starts serving: Starlette refuses new middleware once the stack is
    built.
    """
    Instrumentator(
        should_instrument_requests_inprogress=True,
        excluded_handlers=config.tracing.excluded_urls,
    ).instrument(app).expose(app, endpoint="/metrics")

    logger.info("Prometheus metrics initialised")
