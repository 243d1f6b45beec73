"""Streaming response wrapper.

Wraps the text chunks produced by a handler with the request timeout,
client-disconnect detection, metrics and a tracing span.  Handlers stay
free of transport concerns.  Unlike enrichment failures, an error raised
mid-stream is logged and re-raised so the transport aborts the response
instead of silently truncating it.
"""

import asyncio
import logging
import time
from collections.abc import AsyncGenerator, AsyncIterator
from datetime import timedelta
from typing import Optional

from fastapi import Request

from chatpipe.core.metrics import CHAT_STREAM_OUTCOMES_TOTAL, CHAT_STREAMS_ACTIVE
from chatpipe.core.stream.processor import StopSignal
from chatpipe.infra.telemetry import (
    ATTR_STREAM_ERROR_CODE,
    SPAN_STREAM_PROCESS,
    tracer,
)

logger = logging.getLogger(__name__)


def disconnect_signal(request: Request) -> StopSignal:
    """A stop signal that fires once the client has gone away."""

    async def should_stop() -> bool:
        return await request.is_disconnected()

    return should_stop


async def text_stream(
    chunks: AsyncIterator[str],
    *,
    request_id: str,
    request_timeout: timedelta,
    should_stop: Optional[StopSignal] = None,
) -> AsyncGenerator[str, None]:
    """Relay *chunks* with timeout enforcement and outcome metrics."""
    with tracer.start_as_current_span(SPAN_STREAM_PROCESS) as span:
        code = "ok"
        sent = 0
        CHAT_STREAMS_ACTIVE.inc()
        start = time.monotonic()
        try:
            async with asyncio.timeout(request_timeout.total_seconds()):
                async for chunk in chunks:
                    if should_stop is not None and await should_stop():
                        code = "CLIENT_DISCONNECTED"
                        logger.info(
                            "[%s] Client disconnected after %d chunk(s)",
                            request_id,
                            sent,
                        )
                        break
                    sent += 1
                    yield chunk
        except TimeoutError:
            code = "REQUEST_TIMEOUT"
            logger.warning(
                "[%s] Stream timed out after %s", request_id, request_timeout
            )
            raise
        except asyncio.CancelledError:
            code = "CANCELLED"
            raise
        except Exception as e:
            code = "PROCESSING_ERROR"
            span.record_exception(e)
            logger.exception("[%s] Stream failed after %d chunk(s)", request_id, sent)
            raise
        finally:
            span.set_attribute(ATTR_STREAM_ERROR_CODE, code)
            CHAT_STREAM_OUTCOMES_TOTAL.labels(code=code).inc()
            CHAT_STREAMS_ACTIVE.dec()
            logger.debug(
                "[%s] Stream finished (%s) in %.0fms",
                request_id,
                code,
                (time.monotonic() - start) * 1000,
            )
