"""Global exception handlers, registered as a lifespan dependency."""

import logging
import traceback
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from chatpipe.configs.config import AppConfig, get_app_config
from chatpipe.core.errors import ErrorCode, PipelineError
from chatpipe.core.metrics import RATE_LIMIT_REJECTIONS_TOTAL
from chatpipe.infra.lifespan import get_app
from chatpipe.infra.logging import sanitize_for_log
from chatpipe.infra.rate_limit import RateLimited
from chatpipe.infra.telemetry import get_current_trace_id

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "An error occurred while processing your request."

# Critical pipeline errors the client caused
CLIENT_ERROR_CODES = frozenset(
    {ErrorCode.VALIDATION_FAILED, ErrorCode.FILE_TOO_LARGE, ErrorCode.INVALID_PATH}
)


def _first_validation_message(errors: list[dict]) -> str:
    if not errors:
        return "Invalid request body"
    first = errors[0]
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    return f"{location}: {first.get('msg', 'invalid')}" if location else first.get("msg", "")


async def build_exception_handlers(
    app: Annotated[FastAPI, Depends(get_app)],
    config: Annotated[AppConfig, Depends(get_app_config)],
) -> AsyncGenerator[None, None]:
    """Register custom exception handlers on ``app``."""
    send_traceback = config.api.send_traceback

    def error_response(status_code: int, detail: str, code: str, exc: BaseException) -> JSONResponse:
        content = {"detail": detail, "code": code}
        if send_traceback:
            content["traceback"] = "".join(traceback.format_exception(exc))
        trace_id = get_current_trace_id()
        headers = {"X-Trace-Id": trace_id} if trace_id else None
        return JSONResponse(status_code=status_code, content=content, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        message = _first_validation_message(list(exc.errors()))
        logger.info("Rejected chat request: %s", sanitize_for_log(message))
        return error_response(
            400,
            f"Chat request validation failed: {message}",
            ErrorCode.VALIDATION_FAILED.value,
            exc,
        )

    @app.exception_handler(ValidationError)
    async def handle_validation(request: Request, exc: ValidationError) -> JSONResponse:
        message = _first_validation_message(list(exc.errors()))
        return error_response(
            400,
            f"Chat request validation failed: {message}",
            ErrorCode.VALIDATION_FAILED.value,
            exc,
        )

    @app.exception_handler(RateLimited)
    async def handle_rate_limited(request: Request, exc: RateLimited) -> JSONResponse:
        RATE_LIMIT_REJECTIONS_TOTAL.inc()
        return JSONResponse(
            status_code=429,
            content={"detail": str(exc), "code": ErrorCode.RATE_LIMITED.value},
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(PipelineError)
    async def handle_pipeline_error(
        request: Request, exc: PipelineError
    ) -> JSONResponse:
        if exc.code in CLIENT_ERROR_CODES:
            return error_response(400, exc.message, exc.code.value, exc)
        logger.error(
            "Pipeline error on %s: %s", request.url.path, sanitize_for_log(exc)
        )
        return error_response(500, GENERIC_ERROR_MESSAGE, exc.code.value, exc)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s", request.url.path)
        return error_response(500, GENERIC_ERROR_MESSAGE, "INTERNAL_ERROR", exc)

    # Starlette copies the handlers when it builds the middleware stack,
    # which happens before the lifespan runs.  Rebuild on the next call.
    app.middleware_stack = None
    yield
