"""Chat API endpoint implementation."""

import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

from chatpipe.core.pipeline.builder import build_chat_context
from chatpipe.core.pipeline.context import ChatContext
from chatpipe.core.response import (
    JSONChatResponse,
    StreamedChatResponse,
    TextChatResponse,
)
from chatpipe.infra.id_utils import generate_id
from chatpipe.infra.rate_limit import RateLimitInfo

from .deps import AppConfigDep, ContainerDep, CurrentUserDep, RateLimiterDep
from .models import ChatRequest, TranscriptionJobResponse, validate_request_size
from .streaming import disconnect_signal, text_stream

logger = logging.getLogger(__name__)

STREAMING_RESPONSE_MEDIA_TYPE = "text/plain"

router = APIRouter(prefix="/api/v1", tags=["chat"])


def rate_limit_headers(info: Optional[RateLimitInfo]) -> dict[str, str]:
    if info is None:
        return {}
    return {
        "X-RateLimit-Limit": str(info.limit),
        "X-RateLimit-Remaining": str(info.remaining),
        "X-RateLimit-Reset": str(int(info.reset_at)),
    }


def to_http_response(
    context: ChatContext, request_timeout: timedelta, request: Request
) -> Response:
    """Map the handler's response artifact onto a Starlette response."""
    headers = rate_limit_headers(context.rate_limit_info)
    response = context.response
    if isinstance(response, StreamedChatResponse):
        return StreamingResponse(
            text_stream(
                response.chunks,
                request_id=context.request_id,
                request_timeout=request_timeout,
                should_stop=disconnect_signal(request),
            ),
            media_type=STREAMING_RESPONSE_MEDIA_TYPE,
            headers={**response.headers, **headers},
        )
    if isinstance(response, JSONChatResponse):
        return JSONResponse(
            response.body, status_code=response.status_code, headers=headers
        )
    if isinstance(response, TextChatResponse):
        return PlainTextResponse(
            response.text, status_code=response.status_code, headers=headers
        )
    raise TypeError(f"Unsupported chat response: {type(response).__name__}")


@router.post("/chat")
async def chat(
    request: Request,
    user: CurrentUserDep,
    config: AppConfigDep,
    container: ContainerDep,
    rate_limiter: RateLimiterDep,
) -> Response:
    """Run one chat turn through the pipeline.

    The body is a ``ChatRequest``.  Depending on the request and the
    route the pipeline takes, the answer is a ``text/plain`` stream that
    ends with a metadata block, a JSON ``{"text": ...}`` body
    (``stream=false``) or a plain-text notice produced without a model
    call.
    """
    raw = await request.body()
    validate_request_size(raw, config.api.max_request_bytes)
    chat_request = ChatRequest.model_validate_json(raw)

    request_id = generate_id("req")
    context = await build_chat_context(
        chat_request,
        user,
        config,
        container,
        rate_limiter=rate_limiter,
        request_id=request_id,
        stop_signal=disconnect_signal(request),
    )
    result = await container.pipeline.execute(context)
    if result.errors:
        logger.info(
            "[%s] Completed with %d recorded error(s): %s",
            request_id,
            len(result.errors),
            [e.code.value for e in result.errors],
        )
    return to_http_response(result, config.api.request_timeout, request)


@router.get("/transcriptions/{job_id}", response_model=TranscriptionJobResponse)
async def get_transcription_job(
    job_id: str,
    user: CurrentUserDep,
    container: ContainerDep,
) -> TranscriptionJobResponse:
    """Status of a chunked transcription job, for the client poller."""
    job = container.chunked.get_job(job_id) if container.chunked else None
    # Another user's job is indistinguishable from a missing one
    if job is None or job.user_id != user.id:
        raise HTTPException(status_code=404, detail="Transcription job not found")
    return TranscriptionJobResponse.model_validate(job.to_dict())
