"""Default execution path: a plain provider chat completion."""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from typing import Optional

from chatpipe.core.metrics import CHAT_REQUEST_DURATION_SECONDS, CHAT_REQUESTS_TOTAL
from chatpipe.core.pipeline.context import ChatContext, ExecutionStrategy
from chatpipe.core.pipeline.stage import PipelineStage
from chatpipe.core.response import (
    ChatResponse,
    StreamedChatResponse,
    TextChatResponse,
)
from chatpipe.core.services.chat import STREAMING_RESPONSE_HEADERS, StandardChatService
from chatpipe.core.stream.metadata import (
    PendingTranscription,
    StreamMetadata,
    TranscriptMetadata,
    format_metadata,
)

from .messages import (
    build_final_messages,
    failure_message,
    is_transcript_only,
    transcript_metadata,
)

logger = logging.getLogger(__name__)


async def transcript_stream(
    transcript: TranscriptMetadata, pending: list[PendingTranscription]
) -> AsyncIterator[str]:
    """Echo the transcript back without calling a model."""
    yield transcript.transcript
    yield format_metadata(
        StreamMetadata(transcript=transcript, pending_transcriptions=pending)
    )


class StandardChatHandler(PipelineStage):
    name = "StandardChatHandler"
    terminal = True

    def __init__(self, chat: StandardChatService) -> None:
        self._chat = chat

    def should_run(self, context: ChatContext) -> bool:
        return context.strategy is ExecutionStrategy.STANDARD

    async def execute(self, context: ChatContext) -> ChatContext:
        started = time.perf_counter()
        strategy = ExecutionStrategy.STANDARD.value
        try:
            response = await self._respond(context)
        except Exception:
            CHAT_REQUESTS_TOTAL.labels(strategy=strategy, status="error").inc()
            logger.exception(
                "[%s] Standard chat failed after %.0fms (model=%s)",
                context.request_id,
                (time.perf_counter() - started) * 1000,
                context.model_id,
            )
            raise

        CHAT_REQUESTS_TOTAL.labels(strategy=strategy, status="ok").inc()
        CHAT_REQUEST_DURATION_SECONDS.labels(strategy=strategy).observe(
            time.perf_counter() - started
        )
        return context.with_(response=response)

    async def _respond(self, context: ChatContext) -> ChatResponse:
        processed = context.processed_content
        transcript: Optional[TranscriptMetadata] = transcript_metadata(processed)

        if transcript is not None and is_transcript_only(context.messages[-1]):
            logger.info(
                "[%s] Transcript-only turn, returning transcript without a model call",
                context.request_id,
            )
            return StreamedChatResponse(
                chunks=transcript_stream(transcript, processed.pending_transcriptions),
                headers=dict(STREAMING_RESPONSE_HEADERS),
            )

        if processed.file_processing_failed and context.errors:
            logger.info("[%s] File processing failed, answering with notice", context.request_id)
            return TextChatResponse(text=failure_message(context.errors))

        return await self._chat.handle_chat(
            messages=build_final_messages(context),
            model=context.model,
            user=context.user,
            system_prompt=context.system_prompt,
            temperature=context.temperature,
            stream=context.stream,
            reasoning_effort=context.reasoning_effort,
            verbosity=context.verbosity,
            tone=context.tone,
            transcript=transcript,
            citations=processed.citations,
            pending_transcriptions=processed.pending_transcriptions,
            should_stop=context.stop_signal,
        )
