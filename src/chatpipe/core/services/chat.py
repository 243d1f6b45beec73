"""Standard (non-agent) chat completions.

``StandardChatService`` is the last step of the default path: apply the
tone, fit the history into the model window, pick the provider handler
and wrap whatever comes back.  Streams go through
``process_chat_stream`` so citations, transcript info and pending jobs
ride along in the trailing metadata block.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from chatpipe.configs.models import ModelConfig
from chatpipe.configs.prompts import apply_tone
from chatpipe.core.pipeline.context import ChatUser, Message, Tone
from chatpipe.core.providers.base import Completion
from chatpipe.core.providers.factory import (
    ProviderClients,
    create_model_handler,
    handler_name,
)
from chatpipe.core.response import ChatResponse, JSONChatResponse, StreamedChatResponse
from chatpipe.core.stream.metadata import (
    Citation,
    PendingTranscription,
    TranscriptMetadata,
)
from chatpipe.core.stream.processor import (
    StopSignal,
    parse_thinking,
    process_chat_stream,
)
from chatpipe.infra.logging import sanitize_for_log
from chatpipe.infra.telemetry import (
    ATTR_MODEL_ID,
    ATTR_MODEL_SDK,
    SPAN_PROVIDER_CHAT,
    tracer,
)
from chatpipe.infra.tokens import estimate_tokens

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.5

STREAMING_RESPONSE_HEADERS = {
    "Content-Type": "text/plain; charset=utf-8",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def _message_tokens(message: Message) -> int:
    return estimate_tokens(message.text())


def fit_history(
    messages: list[Message], system_prompt: str, model: ModelConfig
) -> list[Message]:
    """Drop the oldest turns until the prompt fits the model window.

    The last message is always kept, as are system messages injected by
    the enrichers.
    """
    if not messages:
        return []
    budget = model.max_length - model.token_limit - estimate_tokens(system_prompt)
    *history, last = messages
    used = _message_tokens(last) + sum(
        _message_tokens(m) for m in history if m.role == "system"
    )

    kept: list[Message] = []
    full = False
    for message in reversed(history):
        if message.role == "system":
            kept.append(message)
            continue
        tokens = _message_tokens(message)
        if full or used + tokens > budget:
            full = True
            continue
        used += tokens
        kept.append(message)
    kept.reverse()
    if full:
        logger.debug("History trimmed to %d of %d messages", len(kept) + 1, len(messages))
    return [*kept, last]


class StandardChatService:
    """Provider dispatch for the default execution strategy."""

    def __init__(self, clients: ProviderClients) -> None:
        self._clients = clients

    async def handle_chat(
        self,
        *,
        messages: list[Message],
        model: ModelConfig,
        user: ChatUser,
        system_prompt: str,
        temperature: Optional[float] = None,
        stream: bool = True,
        reasoning_effort: Optional[str] = None,
        verbosity: Optional[str] = None,
        tone: Optional[Tone] = None,
        transcript: Optional[TranscriptMetadata] = None,
        citations: Optional[list[Citation]] = None,
        pending_transcriptions: Optional[list[PendingTranscription]] = None,
        should_stop: Optional[StopSignal] = None,
    ) -> ChatResponse:
        started = time.perf_counter()
        prompt = system_prompt
        if tone is not None:
            prompt = apply_tone(system_prompt, tone.name, tone.voice_rules)
            logger.debug(
                "Applied tone %s (prompt %d -> %d chars)",
                sanitize_for_log(tone.name),
                len(system_prompt),
                len(prompt),
            )

        handler = create_model_handler(model, self._clients)
        logger.info(
            "Using %s for model %s", handler_name(model), sanitize_for_log(model.id)
        )
        to_send = fit_history(messages, prompt, model)

        with tracer.start_as_current_span(SPAN_PROVIDER_CHAT) as span:
            span.set_attribute(ATTR_MODEL_ID, model.id)
            span.set_attribute(ATTR_MODEL_SDK, model.sdk.value)
            params = handler.build_request_params(
                model.model_id_for_request,
                handler.prepare_messages(to_send, prompt, model),
                DEFAULT_TEMPERATURE if temperature is None else temperature,
                user,
                stream,
                model,
                reasoning_effort or model.reasoning_effort,
                verbosity or model.verbosity,
            )
            result = await handler.execute_request(params)

        logger.debug(
            "Provider call for %s returned in %.1fms",
            sanitize_for_log(model.id),
            (time.perf_counter() - started) * 1000,
        )

        if isinstance(result, Completion):
            thinking, text = parse_thinking(result.text)
            body = {"text": text}
            if result.thinking or thinking:
                body["thinking"] = result.thinking or thinking
            return JSONChatResponse(body=body)

        return StreamedChatResponse(
            chunks=process_chat_stream(
                result,
                citations=citations,
                transcript=transcript,
                pending_transcriptions=pending_transcriptions,
                should_stop=should_stop,
            ),
            headers=dict(STREAMING_RESPONSE_HEADERS),
        )
