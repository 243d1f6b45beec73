"""Agent execution handlers.

Both agent paths post the last (enriched) message to a thread and
stream the run through the capability handler picked from
``agent_capabilities``.  The stream itself is wrapped so that success
and failure are logged with the thread id and duration once the client
has consumed it.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator

from chatpipe.core.capabilities import AgentStreamContext
from chatpipe.core.errors import ErrorCode, PipelineError
from chatpipe.core.metrics import CHAT_REQUEST_DURATION_SECONDS, CHAT_REQUESTS_TOTAL
from chatpipe.core.pipeline.context import (
    AgentCapabilities,
    ChatContext,
    ExecutionStrategy,
)
from chatpipe.core.pipeline.stage import PipelineStage
from chatpipe.core.response import ChatResponse, JSONChatResponse, StreamedChatResponse
from chatpipe.core.services.agents import AgentChatService
from chatpipe.core.services.chat import STREAMING_RESPONSE_HEADERS
from chatpipe.core.stream.metadata import parse_metadata
from chatpipe.infra.logging import sanitize_for_log

logger = logging.getLogger(__name__)

AGENT_DEFAULT_TEMPERATURE = 0.7


async def observed_stream(
    chunks: AsyncIterator[str],
    stream_context: AgentStreamContext,
    request_id: str,
    strategy: str,
) -> AsyncIterator[str]:
    try:
        async for chunk in chunks:
            yield chunk
    except Exception:
        CHAT_REQUESTS_TOTAL.labels(strategy=strategy, status="error").inc()
        logger.exception(
            "[%s] Agent stream failed on thread %s after %.0fms",
            request_id,
            sanitize_for_log(stream_context.thread_id),
            (time.monotonic() - stream_context.started_at) * 1000,
        )
        raise
    duration = time.monotonic() - stream_context.started_at
    CHAT_REQUESTS_TOTAL.labels(strategy=strategy, status="ok").inc()
    CHAT_REQUEST_DURATION_SECONDS.labels(strategy=strategy).observe(duration)
    logger.info(
        "[%s] Agent stream completed on thread %s in %.0fms",
        request_id,
        sanitize_for_log(stream_context.thread_id),
        duration * 1000,
    )


async def run_agent(
    agents: AgentChatService,
    context: ChatContext,
    *,
    agent_id: str,
    temperature: float,
    capabilities: AgentCapabilities,
    strategy: ExecutionStrategy,
) -> ChatResponse:
    """Start the run and shape the response for the request's stream flag."""
    try:
        chunks, stream_context = await agents.run(
            agent_id=agent_id,
            model=context.model,
            message=context.current_messages[-1],
            thread_id=context.thread_id,
            temperature=temperature,
            capabilities=capabilities,
        )
    except Exception:
        CHAT_REQUESTS_TOTAL.labels(strategy=strategy.value, status="error").inc()
        logger.exception(
            "[%s] Agent %s failed to start (thread=%s)",
            context.request_id,
            sanitize_for_log(agent_id),
            sanitize_for_log(context.thread_id),
        )
        raise

    observed = observed_stream(
        chunks, stream_context, context.request_id, strategy.value
    )
    if context.stream:
        return StreamedChatResponse(
            chunks=observed, headers=dict(STREAMING_RESPONSE_HEADERS)
        )

    text, metadata = parse_metadata("".join([chunk async for chunk in observed]))
    body = {"text": text.strip()}
    if metadata is not None:
        body.update(metadata.to_wire())
    return JSONChatResponse(body=body)


class AgentChatHandler(PipelineStage):
    name = "AgentChatHandler"
    terminal = True

    def __init__(self, agents: AgentChatService) -> None:
        self._agents = agents

    def should_run(self, context: ChatContext) -> bool:
        return context.strategy is ExecutionStrategy.AGENT

    async def execute(self, context: ChatContext) -> ChatContext:
        agent_id = context.model.agent_id
        if not agent_id:
            raise PipelineError.critical(
                f"Model {context.model_id} has no agent configured",
                ErrorCode.MODEL_CONFIG_INVALID,
            )
        capabilities = context.agent_capabilities or AgentCapabilities(bing_grounding=True)
        code_interpreter = capabilities.code_interpreter
        logger.info(
            "[%s] Agent chat: agent=%s thread=%s code_interpreter=%s files=%d",
            context.request_id,
            sanitize_for_log(agent_id),
            sanitize_for_log(context.thread_id),
            bool(code_interpreter and code_interpreter.enabled),
            len(code_interpreter.uploaded_files) if code_interpreter else 0,
        )
        response = await run_agent(
            self._agents,
            context,
            agent_id=agent_id,
            temperature=context.temperature or AGENT_DEFAULT_TEMPERATURE,
            capabilities=capabilities,
            strategy=ExecutionStrategy.AGENT,
        )
        return context.with_(response=response)
