"""Knowledge-base augmentation for ``bot_id`` requests.

The enricher prepends system messages in this order: uploaded document
summaries, inline documents, transcripts, then the numbered knowledge
base sources.  Citations for those sources go into the metadata
side-channel.  Any failure leaves the context exactly as it was.
"""

from __future__ import annotations

import logging

from chatpipe.configs.agents import OrganizationAgent, find_organization_agent
from chatpipe.core.metrics import CITATIONS_EMITTED_TOTAL
from chatpipe.core.pipeline.context import ChatContext, Message, ProcessedContent
from chatpipe.core.pipeline.stage import PipelineStage
from chatpipe.core.services.rag import RAGService, Retrieval, format_sources
from chatpipe.infra.logging import sanitize_for_log
from chatpipe.infra.telemetry import (
    ATTR_CITATION_COUNT,
    ATTR_RAG_BOT_ID,
    ATTR_RAG_RESULT_COUNT,
    SPAN_RAG_ENRICH,
    tracer,
)

logger = logging.getLogger(__name__)

SOURCES_INSTRUCTIONS = (
    "You have access to the following knowledge base sources. When citing "
    "information, use source numbers in SEPARATE brackets like [1][2][3] - "
    "never group them like [1,2,3]."
)


def processed_content_messages(processed: ProcessedContent) -> list[Message]:
    """System messages carrying the current turn's extracted attachments."""
    messages = []
    if processed.file_summaries:
        body = "\n\n".join(
            f"File: {s.filename}\n{s.summary}" for s in processed.file_summaries
        )
        messages.append(
            Message(
                role="system",
                content=f"The user has uploaded the following documents:\n\n{body}",
            )
        )
    if processed.inline_files:
        body = "\n\n".join(
            f"```{f.filename}\n{f.content}\n```" for f in processed.inline_files
        )
        messages.append(
            Message(
                role="system",
                content=f"The user has uploaded the following documents:\n\n{body}",
            )
        )
    if processed.transcripts:
        body = "\n\n".join(
            f"Audio/Video File: {t.filename}\nTranscript: {t.transcript}"
            for t in processed.transcripts
        )
        messages.append(
            Message(
                role="system",
                content=f"The user has uploaded the following audio/video files:\n\n{body}",
            )
        )
    return messages


def sources_message(retrieval: Retrieval) -> Message:
    return Message(
        role="system",
        content=(
            f"{SOURCES_INSTRUCTIONS}\n\nAvailable sources:\n\n"
            f"{format_sources(retrieval.documents)}"
        ),
    )


def rag_config_metadata(agent: OrganizationAgent, retrieval: Retrieval) -> dict:
    return {
        "bot_id": agent.id,
        "agent_name": agent.name,
        "search_index": agent.rag_config.search_index if agent.rag_config else None,
        "result_count": len(retrieval.documents),
        "date_range": {
            "oldest": retrieval.dates.oldest,
            "newest": retrieval.dates.newest,
        },
    }


class RAGEnricher(PipelineStage):
    name = "RAGEnricher"

    def __init__(self, rag: RAGService, agents: list[OrganizationAgent]) -> None:
        self._rag = rag
        self._agents = agents

    def should_run(self, context: ChatContext) -> bool:
        return bool(context.bot_id)

    async def execute(self, context: ChatContext) -> ChatContext:
        agent = find_organization_agent(self._agents, context.bot_id)
        if agent is None:
            logger.warning(
                "[%s] Unknown bot %s, skipping RAG",
                context.request_id,
                sanitize_for_log(context.bot_id),
            )
            return context

        with tracer.start_as_current_span(SPAN_RAG_ENRICH) as span:
            span.set_attribute(ATTR_RAG_BOT_ID, agent.id)
            try:
                retrieval = await self._rag.retrieve(context.current_messages, agent)
            except Exception as e:
                span.record_exception(e)
                logger.error(
                    "[%s] RAG enrichment failed for %s, continuing without sources: %s",
                    context.request_id,
                    agent.id,
                    sanitize_for_log(e),
                    exc_info=True,
                )
                return context
            span.set_attribute(ATTR_RAG_RESULT_COUNT, len(retrieval.documents))
            span.set_attribute(ATTR_CITATION_COUNT, len(retrieval.citations))

        injected = processed_content_messages(context.processed_content)
        content_injected = bool(injected)
        if retrieval.documents:
            injected.append(sources_message(retrieval))

        CITATIONS_EMITTED_TOTAL.labels(source="rag").inc(len(retrieval.citations))
        logger.info(
            "[%s] RAG added %d source(s) for %s",
            context.request_id,
            len(retrieval.documents),
            agent.id,
        )
        return context.with_(
            enriched_messages=[*injected, *context.current_messages],
            system_prompt=agent.system_prompt or context.system_prompt,
            processed_content=context.processed_content.merge_metadata(
                {
                    "citations": retrieval.citations,
                    "rag_config": rag_config_metadata(agent, retrieval),
                    "content_injected": content_injected,
                }
            ),
        )
