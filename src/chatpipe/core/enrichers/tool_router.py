"""Web search routing.

Citation numbers continue after whatever RAG already recorded: with
``n`` knowledge-base citations the web results become ``n+1..n+m``,
both in the metadata and in the text injected for the model.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from chatpipe.configs.agents import OrganizationAgent, find_organization_agent
from chatpipe.configs.models import ModelConfig
from chatpipe.core.metrics import CITATIONS_EMITTED_TOTAL
from chatpipe.core.pipeline.context import (
    ChatContext,
    Message,
    ProcessedContent,
    SearchMode,
)
from chatpipe.core.pipeline.stage import PipelineStage
from chatpipe.core.services.tool_router import (
    TOOL_WEB_SEARCH,
    ToolRouterService,
    WebSearchTool,
)
from chatpipe.core.stream.metadata import Citation
from chatpipe.infra.logging import sanitize_for_log
from chatpipe.infra.telemetry import (
    ATTR_CITATION_COUNT,
    ATTR_TOOL_SELECTED,
    SPAN_TOOL_ROUTER,
    tracer,
)

logger = logging.getLogger(__name__)

_SEARCH_MODES = (SearchMode.INTELLIGENT, SearchMode.ALWAYS)
_NUMBER_MARKER = re.compile(r"\[(\d+)\]")

CITATION_INSTRUCTIONS = (
    "IMPORTANT: When referencing these sources in your response, use citation "
    "markers in SEPARATE brackets like [1][2][3] - never group them like "
    "[1,2,3]. Do NOT include source information (URLs, titles, or dates) in "
    "your response text. The citation details will be displayed separately "
    "to the user."
)


def describe_current_message(message: Message, processed: ProcessedContent) -> str:
    """The last turn plus extracted attachment text, for the router."""
    parts = [message.text() or "[non-text content]"]
    parts += [f"[File: {s.filename}]\n{s.summary}" for s in processed.file_summaries]
    parts += [f"[File: {f.filename}]\n{f.content}" for f in processed.inline_files]
    parts += [f"[Audio/Video: {t.filename}]\n{t.transcript}" for t in processed.transcripts]
    return "\n\n".join(parts)


def continue_citations(
    existing: list[Citation], new: list[Citation]
) -> tuple[list[Citation], dict[int, int]]:
    """Renumber *new* after *existing*.

    Returns the merged list and the ``old -> new`` number mapping.
    """
    offset = len(existing)
    mapping: dict[int, int] = {}
    renumbered = []
    for index, citation in enumerate(new, start=offset + 1):
        mapping.setdefault(citation.number, index)
        renumbered.append(citation.model_copy(update={"number": index}))
    return [*existing, *renumbered], mapping


def shift_citation_markers(text: str, mapping: dict[int, int]) -> str:
    """Rewrite ``[n]`` markers in one pass so nothing is shifted twice."""

    def replace(match: re.Match) -> str:
        number = int(match.group(1))
        return f"[{mapping[number]}]" if number in mapping else match.group(0)

    return _NUMBER_MARKER.sub(replace, text)


def web_results_message(text: str, citations: list[Citation]) -> Message:
    sources = "\n".join(f"[{c.number}] {c.title or c.url}" for c in citations)
    content = f"Web Search results:\n\n{text}"
    if sources:
        content += f"\n\nAvailable sources:\n{sources}"
    return Message(role="system", content=f"{content}\n\n{CITATION_INSTRUCTIONS}")


class ToolRouterEnricher(PipelineStage):
    name = "ToolRouterEnricher"

    def __init__(
        self,
        router: ToolRouterService,
        web_search: WebSearchTool,
        agents: list[OrganizationAgent],
        registry: dict[str, ModelConfig],
        default_search_model: Optional[str] = None,
    ) -> None:
        self._router = router
        self._web_search = web_search
        self._agents = agents
        self._registry = registry
        self._default_search_model = default_search_model

    def should_run(self, context: ChatContext) -> bool:
        if context.search_mode not in _SEARCH_MODES:
            return False
        if context.bot_id:
            agent = find_organization_agent(self._agents, context.bot_id)
            return agent is not None and agent.allow_web_search
        return True

    def _search_model(self, context: ChatContext) -> Optional[ModelConfig]:
        if context.model.agent_id:
            return context.model
        if self._default_search_model:
            model = self._registry.get(self._default_search_model)
            if model is not None and model.agent_id:
                return model
        return None

    async def execute(self, context: ChatContext) -> ChatContext:
        with tracer.start_as_current_span(SPAN_TOOL_ROUTER) as span:
            try:
                return await self._route(context, span)
            except Exception as e:
                span.record_exception(e)
                logger.error(
                    "[%s] Tool routing failed, continuing without web search: %s",
                    context.request_id,
                    sanitize_for_log(e),
                    exc_info=True,
                )
                return context

    async def _route(self, context: ChatContext, span) -> ChatContext:
        messages = context.current_messages
        processed = context.processed_content
        current = describe_current_message(messages[-1], processed)
        decision = await self._router.determine_tool(
            messages, current, force_web_search=context.search_mode is SearchMode.ALWAYS
        )
        span.set_attribute(ATTR_TOOL_SELECTED, ",".join(decision.tools) or "none")
        if TOOL_WEB_SEARCH not in decision.tools:
            logger.debug(
                "[%s] No web search: %s",
                context.request_id,
                sanitize_for_log(decision.reasoning),
            )
            return context

        model = self._search_model(context)
        if model is None:
            logger.warning(
                "[%s] Web search wanted but no search agent model is configured",
                context.request_id,
            )
            return context

        result = await self._web_search.execute(
            decision.search_query or current, model, context.user
        )
        merged, mapping = continue_citations(processed.citations, result.citations)
        added = merged[len(processed.citations) :]
        span.set_attribute(ATTR_CITATION_COUNT, len(added))
        CITATIONS_EMITTED_TOTAL.labels(source="web").inc(len(added))

        injected = web_results_message(shift_citation_markers(result.text, mapping), added)
        logger.info(
            "[%s] Web search added %d citation(s) after %d existing",
            context.request_id,
            len(added),
            len(processed.citations),
        )
        return context.with_(
            enriched_messages=[*messages[:-1], injected, messages[-1]],
            processed_content=processed.merge_metadata({"citations": merged}),
        )
