"""Web-search routing and the web search tool."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel, Field

from chatpipe.configs.models import ModelConfig
from chatpipe.core.metrics import TOOL_ROUTER_DECISIONS_TOTAL
from chatpipe.core.pipeline.context import ChatUser, Message

from .agents import AgentChatService, WebSearchResult
from .auxiliary import AuxiliaryModel

logger = logging.getLogger(__name__)

TOOL_WEB_SEARCH = "web_search"
ROUTER_HISTORY_WINDOW = 4

ROUTER_SYSTEM_PROMPT = """You decide whether answering the user's latest message requires a live web search.

Web search IS needed for:
- Current events, news, or anything that happened recently
- Prices, schedules, statistics, or other facts that change over time
- Specific organizations, people, or products where up-to-date details matter
- Requests that explicitly ask to look something up online

Web search is NOT needed for:
- Writing, rewriting, translating, or summarizing text the user provided
- Questions answered by the attached files or transcripts
- General knowledge, explanations, or reasoning that does not depend on recent facts
- Coding help, math, or brainstorming

When search is needed, also write a concise search query (under 20 words)."""


class ToolDecision(BaseModel):
    needs_web_search: bool = Field(description="Whether a web search is needed")
    search_query: str = Field(
        default="", description="Concise web search query when search is needed"
    )
    reasoning: str = Field(default="", description="Brief explanation")


@dataclass(frozen=True)
class ToolRouterResult:
    tools: list[str] = field(default_factory=list)
    search_query: Optional[str] = None
    reasoning: str = ""


class ToolRouterService:
    """Decides which tools (currently only web search) a turn needs."""

    def __init__(self, auxiliary: Optional[AuxiliaryModel]) -> None:
        self._auxiliary = auxiliary

    async def determine_tool(
        self,
        messages: list[Message],
        current_message: str,
        force_web_search: bool = False,
    ) -> ToolRouterResult:
        if force_web_search:
            TOOL_ROUTER_DECISIONS_TOTAL.labels(decision="forced").inc()
            return ToolRouterResult(
                tools=[TOOL_WEB_SEARCH],
                search_query=current_message,
                reasoning="Web search forced by search mode",
            )
        if self._auxiliary is None:
            TOOL_ROUTER_DECISIONS_TOTAL.labels(decision="skip").inc()
            return ToolRouterResult(reasoning="No routing model configured")

        history = [(m.role, m.text()) for m in messages[-ROUTER_HISTORY_WINDOW:-1]]
        try:
            decision = await self._auxiliary.decide(
                ToolDecision,
                ROUTER_SYSTEM_PROMPT,
                [*history, ("user", current_message)],
            )
        except Exception as e:
            logger.warning("Tool routing failed, skipping web search: %s", e)
            TOOL_ROUTER_DECISIONS_TOTAL.labels(decision="skip").inc()
            return ToolRouterResult(reasoning="Routing failed")

        if not decision.needs_web_search:
            TOOL_ROUTER_DECISIONS_TOTAL.labels(decision="skip").inc()
            return ToolRouterResult(reasoning=decision.reasoning)

        TOOL_ROUTER_DECISIONS_TOTAL.labels(decision="search").inc()
        return ToolRouterResult(
            tools=[TOOL_WEB_SEARCH],
            search_query=decision.search_query or current_message,
            reasoning=decision.reasoning,
        )


class WebSearchTool:
    type = TOOL_WEB_SEARCH
    name = "Web Search"
    description = "Search the web for current information using a grounded agent"

    def __init__(self, agents: AgentChatService) -> None:
        self._agents = agents

    async def execute(
        self, search_query: str, model: ModelConfig, user: ChatUser
    ) -> WebSearchResult:
        """Never raises; a failed search comes back as explanatory text."""
        try:
            return await self._agents.execute_web_search(search_query, model, user)
        except Exception as e:
            reason = str(e) or "Unknown search error"
            logger.error("Web search failed: %s", reason)
            return WebSearchResult(
                text=f"Web search encountered an issue: {reason}", citations=[]
            )
