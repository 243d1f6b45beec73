"""Tests for web search routing and citation continuation."""

from unittest.mock import AsyncMock, MagicMock

from chatpipe.configs.agents import OrganizationAgent
from chatpipe.configs.models import ModelConfig
from chatpipe.core.enrichers.tool_router import (
    ToolRouterEnricher,
    continue_citations,
    describe_current_message,
    shift_citation_markers,
)
from chatpipe.core.pipeline.context import (
    InlineFile,
    Message,
    ProcessedContent,
    SearchMode,
)
from chatpipe.core.services.agents import WebSearchResult
from chatpipe.core.services.tool_router import TOOL_WEB_SEARCH, ToolRouterResult
from chatpipe.core.stream.metadata import Citation

SEARCH_MODEL = ModelConfig(id="gpt-4.1", agent_id="asst_web", is_agent=True)


def _cite(number: int, url: str) -> Citation:
    return Citation(number=number, title=url, url=url)


class TestCitationContinuation:
    def test_numbers_continue_after_existing(self):
        existing = [_cite(1, "kb1"), _cite(2, "kb2"), _cite(3, "kb3")]
        merged, mapping = continue_citations(existing, [_cite(1, "w1"), _cite(2, "w2")])
        assert [(c.number, c.url) for c in merged] == [
            (1, "kb1"), (2, "kb2"), (3, "kb3"), (4, "w1"), (5, "w2")
        ]
        assert mapping == {1: 4, 2: 5}

    def test_shift_is_single_pass(self):
        assert shift_citation_markers("a [1] b [2] c [9]", {1: 2, 2: 3}) == "a [2] b [3] c [9]"

    def test_describe_includes_attachments(self):
        text = describe_current_message(
            Message(role="user", content="compare"),
            ProcessedContent(inline_files=[InlineFile(filename="a.txt", content="alpha")]),
        )
        assert text == "compare\n\n[File: a.txt]\nalpha"


class TestToolRouterEnricher:
    def setup_method(self):
        self.router = MagicMock()
        self.router.determine_tool = AsyncMock(
            return_value=ToolRouterResult(tools=[TOOL_WEB_SEARCH], search_query="news")
        )
        self.web = MagicMock()
        self.web.execute = AsyncMock(
            return_value=WebSearchResult(
                text="Flooding reported [1] and [2].",
                citations=[_cite(1, "https://w1"), _cite(2, "https://w2")],
            )
        )
        self.agents = [
            OrganizationAgent(id="open", allow_web_search=True),
            OrganizationAgent(id="closed", allow_web_search=False),
        ]
        self.enricher = ToolRouterEnricher(
            self.router, self.web, self.agents, {"gpt-4.1": SEARCH_MODEL}, "gpt-4.1"
        )

    def test_should_run(self, make_context):
        assert self.enricher.should_run(make_context(search_mode=SearchMode.INTELLIGENT))
        assert self.enricher.should_run(make_context(search_mode=SearchMode.ALWAYS))
        assert not self.enricher.should_run(make_context(search_mode=SearchMode.OFF))
        assert not self.enricher.should_run(make_context())
        assert self.enricher.should_run(
            make_context(search_mode=SearchMode.ALWAYS, bot_id="open")
        )
        assert not self.enricher.should_run(
            make_context(search_mode=SearchMode.ALWAYS, bot_id="closed")
        )

    async def test_results_continue_rag_numbering(self, make_context):
        rag = ProcessedContent(
            metadata={"citations": [_cite(1, "kb1"), _cite(2, "kb2"), _cite(3, "kb3")]}
        )
        context = make_context(
            "latest?", search_mode=SearchMode.INTELLIGENT, processed_content=rag
        )
        result = await self.enricher.execute(context)

        assert [c.number for c in result.processed_content.citations] == [1, 2, 3, 4, 5]
        injected = result.enriched_messages[-2]
        assert injected.role == "system"
        assert "Flooding reported [4] and [5]." in injected.content
        assert "[4] https://w1\n[5] https://w2" in injected.content
        assert result.enriched_messages[-1].text() == "latest?"
        assert self.web.execute.await_args.args[0] == "news"
        assert self.web.execute.await_args.args[1] is SEARCH_MODEL

    async def test_always_forces_search(self, make_context):
        await self.enricher.execute(make_context(search_mode=SearchMode.ALWAYS))
        assert self.router.determine_tool.await_args.kwargs["force_web_search"] is True

    async def test_no_search_decision(self, make_context):
        self.router.determine_tool.return_value = ToolRouterResult()
        context = make_context(search_mode=SearchMode.INTELLIGENT)
        assert await self.enricher.execute(context) is context
        self.web.execute.assert_not_awaited()

    async def test_chat_model_agent_preferred(self, make_context):
        own = ModelConfig(id="custom", agent_id="asst_own")
        await self.enricher.execute(make_context(model=own, search_mode=SearchMode.ALWAYS))
        assert self.web.execute.await_args.args[1] is own

    async def test_no_search_model(self, make_context):
        enricher = ToolRouterEnricher(self.router, self.web, [], {}, None)
        context = make_context(search_mode=SearchMode.ALWAYS)
        assert await enricher.execute(context) is context

    async def test_failure_leaves_context_unchanged(self, make_context):
        self.router.determine_tool.side_effect = RuntimeError("boom")
        context = make_context(search_mode=SearchMode.ALWAYS)
        assert await self.enricher.execute(context) is context
