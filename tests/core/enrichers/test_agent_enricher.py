"""Tests for agent-mode routing and code interpreter recommendation."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from chatpipe.configs.models import ModelConfig
from chatpipe.configs.system import AgentConfig
from chatpipe.core.enrichers.agent import (
    AgentEnricher,
    fallback_search_mode,
    wants_code_interpreter,
    with_file_references,
)
from chatpipe.core.enrichers.code_interpreter_router import CodeInterpreterRouterEnricher
from chatpipe.core.pipeline.context import (
    CodeInterpreterMode,
    ExecutionStrategy,
    Message,
    SearchMode,
)
from chatpipe.core.services.code_interpreter import CodeInterpreterDecision
from chatpipe.core.stream.metadata import UploadedFileRef

AGENT_MODEL = ModelConfig(
    id="gpt-4.1", agent_id="asst_1", code_interpreter=True, is_agent=True
)
SEARCH_ONLY_MODEL = ModelConfig(id="gpt-4o", agent_id="asst_2", is_agent=True)


def _with_file(filename: str, text: str = "analyse this") -> list[dict]:
    return [
        {"type": "text", "text": text},
        {"type": "file_url", "url": f"https://blob/{filename}", "original_filename": filename},
    ]


# ---------------------------------------------------------------------------
# Policy helpers
# ---------------------------------------------------------------------------


class TestWantsCodeInterpreter:
    @pytest.mark.parametrize(
        "mode, has_files, compatible, recommended, expected",
        [
            (CodeInterpreterMode.OFF, True, True, True, False),
            (None, True, True, None, True),
            (None, False, False, None, False),
            (CodeInterpreterMode.ALWAYS, True, False, None, False),
            (CodeInterpreterMode.INTELLIGENT, False, False, True, True),
            (CodeInterpreterMode.INTELLIGENT, True, False, True, False),
            (CodeInterpreterMode.INTELLIGENT, True, True, False, False),
        ],
    )
    def test_modes(self, make_context, mode, has_files, compatible, recommended, expected):
        context = make_context(
            model=AGENT_MODEL,
            code_interpreter_mode=mode,
            has_files=has_files,
            code_interpreter_recommended=recommended,
        )
        assert wants_code_interpreter(context, compatible) is expected

    def test_model_without_code_interpreter(self, make_context):
        context = make_context(model=SEARCH_ONLY_MODEL, has_files=True)
        assert not wants_code_interpreter(context, True)


def test_file_references_prefix_message():
    message = Message(role="user", content="plot it")
    out = with_file_references(message, [UploadedFileRef(id="file_1", filename="a.csv")])
    assert out.content == "[Uploaded file: a.csv (ID: file_1)]\n\nplot it"
    assert with_file_references(message, []) is message


@pytest.mark.parametrize(
    "requested, respect, expected",
    [
        (SearchMode.OFF, True, SearchMode.OFF),
        (SearchMode.OFF, False, SearchMode.INTELLIGENT),
        (None, True, SearchMode.INTELLIGENT),
        (SearchMode.ALWAYS, True, SearchMode.INTELLIGENT),
    ],
)
def test_fallback_search_mode(requested, respect, expected):
    config = AgentConfig(respect_explicit_search_off=respect)
    assert fallback_search_mode(requested, config) is expected


# ---------------------------------------------------------------------------
# AgentEnricher
# ---------------------------------------------------------------------------


class TestAgentEnricher:
    def setup_method(self):
        self.code_files = MagicMock()
        self.code_files.upload_files = AsyncMock(
            return_value=[UploadedFileRef(id="file_1", filename="data.csv")]
        )
        self.web_search = MagicMock()
        self.web_search.should_run = lambda ctx: ctx.search_mode is not None
        self.web_search.execute = AsyncMock(side_effect=lambda ctx: ctx.with_(thread_id="searched"))
        self.enricher = AgentEnricher(self.code_files, AgentConfig(), self.web_search)

    def test_requires_agent_mode_and_agent(self, make_context):
        assert self.enricher.should_run(make_context(model=AGENT_MODEL, agent_mode=True))
        assert not self.enricher.should_run(make_context(model=AGENT_MODEL))
        assert not self.enricher.should_run(make_context(agent_mode=True))

    async def test_code_interpreter_uploads_and_references(self, make_context):
        context = make_context(
            _with_file("data.csv"), model=AGENT_MODEL, agent_mode=True, has_files=True
        )
        result = await self.enricher.execute(context)

        assert result.execution_strategy is ExecutionStrategy.AGENT
        ci = result.agent_capabilities.code_interpreter
        assert ci.enabled
        assert [f.id for f in ci.uploaded_files] == ["file_1"]
        assert result.enriched_messages[-1].content.startswith(
            "[Uploaded file: data.csv (ID: file_1)]"
        )
        files = self.code_files.upload_files.await_args.args[0]
        assert files == [("https://blob/data.csv", "data.csv")]

    async def test_failed_uploads_fall_back_to_web_grounding(self, make_context):
        self.code_files.upload_files.return_value = []
        context = make_context(
            _with_file("data.csv"), model=AGENT_MODEL, agent_mode=True, has_files=True
        )
        result = await self.enricher.execute(context)
        assert result.execution_strategy is ExecutionStrategy.AGENT
        assert result.agent_capabilities.bing_grounding
        assert result.agent_capabilities.code_interpreter is None

    async def test_recommended_without_files(self, make_context):
        context = make_context(
            "make me a chart of primes",
            model=AGENT_MODEL,
            agent_mode=True,
            code_interpreter_mode=CodeInterpreterMode.INTELLIGENT,
            code_interpreter_recommended=True,
        )
        result = await self.enricher.execute(context)
        assert result.agent_capabilities.code_interpreter.enabled
        self.code_files.upload_files.assert_not_awaited()

    async def test_attachments_without_code_interpreter_rerun_search(self, make_context):
        context = make_context(
            _with_file("clip.mp4"), model=SEARCH_ONLY_MODEL, agent_mode=True, has_files=True
        )
        result = await self.enricher.execute(context)

        assert result.execution_strategy is None
        assert result.search_mode is SearchMode.INTELLIGENT
        assert result.thread_id == "searched"

    async def test_explicit_search_off_respected(self, make_context):
        context = make_context(
            model=SEARCH_ONLY_MODEL,
            agent_mode=True,
            has_images=True,
            search_mode=SearchMode.OFF,
        )
        self.web_search.should_run = lambda ctx: ctx.search_mode is SearchMode.INTELLIGENT
        result = await self.enricher.execute(context)
        assert result.execution_strategy is None
        assert result.search_mode is SearchMode.OFF
        self.web_search.execute.assert_not_awaited()

    async def test_search_already_ran_not_repeated(self, make_context):
        context = make_context(
            model=SEARCH_ONLY_MODEL,
            agent_mode=True,
            has_images=True,
            search_mode=SearchMode.ALWAYS,
        )
        result = await self.enricher.execute(context)
        assert result.search_mode is SearchMode.INTELLIGENT
        self.web_search.execute.assert_not_awaited()

    async def test_plain_turn_is_web_grounded(self, make_context):
        result = await self.enricher.execute(
            make_context(model=SEARCH_ONLY_MODEL, agent_mode=True)
        )
        assert result.execution_strategy is ExecutionStrategy.AGENT
        assert result.agent_capabilities.bing_grounding


# ---------------------------------------------------------------------------
# CodeInterpreterRouterEnricher
# ---------------------------------------------------------------------------


class TestCodeInterpreterRouterEnricher:
    def setup_method(self):
        self.router = MagicMock()
        self.router.route = AsyncMock(
            return_value=CodeInterpreterDecision(needs_code_interpreter=True, reasoning="csv")
        )
        self.enricher = CodeInterpreterRouterEnricher(self.router)

    def test_only_intelligent_agent_mode(self, make_context):
        intelligent = CodeInterpreterMode.INTELLIGENT
        assert self.enricher.should_run(
            make_context(model=AGENT_MODEL, agent_mode=True, code_interpreter_mode=intelligent)
        )
        assert not self.enricher.should_run(
            make_context(model=AGENT_MODEL, agent_mode=True, code_interpreter_mode=CodeInterpreterMode.ALWAYS)
        )
        assert not self.enricher.should_run(
            make_context(model=SEARCH_ONLY_MODEL, agent_mode=True, code_interpreter_mode=intelligent)
        )
        assert not self.enricher.should_run(
            make_context(model=AGENT_MODEL, code_interpreter_mode=intelligent)
        )

    async def test_records_recommendation_with_filenames(self, make_context):
        context = make_context(_with_file("sales.xlsx"), model=AGENT_MODEL, agent_mode=True)
        result = await self.enricher.execute(context)
        assert result.code_interpreter_recommended is True
        assert self.router.route.await_args.args[1] == ["sales.xlsx"]
