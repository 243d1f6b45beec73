"""Tests for agent turns, web search and code-interpreter staging."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from chatpipe.configs.models import ModelConfig
from chatpipe.core.capabilities import AgentEvent
from chatpipe.core.errors import PipelineError
from chatpipe.core.pipeline.context import (
    AgentCapabilities,
    CodeInterpreterCapability,
    Message,
)
from chatpipe.core.services.agents import AgentChatService, to_agent_content
from chatpipe.core.services.code_interpreter import (
    CodeInterpreterFileService,
    CodeInterpreterRouterService,
    get_file_type,
    get_mime_type,
    is_code_interpreter_compatible,
)
from chatpipe.core.services.tool_router import (
    TOOL_WEB_SEARCH,
    ToolDecision,
    ToolRouterService,
    WebSearchTool,
)
from chatpipe.core.stream.metadata import UploadedFileRef, parse_metadata

MARKER = "【4:0†source】"
AGENT_MODEL = ModelConfig(id="gpt-4.1", agent_id="asst_web", is_agent=True)


def _grounded_answer(text: str, url: str) -> list[AgentEvent]:
    return [
        AgentEvent(
            "thread.message.delta",
            {"delta": {"content": [{"type": "text", "text": {"value": text}}]}},
        ),
        AgentEvent(
            "thread.message.completed",
            {
                "content": [
                    {
                        "type": "text",
                        "text": {
                            "annotations": [
                                {
                                    "type": "url_citation",
                                    "text": MARKER,
                                    "url_citation": {"url": url, "title": "Result"},
                                }
                            ]
                        },
                    }
                ]
            },
        ),
        AgentEvent("thread.run.completed"),
    ]


class TestToAgentContent:
    def test_string_passthrough(self):
        assert to_agent_content(Message(role="user", content="hi")) == "hi"

    def test_blocks(self):
        message = Message.model_validate(
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "look"},
                    {"type": "image_url", "image_url": {"url": "https://i/p.png"}},
                    {"type": "file_url", "url": "https://f/x", "original_filename": "r.pdf"},
                    {"type": "thinking", "thinking": "dropped"},
                ],
            }
        )
        parts = to_agent_content(message)
        assert [p["type"] for p in parts] == ["text", "image_url", "text"]
        assert parts[1]["image_url"] == {"url": "https://i/p.png", "detail": "auto"}
        assert parts[2]["text"] == "[File attached: r.pdf]"


class TestAgentChatService:
    async def test_new_thread_created_and_reported(self, agent_backend):
        agent_backend.events = [
            AgentEvent(
                "thread.message.delta",
                {"delta": {"content": [{"type": "text", "text": {"value": "Hi"}}]}},
            ),
            AgentEvent("thread.run.completed"),
        ]
        service = AgentChatService(agent_backend)
        stream, context = await service.run(
            agent_id="asst_1", model=AGENT_MODEL, message=Message(role="user", content="q")
        )
        out = "".join([c async for c in stream])
        text, metadata = parse_metadata(out)

        assert context.is_new_thread
        assert text == "Hi"
        assert metadata.thread_id == "thread_new_1"
        assert agent_backend.runs == [("thread_new_1", "asst_1", None)]

    async def test_existing_thread_reused(self, agent_backend):
        service = AgentChatService(agent_backend)
        _, context = await service.run(
            agent_id="asst_1",
            model=AGENT_MODEL,
            message=Message(role="user", content="q"),
            thread_id="thread_old",
        )
        assert agent_backend.threads_created == 0
        assert context.new_thread_id is None
        assert agent_backend.messages[0][0] == "thread_old"

    async def test_code_interpreter_attaches_uploaded_files(self, agent_backend):
        service = AgentChatService(agent_backend)
        caps = AgentCapabilities(
            code_interpreter=CodeInterpreterCapability(
                enabled=True,
                uploaded_files=[UploadedFileRef(id="file_1", filename="d.csv")],
            )
        )
        await service.run(
            agent_id="asst_ci",
            model=AGENT_MODEL,
            message=Message(role="user", content="plot it"),
            capabilities=caps,
        )
        _, content, attachments = agent_backend.messages[0]
        assert content == "plot it"
        assert attachments == [{"file_id": "file_1", "tools": [{"type": "code_interpreter"}]}]

    async def test_missing_backend_is_critical(self):
        with pytest.raises(PipelineError) as exc_info:
            await AgentChatService(None).run(
                agent_id="a", model=AGENT_MODEL, message=Message(role="user", content="q")
            )
        assert exc_info.value.is_critical

    async def test_web_search_collects_text_and_citations(self, agent_backend, user):
        agent_backend.events = _grounded_answer(f"Now {MARKER}.", "https://news")
        result = await AgentChatService(agent_backend).execute_web_search(
            "latest news", AGENT_MODEL, user
        )
        assert result.text == "Now [1]."
        assert [c.url for c in result.citations] == ["https://news"]

    async def test_web_search_requires_agent_id(self, agent_backend, user):
        with pytest.raises(PipelineError):
            await AgentChatService(agent_backend).execute_web_search(
                "q", ModelConfig(id="plain"), user
            )


class TestWebSearchTool:
    async def test_failure_becomes_text(self, user):
        agents = MagicMock()
        agents.execute_web_search = AsyncMock(side_effect=RuntimeError("quota"))
        result = await WebSearchTool(agents).execute("q", AGENT_MODEL, user)
        assert result.text == "Web search encountered an issue: quota"
        assert result.citations == []


class TestToolRouterService:
    def setup_method(self):
        self.auxiliary = MagicMock()
        self.auxiliary.decide = AsyncMock()
        self.router = ToolRouterService(self.auxiliary)
        self.messages = [
            Message(role="user", content="earlier"),
            Message(role="assistant", content="reply"),
            Message(role="user", content="news today?"),
        ]

    async def test_forced_search_skips_model(self):
        result = await self.router.determine_tool(self.messages, "news today?", force_web_search=True)
        assert result.tools == [TOOL_WEB_SEARCH]
        assert result.search_query == "news today?"
        self.auxiliary.decide.assert_not_awaited()

    async def test_search_decision(self):
        self.auxiliary.decide.return_value = ToolDecision(
            needs_web_search=True, search_query="news October 2026", reasoning="recent"
        )
        result = await self.router.determine_tool(self.messages, "news today?")
        assert result.search_query == "news October 2026"
        conversation = self.auxiliary.decide.await_args.args[2]
        assert conversation == [
            ("user", "earlier"),
            ("assistant", "reply"),
            ("user", "news today?"),
        ]

    async def test_empty_query_falls_back_to_message(self):
        self.auxiliary.decide.return_value = ToolDecision(needs_web_search=True)
        result = await self.router.determine_tool(self.messages, "news today?")
        assert result.search_query == "news today?"

    async def test_no_search(self):
        self.auxiliary.decide.return_value = ToolDecision(needs_web_search=False, reasoning="general")
        result = await self.router.determine_tool(self.messages, "news today?")
        assert result.tools == []

    async def test_failure_means_no_search(self):
        self.auxiliary.decide.side_effect = RuntimeError("timeout")
        result = await self.router.determine_tool(self.messages, "news today?")
        assert result.tools == []

    async def test_no_auxiliary(self):
        result = await ToolRouterService(None).determine_tool(self.messages, "x")
        assert result.tools == []


class TestCodeInterpreterRouting:
    async def test_failure_defaults_to_not_needed(self):
        auxiliary = MagicMock()
        auxiliary.decide = AsyncMock(side_effect=RuntimeError("x"))
        decision = await CodeInterpreterRouterService(auxiliary).route(
            [Message(role="user", content="chart")], ["d.csv"]
        )
        assert not decision.needs_code_interpreter

    async def test_file_context_in_prompt(self):
        auxiliary = MagicMock()
        auxiliary.decide = AsyncMock(return_value=MagicMock(needs_code_interpreter=True, reasoning="r"))
        await CodeInterpreterRouterService(auxiliary).route(
            [Message(role="user", content="chart")], ["d.csv", "e.xlsx"]
        )
        assert "Files present: d.csv, e.xlsx" in auxiliary.decide.await_args.args[1]

    def test_file_types(self):
        assert get_file_type("Data.CSV") == "data"
        assert get_file_type("a.zip") == "unknown"
        assert get_mime_type("a.xlsx").startswith("application/vnd.openxml")
        assert is_code_interpreter_compatible("x.py")
        assert not is_code_interpreter_compatible("x.exe")
        assert not is_code_interpreter_compatible(None)


class TestCodeInterpreterFileService:
    def setup_method(self):
        self.files = MagicMock()
        self.files.get_temp_file_path.side_effect = lambda url: (url, f"/tmp/{url}")
        self.files.download_file = AsyncMock()
        self.files.read_file = AsyncMock(return_value=b"a,b\n1,2\n")
        self.files.cleanup_file = AsyncMock()

    async def test_uploads_supported_and_skips_failures(self, agent_backend, user):
        agent_backend.fail_uploads = {"bad.csv"}
        service = CodeInterpreterFileService(agent_backend, self.files)
        uploaded = await service.upload_files(
            [("u1", "good.csv"), ("u2", "bad.csv"), ("u3", "app.exe")], user
        )
        assert [(u.id, u.filename) for u in uploaded] == [("file_1", "good.csv")]
        assert self.files.cleanup_file.await_count == 2

    async def test_no_backend(self, user):
        service = CodeInterpreterFileService(None, self.files)
        assert await service.upload_files([("u1", "good.csv")], user) == []
