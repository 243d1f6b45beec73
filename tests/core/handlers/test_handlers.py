"""Tests for the terminal execution handlers."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from chatpipe.configs.models import ModelConfig
from chatpipe.core.capabilities import AgentEvent, AgentStreamError
from chatpipe.core.errors import ErrorCode, PipelineError
from chatpipe.core.handlers.agent import AgentChatHandler
from chatpipe.core.handlers.code_interpreter import CodeInterpreterHandler
from chatpipe.core.handlers.messages import FAILURE_MESSAGES
from chatpipe.core.handlers.standard import StandardChatHandler
from chatpipe.core.pipeline.context import (
    AgentCapabilities,
    CodeInterpreterCapability,
    ExecutionStrategy,
    ProcessedContent,
    Transcript,
)
from chatpipe.core.response import (
    JSONChatResponse,
    StreamedChatResponse,
    TextChatResponse,
)
from chatpipe.core.services.agents import AgentChatService
from chatpipe.core.stream.metadata import UploadedFileRef, parse_metadata

AGENT_MODEL = ModelConfig(
    id="gpt-4.1", agent_id="asst_1", code_interpreter_agent_id="asst_ci", is_agent=True
)


def _answer(text: str) -> list[AgentEvent]:
    return [
        AgentEvent(
            "thread.message.delta",
            {"delta": {"content": [{"type": "text", "text": {"value": text}}]}},
        ),
        AgentEvent("thread.run.completed"),
    ]


async def _drain(response: StreamedChatResponse) -> str:
    return "".join([chunk async for chunk in response.chunks])


# ---------------------------------------------------------------------------
# Standard
# ---------------------------------------------------------------------------


class TestStandardChatHandler:
    def setup_method(self):
        self.chat = MagicMock()
        self.chat.handle_chat = AsyncMock(return_value=JSONChatResponse(body={"text": "ok"}))
        self.handler = StandardChatHandler(self.chat)

    def test_runs_for_default_strategy(self, make_context):
        assert self.handler.should_run(make_context())
        assert not self.handler.should_run(
            make_context(execution_strategy=ExecutionStrategy.AGENT)
        )

    async def test_calls_chat_with_final_messages(self, make_context):
        context = make_context("hi", temperature=0.3, stream=False)
        result = await self.handler.execute(context)

        assert result.response.body == {"text": "ok"}
        kwargs = self.chat.handle_chat.await_args.kwargs
        assert [m.content for m in kwargs["messages"]] == ["hi"]
        assert kwargs["system_prompt"] == "SYSTEM"
        assert kwargs["temperature"] == 0.3
        assert kwargs["stream"] is False
        assert kwargs["transcript"] is None

    async def test_transcript_only_turn_skips_model(self, make_context):
        processed = ProcessedContent(transcripts=[Transcript(filename="a.mp3", transcript="words")])
        context = make_context("[Audio/Video: a.mp3]", processed_content=processed)
        result = await self.handler.execute(context)

        assert isinstance(result.response, StreamedChatResponse)
        text, metadata = parse_metadata(await _drain(result.response))
        assert text == "words"
        assert metadata.transcript.filename == "a.mp3"
        self.chat.handle_chat.assert_not_awaited()

    async def test_transcript_with_question_goes_to_model(self, make_context):
        processed = ProcessedContent(transcripts=[Transcript(filename="a.mp3", transcript="words")])
        context = make_context("Summarise the talk", processed_content=processed)
        await self.handler.execute(context)
        kwargs = self.chat.handle_chat.await_args.kwargs
        assert kwargs["transcript"].transcript == "words"

    async def test_failed_files_answer_with_notice(self, make_context):
        error = PipelineError.error(
            "no audio", ErrorCode.TRANSCRIPTION_FAILED, details={"reason": "no_audio_track"}
        )
        context = make_context(
            processed_content=ProcessedContent(metadata={"file_processing_failed": True}),
            errors=[error],
        )
        result = await self.handler.execute(context)
        assert result.response == TextChatResponse(text=FAILURE_MESSAGES["no_audio_track"])
        self.chat.handle_chat.assert_not_awaited()

    async def test_provider_failure_propagates(self, make_context):
        self.chat.handle_chat.side_effect = RuntimeError("provider down")
        with pytest.raises(RuntimeError):
            await self.handler.execute(make_context())


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class TestAgentChatHandler:
    def test_runs_for_agent_strategy(self, make_context, agent_backend):
        handler = AgentChatHandler(AgentChatService(agent_backend))
        assert handler.should_run(make_context(execution_strategy=ExecutionStrategy.AGENT))
        assert not handler.should_run(make_context())

    async def test_streams_with_new_thread(self, make_context, agent_backend):
        agent_backend.events = _answer("Grounded answer")
        handler = AgentChatHandler(AgentChatService(agent_backend))
        context = make_context(
            "news?", model=AGENT_MODEL, execution_strategy=ExecutionStrategy.AGENT
        )
        result = await handler.execute(context)

        assert isinstance(result.response, StreamedChatResponse)
        assert result.response.headers["Cache-Control"] == "no-cache"
        text, metadata = parse_metadata(await _drain(result.response))
        assert text == "Grounded answer"
        assert metadata.thread_id == "thread_new_1"
        assert agent_backend.runs == [("thread_new_1", "asst_1", 0.7)]

    async def test_non_streaming_json(self, make_context, agent_backend):
        agent_backend.events = _answer("Hi")
        handler = AgentChatHandler(AgentChatService(agent_backend))
        context = make_context(
            model=AGENT_MODEL,
            execution_strategy=ExecutionStrategy.AGENT,
            thread_id="thread_old",
            stream=False,
            temperature=0.2,
        )
        result = await handler.execute(context)
        assert result.response == JSONChatResponse(body={"text": "Hi"})
        assert agent_backend.runs == [("thread_old", "asst_1", 0.2)]

    async def test_missing_agent_is_critical(self, make_context, agent_backend):
        handler = AgentChatHandler(AgentChatService(agent_backend))
        with pytest.raises(PipelineError) as exc_info:
            await handler.execute(make_context(execution_strategy=ExecutionStrategy.AGENT))
        assert exc_info.value.is_critical
        assert exc_info.value.code is ErrorCode.MODEL_CONFIG_INVALID

    async def test_stream_error_propagates(self, make_context, agent_backend):
        agent_backend.events = [AgentEvent("error", {"message": "run failed"})]
        handler = AgentChatHandler(AgentChatService(agent_backend))
        result = await handler.execute(
            make_context(model=AGENT_MODEL, execution_strategy=ExecutionStrategy.AGENT)
        )
        with pytest.raises(AgentStreamError):
            await _drain(result.response)


# ---------------------------------------------------------------------------
# Code interpreter
# ---------------------------------------------------------------------------


class TestCodeInterpreterHandler:
    async def test_dedicated_agent_and_uploaded_files(self, make_context, agent_backend):
        agent_backend.events = _answer("done")
        handler = CodeInterpreterHandler(AgentChatService(agent_backend))
        caps = AgentCapabilities(
            code_interpreter=CodeInterpreterCapability(
                enabled=True, uploaded_files=[UploadedFileRef(id="file_1", filename="d.csv")]
            )
        )
        context = make_context(
            "plot it",
            model=AGENT_MODEL,
            execution_strategy=ExecutionStrategy.CODE_INTERPRETER,
            agent_capabilities=caps,
        )
        assert handler.should_run(context)
        result = await handler.execute(context)
        await _drain(result.response)

        assert agent_backend.runs == [("thread_new_1", "asst_ci", 0.5)]
        _, content, attachments = agent_backend.messages[0]
        assert content == "plot it"
        assert attachments == [{"file_id": "file_1", "tools": [{"type": "code_interpreter"}]}]

    async def test_falls_back_to_general_agent(self, make_context, agent_backend):
        agent_backend.events = _answer("done")
        handler = CodeInterpreterHandler(AgentChatService(agent_backend))
        model = ModelConfig(id="gpt-4.1", agent_id="asst_1")
        result = await handler.execute(
            make_context(model=model, execution_strategy=ExecutionStrategy.CODE_INTERPRETER)
        )
        await _drain(result.response)
        assert agent_backend.runs[0][1] == "asst_1"

    async def test_no_agent_is_critical(self, make_context, agent_backend):
        handler = CodeInterpreterHandler(AgentChatService(agent_backend))
        with pytest.raises(PipelineError) as exc_info:
            await handler.execute(
                make_context(execution_strategy=ExecutionStrategy.CODE_INTERPRETER)
            )
        assert exc_info.value.is_critical


# ---------------------------------------------------------------------------
# Exclusivity
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "strategy, expected",
    [
        (None, StandardChatHandler),
        (ExecutionStrategy.STANDARD, StandardChatHandler),
        (ExecutionStrategy.AGENT, AgentChatHandler),
        (ExecutionStrategy.CODE_INTERPRETER, CodeInterpreterHandler),
    ],
)
def test_exactly_one_handler_runs(make_context, agent_backend, strategy, expected):
    agents = AgentChatService(agent_backend)
    handlers = [
        StandardChatHandler(MagicMock()),
        AgentChatHandler(agents),
        CodeInterpreterHandler(agents),
    ]
    context = make_context(model=AGENT_MODEL, execution_strategy=strategy)
    running = [type(h) for h in handlers if h.should_run(context)]
    assert running == [expected]
