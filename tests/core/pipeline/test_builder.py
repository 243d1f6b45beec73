"""Tests for request-to-context building."""

from types import SimpleNamespace

import pytest

from chatpipe.api.models import ChatRequest
from chatpipe.configs.config import AppConfig
from chatpipe.configs.models import DEFAULT_VISION_MODEL_ID, build_model_registry
from chatpipe.core.models.selector import ModelSelector
from chatpipe.core.pipeline.builder import (
    analyze_content,
    build_chat_context,
    requested_model,
)
from chatpipe.core.pipeline.context import Message, SearchMode
from chatpipe.infra.rate_limit import RateLimited, UserRateLimiter


def _request(**overrides) -> ChatRequest:
    body = {
        "model": {"id": "gpt-5.2-chat", "name": "GPT-5.2 Chat"},
        "messages": [{"role": "user", "content": "Hello"}],
    }
    body.update(overrides)
    return ChatRequest.model_validate(body)


@pytest.fixture
def container():
    registry = build_model_registry()
    return SimpleNamespace(registry=registry, selector=ModelSelector(registry))


@pytest.fixture
def config():
    return AppConfig()


class TestAnalyzeContent:
    def test_blocks(self):
        message = Message.model_validate(
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "see"},
                    {"type": "image_url", "image_url": {"url": "https://i/p.png"}},
                    {"type": "file_url", "url": "https://f/1", "original_filename": "r.pdf"},
                    {"type": "file_url", "url": "https://f/2", "original_filename": "talk.m4a"},
                ],
            }
        )
        assert analyze_content(message) == {"text", "image", "file", "audio"}

    def test_empty_string(self):
        assert analyze_content(Message(role="user", content="")) == frozenset()


class TestRequestedModel:
    def test_registry_entry_wins(self, container):
        request = _request(model={"id": "o3", "maxLength": 5})
        model = requested_model(request.model, container.registry)
        assert model.max_length == 200000

    def test_custom_agent_built_from_descriptor(self, container):
        request = _request(
            model={
                "id": "agent-xyz",
                "name": "Field guide",
                "isCustomAgent": True,
                "agentId": "asst_custom",
                "tokenLimit": 4000,
            }
        )
        model = requested_model(request.model, container.registry)
        assert model.is_custom_agent
        assert model.agent_id == "asst_custom"
        assert model.token_limit == 4000


class TestBuildChatContext:
    async def test_basic_fields(self, user, config, container):
        request = _request(
            prompt="Be brief.",
            temperature=0.2,
            botId="msf_communications",
            searchMode="always",
            tone={"name": "Formal", "voiceRules": "No slang."},
            streamingSpeed={"charsPerBatch": 5, "delayMs": 10},
        )
        context = await build_chat_context(request, user, config, container, request_id="req-9")

        assert context.request_id == "req-9"
        assert context.model_id == "gpt-5.2-chat"
        assert context.system_prompt.endswith("Be brief.")
        assert context.search_mode is SearchMode.ALWAYS
        assert not context.agent_mode
        assert context.tone.voice_rules == "No slang."
        assert context.streaming_speed.chars_per_batch == 5
        assert context.content_types == {"text"}
        assert context.rate_limit_info is None

    async def test_unknown_model_falls_back(self, user, config, container):
        context = await build_chat_context(
            _request(model={"id": "retired-model"}), user, config, container
        )
        assert context.model_id == "gpt-5.2-chat"

    async def test_images_upgrade_non_vision_model(self, user, config, container):
        request = _request(
            model={"id": "o3"},
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "what is this"},
                        {"type": "image_url", "image_url": {"url": "https://i/p.png"}},
                    ],
                }
            ],
        )
        context = await build_chat_context(request, user, config, container)
        assert context.model_id == DEFAULT_VISION_MODEL_ID
        assert context.has_images

    async def test_agent_mode(self, user, config, container):
        context = await build_chat_context(
            _request(searchMode="agent"), user, config, container
        )
        assert context.agent_mode

        custom = await build_chat_context(
            _request(model={"id": "agent-1", "isCustomAgent": True, "agentId": "asst_1"}),
            user,
            config,
            container,
        )
        assert custom.agent_mode
        assert custom.model_id == "agent-1"

    async def test_files_and_audio_flags(self, user, config, container):
        request = _request(
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "summarize"},
                        {"type": "file_url", "url": "https://f/1", "originalFilename": "talk.mp3"},
                    ],
                }
            ]
        )
        context = await build_chat_context(request, user, config, container)
        assert context.has_files and context.has_audio

    async def test_user_info_opt_in(self, user, config, container):
        request = _request(
            includeUserInfoInPrompt=True, preferredName="Sammy", userContext="Works in logistics"
        )
        context = await build_chat_context(request, user, config, container)
        assert "- Name: Sammy" in context.system_prompt
        assert "Works in logistics" in context.system_prompt

        plain = await build_chat_context(_request(), user, config, container)
        assert "About the Current User" not in plain.system_prompt

    async def test_rate_limit_checked_first(self, user, config, container):
        limiter = UserRateLimiter(redis=None, limit_per_minute=1)
        context = await build_chat_context(
            _request(), user, config, container, rate_limiter=limiter
        )
        assert context.rate_limit_info.remaining == 0
        with pytest.raises(RateLimited):
            await build_chat_context(_request(), user, config, container, rate_limiter=limiter)
