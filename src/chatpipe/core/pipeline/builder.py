"""Request-to-context building and pipeline assembly."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Optional

from chatpipe.configs.config import AppConfig
from chatpipe.configs.models import ModelConfig
from chatpipe.configs.prompts import UserInfo, build_system_prompt
from chatpipe.core.enrichers.agent import AgentEnricher
from chatpipe.core.enrichers.code_interpreter_router import (
    CodeInterpreterRouterEnricher,
)
from chatpipe.core.enrichers.rag import RAGEnricher
from chatpipe.core.enrichers.tool_router import ToolRouterEnricher
from chatpipe.core.handlers.agent import AgentChatHandler
from chatpipe.core.handlers.code_interpreter import CodeInterpreterHandler
from chatpipe.core.handlers.standard import StandardChatHandler
from chatpipe.core.processors.active_files import (
    ActiveFileInjector,
    ActiveFileProcessor,
)
from chatpipe.core.processors.file_processor import FileProcessor, ImageProcessor
from chatpipe.core.services.transcription import is_audio_video_file
from chatpipe.core.stream.processor import StopSignal
from chatpipe.infra.id_utils import generate_id
from chatpipe.infra.logging import sanitize_for_log
from chatpipe.infra.rate_limit import UserRateLimiter

from .context import (
    ChatContext,
    ChatUser,
    FileUrlBlock,
    ImageUrlBlock,
    Message,
    SearchMode,
    TextBlock,
)
from .pipeline import ChatPipeline

if TYPE_CHECKING:
    from chatpipe.api.models import ChatRequest, ModelDescriptor
    from chatpipe.core.container import ServiceContainer

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Content analysis
# ---------------------------------------------------------------------------


def analyze_content(message: Message) -> frozenset[str]:
    """Content types present in *message*: text, image, file or audio."""
    if isinstance(message.content, str):
        return frozenset({"text"}) if message.content else frozenset()
    types: set[str] = set()
    for block in message.content:
        if isinstance(block, ImageUrlBlock):
            types.add("image")
        elif isinstance(block, FileUrlBlock):
            types.add("audio" if is_audio_video_file(block.filename) else "file")
        elif isinstance(block, TextBlock) and block.text:
            types.add("text")
    return frozenset(types)


def requested_model(
    descriptor: ModelDescriptor, registry: dict[str, ModelConfig]
) -> ModelConfig:
    """Registry entry for the descriptor, or a descriptor-built config.

    Custom agents are not in the registry and are taken as sent; any
    other unknown id is left for ``ModelSelector`` to replace.
    """
    known = registry.get(descriptor.id)
    if known is not None:
        return known
    fields = {
        "id": descriptor.id,
        "name": descriptor.name,
        "agent_id": descriptor.agent_id,
        "is_agent": bool(descriptor.is_agent),
        "is_custom_agent": bool(descriptor.is_custom_agent),
    }
    if descriptor.max_length:
        fields["max_length"] = descriptor.max_length
    if descriptor.token_limit:
        fields["token_limit"] = descriptor.token_limit
    return ModelConfig(**fields)


def user_info_for(request: ChatRequest, user: ChatUser) -> Optional[UserInfo]:
    if not request.include_user_info_in_prompt:
        return None
    return UserInfo(
        name=request.preferred_name or user.name,
        email=user.email,
        department=user.department,
        additional_context=request.user_context,
    )


async def build_chat_context(
    request: ChatRequest,
    user: ChatUser,
    config: AppConfig,
    container: ServiceContainer,
    *,
    rate_limiter: Optional[UserRateLimiter] = None,
    request_id: Optional[str] = None,
    stop_signal: Optional[StopSignal] = None,
) -> ChatContext:
    """Turn a validated request into the initial ``ChatContext``.

    Raises ``RateLimited`` when the user is over their allowance.
    """
    request_id = request_id or generate_id("req")
    rate_limit_info = None
    if rate_limiter is not None:
        rate_limit_info = await rate_limiter.check(user.id)

    messages = request.to_messages()
    model_id, model = container.selector.select_model(
        requested_model(request.model, container.registry), messages
    )
    content_types = analyze_content(messages[-1])
    has_files = "file" in content_types or "audio" in content_types
    search_mode = request.search_mode
    agent_mode = search_mode is SearchMode.AGENT or model.is_custom_agent

    logger.info(
        "[%s] Context built: model=%s types=%s bot=%s search=%s agent=%s",
        request_id,
        sanitize_for_log(model_id),
        sorted(content_types),
        sanitize_for_log(request.bot_id),
        search_mode.value if search_mode else None,
        agent_mode,
    )
    return ChatContext(
        request_id=request_id,
        user=user,
        model_id=model_id,
        model=model,
        messages=messages,
        system_prompt=build_system_prompt(
            config.prompt, request.prompt, user_info_for(request, user)
        ),
        temperature=request.temperature,
        stream=request.stream,
        reasoning_effort=request.reasoning_effort,
        verbosity=request.verbosity,
        bot_id=request.bot_id,
        search_mode=search_mode,
        code_interpreter_mode=request.code_interpreter_mode,
        agent_mode=agent_mode,
        thread_id=request.thread_id,
        tone=request.to_tone(),
        streaming_speed=request.to_streaming_speed(),
        active_files=request.active_files or [],
        stop_signal=stop_signal,
        content_types=content_types,
        has_files=has_files,
        has_images="image" in content_types,
        has_audio="audio" in content_types,
        rate_limit_info=rate_limit_info,
        started_at=time.monotonic(),
    )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def build_pipeline(container: ServiceContainer, config: AppConfig) -> ChatPipeline:
    """Processors, then enrichers, then the mutually exclusive handlers."""
    web_search = ToolRouterEnricher(
        container.tool_router,
        container.web_search,
        config.agents,
        container.registry,
        config.agent.default_search_agent_model,
    )
    return ChatPipeline(
        [
            FileProcessor(
                container.files,
                container.summarizer,
                container.ffmpeg,
                container.whisper,
                container.chunked,
                config.transcription,
            ),
            ImageProcessor(container.files),
            ActiveFileProcessor(container.files),
            ActiveFileInjector(),
            CodeInterpreterRouterEnricher(container.code_interpreter_router),
            RAGEnricher(container.rag, config.agents),
            web_search,
            AgentEnricher(
                container.code_interpreter_files, config.agent, web_search=web_search
            ),
            StandardChatHandler(container.chat),
            AgentChatHandler(container.agents),
            CodeInterpreterHandler(container.agents),
        ],
        timeouts=config.timeouts,
    )
