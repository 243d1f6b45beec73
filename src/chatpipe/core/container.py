"""Service container: the process-wide dependency root.

``build_container`` is a lifespan dependency.  It creates the SDK
clients and every service once, wires them into the pipeline and parks
the result on ``app.state.container``.  Routes reach it through
``get_container`` (see ``chatpipe.api.deps``), and tests replace it with
``app.dependency_overrides[build_container]``.

Unconfigured collaborators are ``None`` rather than absent: the stages
that need them degrade per request instead of failing at startup.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Annotated, Optional

from anthropic import AsyncAnthropic
from fastapi import Depends, FastAPI, Request
from openai import AsyncAzureOpenAI, AsyncOpenAI

from chatpipe.configs.config import AppConfig, get_app_config
from chatpipe.configs.models import ModelConfig
from chatpipe.configs.system import ProviderConfig
from chatpipe.infra.blob import BlobStorage, LocalBlobStorage
from chatpipe.infra.lifespan import get_app

from .models.selector import ModelSelector
from .pipeline.builder import build_pipeline
from .pipeline.pipeline import ChatPipeline
from .providers.factory import ProviderClients
from .services.agents import AgentChatService, OpenAIAssistantsBackend
from .services.auxiliary import AuxiliaryModel, build_auxiliary_llm
from .services.chat import StandardChatService
from .services.code_interpreter import (
    CodeInterpreterFileService,
    CodeInterpreterRouterService,
)
from .services.documents import DocumentSummarizer
from .services.files import FileProcessingService
from .services.rag import RAGService
from .services.search import SearchClient
from .services.tool_router import ToolRouterService, WebSearchTool
from .services.transcription import (
    ChunkedTranscriptionService,
    FFmpeg,
    WhisperTranscriptionService,
)

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    clients: ProviderClients
    storage: BlobStorage
    files: FileProcessingService
    summarizer: Optional[DocumentSummarizer]
    ffmpeg: FFmpeg
    whisper: Optional[WhisperTranscriptionService]
    chunked: Optional[ChunkedTranscriptionService]
    search: SearchClient
    auxiliary: Optional[AuxiliaryModel]
    rag: RAGService
    agents: AgentChatService
    tool_router: ToolRouterService
    web_search: WebSearchTool
    code_interpreter_router: CodeInterpreterRouterService
    code_interpreter_files: CodeInterpreterFileService
    chat: StandardChatService
    registry: dict[str, ModelConfig]
    selector: ModelSelector
    pipeline: Optional[ChatPipeline] = None

    async def aclose(self) -> None:
        if self.chunked is not None:
            await self.chunked.aclose()
        await self.search.aclose()
        for client in (self.clients.azure, self.clients.openai, self.clients.anthropic):
            if client is not None:
                await client.close()


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def build_provider_clients(config: ProviderConfig) -> ProviderClients:
    """Create one SDK client per configured provider."""
    timeout = config.timeout.total_seconds()
    azure = None
    if config.azure_endpoint:
        azure = AsyncAzureOpenAI(
            azure_endpoint=config.azure_endpoint,
            api_key=config.azure_api_key,
            api_version=config.azure_api_version,
            max_retries=config.max_retries,
            timeout=timeout,
        )
    openai = None
    if config.openai_base_url:
        openai = AsyncOpenAI(
            base_url=config.openai_base_url,
            api_key=config.openai_api_key,
            max_retries=config.max_retries,
            timeout=timeout,
        )
    anthropic = None
    if config.anthropic_api_key:
        anthropic = AsyncAnthropic(
            api_key=config.anthropic_api_key,
            base_url=config.anthropic_base_url or None,
            max_retries=config.max_retries,
            timeout=timeout,
        )
    return ProviderClients(azure=azure, openai=openai, anthropic=anthropic)


def create_container(
    config: AppConfig,
    clients: Optional[ProviderClients] = None,
    storage: Optional[BlobStorage] = None,
) -> ServiceContainer:
    """Wire every service for *config*.  *clients* and *storage* are injectable."""
    clients = clients or build_provider_clients(config.providers)
    storage = storage or LocalBlobStorage(config.files.blob_root)
    # Assistants, Whisper and summarization all speak the OpenAI protocol
    openai_protocol = clients.azure or clients.openai

    files = FileProcessingService(storage, config.files)
    ffmpeg = FFmpeg(config.transcription)
    whisper = (
        WhisperTranscriptionService(openai_protocol, config.transcription.whisper_deployment)
        if openai_protocol is not None
        else None
    )
    chunked = (
        ChunkedTranscriptionService(ffmpeg, whisper, config.transcription)
        if whisper is not None
        else None
    )
    llm = build_auxiliary_llm(config.providers)
    auxiliary = AuxiliaryModel(llm) if llm is not None else None
    search = SearchClient(config.search)
    backend = (
        OpenAIAssistantsBackend(openai_protocol) if openai_protocol is not None else None
    )
    agents = AgentChatService(backend)
    registry = config.model_registry()

    container = ServiceContainer(
        clients=clients,
        storage=storage,
        files=files,
        summarizer=(
            DocumentSummarizer(openai_protocol, config.providers.auxiliary_model)
            if openai_protocol is not None
            else None
        ),
        ffmpeg=ffmpeg,
        whisper=whisper,
        chunked=chunked,
        search=search,
        auxiliary=auxiliary,
        rag=RAGService(search, auxiliary, config.rag, clients),
        agents=agents,
        tool_router=ToolRouterService(auxiliary),
        web_search=WebSearchTool(agents),
        code_interpreter_router=CodeInterpreterRouterService(auxiliary),
        code_interpreter_files=CodeInterpreterFileService(backend, files),
        chat=StandardChatService(clients),
        registry=registry,
        selector=ModelSelector(registry),
    )
    container.pipeline = build_pipeline(container, config)
    return container


# ---------------------------------------------------------------------------
# Lifespan dependency
# ---------------------------------------------------------------------------


async def build_container(
    app: Annotated[FastAPI, Depends(get_app)],
    config: Annotated[AppConfig, Depends(get_app_config)],
) -> AsyncGenerator[None, None]:
    """Create the ``ServiceContainer`` and attach it to ``app.state``."""
    container = create_container(config)
    app.state.container = container
    logger.info(
        "ServiceContainer ready: providers=%s, agents=%s, search=%s, ffmpeg=%s, stages=%s",
        [
            name
            for name, client in (
                ("azure", container.clients.azure),
                ("openai", container.clients.openai),
                ("anthropic", container.clients.anthropic),
            )
            if client is not None
        ],
        container.agents.available,
        container.search.configured,
        container.ffmpeg.is_available(),
        container.pipeline.stage_names,
    )
    yield
    await container.aclose()


def get_container(request: Request) -> ServiceContainer:
    """Return the container stored on ``app.state`` by the lifespan."""
    return request.app.state.container
