"""Tests for service container wiring."""

from anthropic import AsyncAnthropic
from openai import AsyncAzureOpenAI, AsyncOpenAI

from chatpipe.configs.config import AppConfig
from chatpipe.configs.system import ProviderConfig
from chatpipe.core.container import build_provider_clients, create_container
from chatpipe.core.providers.factory import ProviderClients
from chatpipe.infra.blob import LocalBlobStorage


def test_no_providers_configured():
    clients = build_provider_clients(ProviderConfig())
    assert clients == ProviderClients()


def test_each_configured_provider_gets_a_client():
    clients = build_provider_clients(
        ProviderConfig(
            azure_endpoint="https://example.openai.azure.com",
            azure_api_key="k",
            openai_base_url="http://localhost:8000/v1",
            openai_api_key="k",
            anthropic_api_key="k",
        )
    )
    assert isinstance(clients.azure, AsyncAzureOpenAI)
    assert isinstance(clients.openai, AsyncOpenAI)
    assert isinstance(clients.anthropic, AsyncAnthropic)


async def test_unconfigured_collaborators_are_none(tmp_path):
    config = AppConfig().model_copy(update={"providers": ProviderConfig()})
    container = create_container(
        config, clients=ProviderClients(), storage=LocalBlobStorage(tmp_path)
    )
    try:
        assert container.whisper is None
        assert container.chunked is None
        assert container.summarizer is None
        assert container.auxiliary is None
        assert not container.agents.available
        assert container.pipeline.stage_names == [
            "FileProcessor",
            "ImageProcessor",
            "ActiveFileProcessor",
            "ActiveFileInjector",
            "CodeInterpreterRouterEnricher",
            "RAGEnricher",
            "ToolRouterEnricher",
            "AgentEnricher",
            "StandardChatHandler",
            "AgentChatHandler",
            "CodeInterpreterHandler",
        ]
    finally:
        await container.aclose()
