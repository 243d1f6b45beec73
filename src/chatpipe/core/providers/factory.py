"""Select a ``ModelHandler`` from static model configuration."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from anthropic import AsyncAnthropic
from openai import AsyncAzureOpenAI, AsyncOpenAI

from chatpipe.configs.models import ModelConfig, ModelSDK
from chatpipe.core.errors import ErrorCode, PipelineError

from .anthropic import AnthropicHandler
from .azure import AzureOpenAIHandler
from .base import ModelHandler
from .openai_compat import MergeSystemPromptHandler, StandardOpenAIHandler


@dataclass(frozen=True)
class ProviderClients:
    """SDK clients shared by every request.  ``None`` when unconfigured."""

    azure: Optional[AsyncAzureOpenAI] = None
    openai: Optional[AsyncOpenAI] = None
    anthropic: Optional[AsyncAnthropic] = None


def handler_name(model: Optional[ModelConfig]) -> str:
    if model is None:
        return "Unknown"
    if model.sdk is ModelSDK.ANTHROPIC:
        return AnthropicHandler.name
    if model.sdk is ModelSDK.AZURE_OPENAI:
        return AzureOpenAIHandler.name
    if model.avoid_system_prompt:
        return MergeSystemPromptHandler.name
    return StandardOpenAIHandler.name


def _require(client, model: ModelConfig, what: str):
    if client is None:
        raise PipelineError.critical(
            f"{what} client is not configured for model {model.id}",
            ErrorCode.MODEL_CONFIG_INVALID,
        )
    return client


def create_model_handler(
    model: Optional[ModelConfig], clients: ProviderClients
) -> ModelHandler:
    """Pick the handler for *model*.

    Order: Anthropic SDK, Azure OpenAI, providers that reject system
    prompts, then plain OpenAI-compatible.
    """
    if model is None:
        raise PipelineError.critical(
            "Model configuration is required to create handler",
            ErrorCode.MODEL_CONFIG_INVALID,
        )

    if model.sdk is ModelSDK.ANTHROPIC:
        return AnthropicHandler(_require(clients.anthropic, model, "Anthropic"))
    if model.sdk is ModelSDK.AZURE_OPENAI:
        return AzureOpenAIHandler(_require(clients.azure, model, "Azure OpenAI"))

    client = _require(clients.openai, model, "OpenAI-compatible")
    if model.avoid_system_prompt:
        return MergeSystemPromptHandler(client)
    return StandardOpenAIHandler(client)
