"""Static per-model configuration.

Provider dispatch keys strictly off these flags (``sdk`` plus
``avoid_system_prompt``), never off request content.  The built-in
registry can be extended or overridden through ``AppConfig.models``.
"""

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field


class ModelSDK(str, Enum):
    """Which client library a model is served through."""

    AZURE_OPENAI = "azure-openai"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class ModelConfig(BaseModel):
    """A chat model descriptor."""

    id: str
    name: str = ""
    max_length: int = Field(default=128000, description="Input context window in tokens")
    token_limit: int = Field(default=16000, description="Maximum output tokens")
    sdk: ModelSDK = ModelSDK.AZURE_OPENAI
    supports_temperature: Optional[bool] = None
    deployment_name: Optional[str] = None
    supports_reasoning_effort: bool = False
    reasoning_effort: Optional[Literal["minimal", "low", "medium", "high"]] = None
    supports_verbosity: bool = False
    verbosity: Optional[Literal["low", "medium", "high"]] = None
    avoid_system_prompt: bool = False
    agent_id: Optional[str] = None
    code_interpreter: bool = False
    code_interpreter_agent_id: Optional[str] = None
    is_agent: bool = False
    is_custom_agent: bool = False
    vision: bool = False

    @property
    def model_id_for_request(self) -> str:
        """Deployment name when the provider needs one, otherwise the id."""
        return self.deployment_name or self.id


DEFAULT_MODEL_ID = "gpt-5.2-chat"
DEFAULT_VISION_MODEL_ID = "gpt-5.2-chat"

BUILTIN_MODELS: dict[str, ModelConfig] = {
    m.id: m
    for m in (
        ModelConfig(
            id="gpt-5.2",
            name="GPT-5.2",
            supports_temperature=False,
            supports_reasoning_effort=True,
            reasoning_effort="medium",
            supports_verbosity=True,
            verbosity="medium",
            vision=True,
        ),
        ModelConfig(
            id="gpt-5.2-chat",
            name="GPT-5.2 Chat",
            supports_temperature=False,
            vision=True,
        ),
        ModelConfig(
            id="gpt-5-mini",
            name="GPT-5 Mini",
            supports_temperature=False,
            supports_reasoning_effort=True,
            reasoning_effort="low",
            supports_verbosity=True,
            verbosity="low",
            vision=True,
        ),
        ModelConfig(
            id="o3",
            name="o3",
            max_length=200000,
            token_limit=100000,
            supports_temperature=False,
            supports_reasoning_effort=True,
            reasoning_effort="medium",
        ),
        ModelConfig(
            id="gpt-4.1",
            name="GPT-4.1",
            supports_temperature=False,
            is_agent=True,
            agent_id="asst_gpt41_web",
            code_interpreter=True,
            vision=True,
        ),
        ModelConfig(
            id="Llama-4-Maverick-17B-128E-Instruct-FP8",
            name="Llama 4 Maverick",
            sdk=ModelSDK.OPENAI,
            supports_temperature=True,
            deployment_name="Llama-4-Maverick-17B-128E-Instruct-FP8",
        ),
        ModelConfig(
            id="DeepSeek-R1",
            name="DeepSeek-R1",
            token_limit=32768,
            sdk=ModelSDK.OPENAI,
            supports_temperature=True,
            deployment_name="DeepSeek-R1",
            avoid_system_prompt=True,
        ),
        ModelConfig(
            id="DeepSeek-V3.1",
            name="DeepSeek-V3.1",
            token_limit=32768,
            sdk=ModelSDK.OPENAI,
            supports_temperature=True,
            deployment_name="DeepSeek-V3.1",
            avoid_system_prompt=True,
        ),
        ModelConfig(
            id="grok-3",
            name="Grok 3",
            sdk=ModelSDK.OPENAI,
            supports_temperature=True,
            vision=True,
        ),
        ModelConfig(
            id="claude-sonnet-4-5",
            name="Claude Sonnet 4.5",
            max_length=200000,
            token_limit=8192,
            sdk=ModelSDK.ANTHROPIC,
            supports_temperature=True,
            deployment_name="claude-sonnet-4-5",
            vision=True,
        ),
        ModelConfig(
            id="claude-haiku-4-5",
            name="Claude Haiku 4.5",
            max_length=200000,
            token_limit=8192,
            sdk=ModelSDK.ANTHROPIC,
            supports_temperature=True,
            deployment_name="claude-haiku-4-5",
            vision=True,
        ),
    )
}


def build_model_registry(
    overrides: list[ModelConfig] | None = None,
) -> dict[str, ModelConfig]:
    """Merge configured models over the built-in registry (by id)."""
    registry = dict(BUILTIN_MODELS)
    for model in overrides or []:
        registry[model.id] = model
    return registry
