"""Configuration management using pydantic-settings.

**Not a singleton**: each call to ``get_app_config()`` re-reads config
from disk so that ConfigMap updates are picked up without restarting.

Priority order (highest first):

1. ConfigMap YAML (path from ``CHATPIPE_CONFIGMAP_FILE`` env var, hot-reloadable)
2. Environment variables (``CHATPIPE_`` prefix)
3. ``.env`` dotenv file
4. Static YAML (``configs/config.yaml`` -- baked into the Docker image)
5. Prompt YAML (``configs/prompt.yml``)
6. Init defaults / field defaults
7. File secrets

Caveat: only the *contents* of the known config files are dynamic.
The file paths are resolved at import time; adding brand-new files
after startup requires a process restart.
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from .agents import OrganizationAgent, find_organization_agent
from .models import ModelConfig, build_model_registry
from .system import (
    AgentConfig,
    APIConfig,
    FileProcessingConfig,
    LoggingConfig,
    PromptConfig,
    ProviderConfig,
    RagConfig,
    SearchConfig,
    StageTimeoutConfig,
    ThirdPartyConfig,
    TracingConfig,
    TranscriptionConfig,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Path constants
# ---------------------------------------------------------------------------

CONFIG_PY_PATH = Path(__file__).resolve()
PROJECT_ROOT = CONFIG_PY_PATH.parent.parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "configs"

STATIC_CONFIG_FILE = CONFIG_DIR / "config.yaml"
PROMPT_CONFIG_FILE = CONFIG_DIR / "prompt.yml"

_configmap_env = os.environ.get("CHATPIPE_CONFIGMAP_FILE")
CONFIGMAP_CONFIG_FILE: Optional[Path] = Path(_configmap_env) if _configmap_env else None

DOTENV_FILE_PATH = PROJECT_ROOT / ".env"
ENV_DELIMITER = "__"  # Nested environment variable delimiter
ENV_PREFIX = "CHATPIPE_"

DEFAULT_ENCODING = "utf-8"


# ---------------------------------------------------------------------------
# Application config (re-created on every call, not a singleton)
# ---------------------------------------------------------------------------


class AppConfig(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(
        env_file=DOTENV_FILE_PATH,
        env_file_encoding=DEFAULT_ENCODING,
        env_nested_delimiter=ENV_DELIMITER,
        env_prefix=ENV_PREFIX,
        case_sensitive=False,
        extra="ignore",
        yaml_file=STATIC_CONFIG_FILE,
        yaml_file_encoding=DEFAULT_ENCODING,
    )

    third_party: ThirdPartyConfig = Field(
        default_factory=ThirdPartyConfig,
        description="Third-party service configurations",
    )
    api: APIConfig = Field(
        default_factory=APIConfig,
        description="API configuration settings",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Root logger settings",
    )
    tracing: TracingConfig = Field(
        default_factory=TracingConfig,
        description="OpenTelemetry tracing settings",
    )
    providers: ProviderConfig = Field(
        default_factory=ProviderConfig,
        description="Model provider endpoints and credentials",
    )
    files: FileProcessingConfig = Field(
        default_factory=FileProcessingConfig,
        description="Attachment download and extraction limits",
    )
    transcription: TranscriptionConfig = Field(
        default_factory=TranscriptionConfig,
        description="Audio/video transcription settings",
    )
    search: SearchConfig = Field(
        default_factory=SearchConfig,
        description="Knowledge-base search service",
    )
    rag: RagConfig = Field(
        default_factory=RagConfig,
        description="RAG retrieval and ranking settings",
    )
    agent: AgentConfig = Field(
        default_factory=AgentConfig,
        description="Agent-mode routing policy",
    )
    timeouts: StageTimeoutConfig = Field(
        default_factory=StageTimeoutConfig,
        description="Per-stage pipeline timeouts",
    )
    prompt: PromptConfig = Field(
        default_factory=PromptConfig,
        description="System prompt configuration",
    )
    models: list[ModelConfig] = Field(
        default_factory=list,
        description="Model descriptors merged over the built-in registry",
    )
    agents: list[OrganizationAgent] = Field(
        default_factory=list,
        description="Organization knowledge-base agents",
    )

    def model_registry(self) -> dict[str, ModelConfig]:
        return build_model_registry(self.models)

    def get_organization_agent(
        self, agent_id: Optional[str]
    ) -> Optional[OrganizationAgent]:
        return find_organization_agent(self.agents, agent_id)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        sources: list[PydanticBaseSettingsSource] = []

        # 1. ConfigMap YAML -- highest priority (hot-reloadable)
        if CONFIGMAP_CONFIG_FILE is not None and CONFIGMAP_CONFIG_FILE.is_file():
            sources.append(
                YamlConfigSettingsSource(
                    settings_cls,
                    yaml_file=CONFIGMAP_CONFIG_FILE,
                )
            )

        # 2-3. Env vars and dotenv
        sources.append(env_settings)
        sources.append(dotenv_settings)

        # 4. Static YAML (baked into image)
        sources.append(YamlConfigSettingsSource(settings_cls))

        # 5. Prompt YAML (separate file)
        sources.append(_PromptYamlSettingsSource(settings_cls))

        # 6-7. Init defaults and file secrets
        sources.append(init_settings)
        sources.append(file_secret_settings)

        return tuple(sources)


class _PromptYamlSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads ``prompt.yml``."""

    def __init__(self, settings_cls: type[BaseSettings]) -> None:
        self.settings_cls = settings_cls

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        if not PROMPT_CONFIG_FILE.exists():
            return {}

        try:
            with open(PROMPT_CONFIG_FILE, encoding=DEFAULT_ENCODING) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError):
            logger.warning("Could not read %s", PROMPT_CONFIG_FILE, exc_info=True)
            return {}

        if not isinstance(data, dict):
            return {}
        prompt = {
            key: data[key]
            for key in ("base_system_prompt", "default_user_prompt")
            if key in data
        }
        return {"prompt": prompt} if prompt else {}


def get_app_config() -> AppConfig:
    """Get the application configuration.

    Re-reads ``configs/config.yaml`` (and the ConfigMap override when
    present) on every call so that hot-reloaded values are picked up
    immediately.
    """
    return AppConfig()
