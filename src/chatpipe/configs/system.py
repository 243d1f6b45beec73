from datetime import timedelta

from pydantic import BaseModel, Field


class ThirdPartyConfig(BaseModel):
    """Configuration for third-party integrations."""

    redis_uri: str = Field(
        default="",
        description="Redis connection URI; empty disables Redis-backed rate limiting",
    )


class LoggingConfig(BaseModel):
    """Root logger settings."""

    level: str = Field(default="INFO", description="Root log level")
    json_output: bool = Field(
        default=True, description="Emit JSON lines instead of coloured text"
    )


class TracingConfig(BaseModel):
    """OpenTelemetry exporter settings."""

    enabled: bool = Field(default=False, description="Enable OTLP tracing")
    endpoint: str = Field(default="", description="OTLP HTTP traces endpoint")
    username: str = Field(default="", description="Basic-auth username")
    password: str = Field(default="", description="Basic-auth password")
    service_name: str = Field(default="chatpipe", description="service.name")
    sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    excluded_urls: list[str] = Field(
        default_factory=lambda: ["/health", "/metrics"],
        description="Paths excluded from HTTP instrumentation",
    )


class APIConfig(BaseModel):
    """API configuration settings."""

    rate_limit_per_minute: int = Field(
        default=100, description="Chat requests allowed per user per minute"
    )
    request_timeout: timedelta = Field(
        default=timedelta(minutes=5),
        description="Wall-clock timeout for a whole streamed response",
    )
    max_request_bytes: int = Field(
        default=10 * 1024 * 1024, description="Maximum JSON body size"
    )
    send_traceback: bool = Field(
        default=False, description="Include tracebacks in error responses"
    )


class ProviderConfig(BaseModel):
    """Endpoints and credentials for the model providers."""

    azure_endpoint: str = Field(default="", description="Azure OpenAI endpoint")
    azure_api_key: str = Field(default="", description="Azure OpenAI API key")
    azure_api_version: str = Field(default="2025-03-01-preview")
    openai_base_url: str = Field(
        default="", description="OpenAI-compatible base URL (Llama, DeepSeek, ...)"
    )
    openai_api_key: str = Field(default="", description="OpenAI-compatible API key")
    anthropic_base_url: str = Field(default="", description="Anthropic base URL")
    anthropic_api_key: str = Field(default="", description="Anthropic API key")
    auxiliary_model: str = Field(
        default="gpt-4.1-mini",
        description="Fast model used for query reformulation and routing",
    )
    max_retries: int = Field(default=2, description="SDK-level retry count")
    timeout: timedelta = Field(default=timedelta(seconds=120))


class FileProcessingConfig(BaseModel):
    """Attachment download and extraction limits."""

    max_download_bytes: int = Field(
        default=50 * 1024 * 1024,
        description="Files larger than this are rejected before download",
    )
    temp_root: str = Field(
        default="/tmp/chatpipe", description="Sandbox directory for downloads"
    )
    blob_root: str = Field(
        default="/var/lib/chatpipe/blobs",
        description="Root directory of the local blob store",
    )
    read_retries: int = Field(default=2, description="Retries for temp-file reads")
    read_retry_delay: timedelta = Field(default=timedelta(seconds=1))


class TranscriptionConfig(BaseModel):
    """Whisper and FFmpeg settings."""

    whisper_deployment: str = Field(default="whisper")
    sync_max_bytes: int = Field(
        default=25 * 1024 * 1024,
        description="Audio at or under this size is transcribed synchronously",
    )
    ffmpeg_bin: str = Field(default="", description="FFmpeg binary; PATH lookup when empty")
    ffprobe_bin: str = Field(default="", description="FFprobe binary; PATH lookup when empty")
    chunk_seconds: int = Field(default=600, description="Chunk length for long audio")
    job_ttl: timedelta = Field(
        default=timedelta(hours=1),
        description="Finished chunked jobs are forgotten this long after they end",
    )
    max_jobs: int = Field(
        default=1000, description="Cap on retained jobs; oldest finished go first"
    )


class SearchConfig(BaseModel):
    """Azure AI Search connection."""

    endpoint: str = Field(default="", description="Search service endpoint")
    api_key: str = Field(default="", description="Search admin/query key")
    index: str = Field(default="", description="Default index name")
    semantic_config: str = Field(default="default")
    vector_field: str = Field(default="contentVector")
    api_version: str = Field(default="2024-07-01")
    timeout: timedelta = Field(default=timedelta(seconds=10))


class RagConfig(BaseModel):
    """Knowledge-base retrieval and ranking settings."""

    top_k: int = Field(default=10, description="Sources injected into the prompt")
    overfetch_factor: int = Field(
        default=3, description="Candidates fetched per injected source"
    )
    max_chunks_per_source: int = Field(
        default=2, description="Cap on chunks taken from one document"
    )
    relevance_weight: float = Field(default=0.7)
    recency_weight: float = Field(default=0.3)
    recency_window_days: int = Field(
        default=365, description="Recency score decays linearly to zero over this window"
    )
    stale_cutoff_days: int = Field(
        default=730, description="Results older than this may be dropped"
    )
    stale_min_relevance: float = Field(
        default=0.5,
        description="Stale results are kept only at or above this normalized relevance",
    )


class AgentConfig(BaseModel):
    """Agent-mode routing policy."""

    multimodal_fallback_search_mode: str = Field(
        default="intelligent",
        description="Search mode applied when agent mode cannot take files or images",
    )
    respect_explicit_search_off: bool = Field(
        default=True,
        description="Do not override a search mode the user explicitly set to off",
    )
    default_search_agent_model: str = Field(
        default="gpt-4.1",
        description="Model whose agent runs web searches when the chat model has none",
    )


class StageTimeoutConfig(BaseModel):
    """Per-stage wall-clock limits enforced by the pipeline runner."""

    stages: dict[str, float] = Field(
        default_factory=lambda: {
            "FileProcessor": 30.0,
            "RAGEnricher": 10.0,
            "ToolRouterEnricher": 45.0,
            "AgentEnricher": 60.0,
            "StandardChatHandler": 90.0,
            "AgentChatHandler": 120.0,
        }
    )
    default: float = Field(default=30.0)

    def for_stage(self, name: str) -> float:
        return self.stages.get(name, self.default)


class PromptConfig(BaseModel):
    """System prompt building blocks (``configs/prompt.yml`` overrides these)."""

    base_system_prompt: str = Field(
        default=(
            "# Core Behavior\n\n"
            "You are an AI assistant that helps staff accomplish their work. "
            "Respond in the language the user writes in. Be clear and direct, "
            "say when you are unsure, and never invent sources.\n\n"
            "## Response Formatting\n\n"
            "Use GitHub-flavored markdown. Always give code blocks a language."
        ),
        description="Immutable core behaviour shared by every request",
    )
    default_user_prompt: str = Field(
        default=(
            "You are a helpful AI assistant. Follow the user's instructions "
            "carefully. Respond using markdown."
        ),
        description="Used when the request carries no prompt of its own",
    )
