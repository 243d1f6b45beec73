"""The chat context threaded through every pipeline stage.

``ChatContext`` is frozen.  A stage never mutates the context it was
given; it returns a new one built with ``context.with_(...)``::

    return context.with_(
        enriched_messages=messages,
        processed_content=context.processed_content.merge_metadata(
            {"citations": citations}
        ),
    )

Field groups:

* request fields, set once by ``build_chat_context`` from the validated
  request (``model``, ``messages``, ``system_prompt``, ``bot_id`` ...)
* content analysis flags, computed from the last message
  (``has_files``, ``has_images``, ``has_audio``, ``content_types``)
* pipeline output (``processed_content``, ``enriched_messages``,
  ``execution_strategy``, ``agent_capabilities``, ``response``,
  ``errors``)
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from chatpipe.configs.models import ModelConfig
from chatpipe.core.errors import PipelineError
from chatpipe.core.stream.metadata import (
    Citation,
    PendingTranscription,
    UploadedFileRef,
)
from chatpipe.core.stream.processor import StopSignal
from chatpipe.infra.rate_limit import RateLimitInfo


class ExecutionStrategy(str, Enum):
    STANDARD = "standard"
    AGENT = "agent"
    CODE_INTERPRETER = "code_interpreter"


class SearchMode(str, Enum):
    OFF = "off"
    INTELLIGENT = "intelligent"
    ALWAYS = "always"
    AGENT = "agent"


class CodeInterpreterMode(str, Enum):
    OFF = "off"
    INTELLIGENT = "intelligent"
    ALWAYS = "always"


ContentType = Literal["text", "image", "file", "audio"]

# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageUrl(BaseModel):
    url: str
    detail: Literal["auto", "low", "high"] = "auto"


class ImageUrlBlock(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageUrl


class FileUrlBlock(BaseModel):
    """Internal marker for an uploaded file.  Never sent to a provider."""

    type: Literal["file_url"] = "file_url"
    url: str
    original_filename: Optional[str] = None
    transcription_language: Optional[str] = None
    transcription_prompt: Optional[str] = None

    @property
    def blob_id(self) -> str:
        return self.url.rstrip("/").rsplit("/", 1)[-1]

    @property
    def filename(self) -> str:
        return self.original_filename or self.blob_id


class ThinkingBlock(BaseModel):
    type: Literal["thinking"] = "thinking"
    thinking: str


ContentBlock = Annotated[
    Union[TextBlock, ImageUrlBlock, FileUrlBlock, ThinkingBlock],
    Field(discriminator="type"),
]
MessageContent = Union[str, list[ContentBlock]]


class Message(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: MessageContent

    def text_blocks(self) -> list[TextBlock]:
        if isinstance(self.content, str):
            return [TextBlock(text=self.content)]
        return [b for b in self.content if isinstance(b, TextBlock)]

    def file_blocks(self) -> list[FileUrlBlock]:
        if isinstance(self.content, str):
            return []
        return [b for b in self.content if isinstance(b, FileUrlBlock)]

    def image_blocks(self) -> list[ImageUrlBlock]:
        if isinstance(self.content, str):
            return []
        return [b for b in self.content if isinstance(b, ImageUrlBlock)]

    def text(self, separator: str = "\n") -> str:
        """All text content joined with *separator*."""
        return separator.join(b.text for b in self.text_blocks())


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


class ChatUser(BaseModel):
    """The authenticated principal.  Used for attribution and metrics only."""

    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    department: Optional[str] = None


# ---------------------------------------------------------------------------
# Processed content
# ---------------------------------------------------------------------------


class FileSummary(BaseModel):
    filename: str
    summary: str
    original_content: str = ""


class InlineFile(BaseModel):
    filename: str
    content: str


class Transcript(BaseModel):
    filename: str
    transcript: str
    job_id: Optional[str] = None


class ProcessedContent(BaseModel):
    """Structured output of the content processors."""

    model_config = ConfigDict(frozen=True)

    file_summaries: list[FileSummary] = Field(default_factory=list)
    inline_files: list[InlineFile] = Field(default_factory=list)
    transcripts: list[Transcript] = Field(default_factory=list)
    pending_transcriptions: list[PendingTranscription] = Field(default_factory=list)
    images: list[ImageUrlBlock] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Side-channel for citations, RAG config and failure flags",
    )

    def merge_metadata(self, update: dict[str, Any]) -> ProcessedContent:
        """Shallow-additive merge: keys in *update* win, others are kept."""
        return self.model_copy(update={"metadata": {**self.metadata, **update}})

    @property
    def citations(self) -> list[Citation]:
        return list(self.metadata.get("citations") or [])

    @property
    def file_processing_failed(self) -> bool:
        return bool(self.metadata.get("file_processing_failed"))

    @property
    def content_injected(self) -> bool:
        """True once an enricher carried file/transcript text into the messages."""
        return bool(self.metadata.get("content_injected"))

    def is_empty(self) -> bool:
        return not (
            self.file_summaries
            or self.inline_files
            or self.transcripts
            or self.images
        )


# ---------------------------------------------------------------------------
# Agent capabilities
# ---------------------------------------------------------------------------


class CodeInterpreterCapability(BaseModel):
    enabled: bool = False
    uploaded_files: list[UploadedFileRef] = Field(default_factory=list)


class AgentCapabilities(BaseModel):
    bing_grounding: bool = False
    code_interpreter: Optional[CodeInterpreterCapability] = None


# ---------------------------------------------------------------------------
# Request options
# ---------------------------------------------------------------------------


class Tone(BaseModel):
    name: str = ""
    voice_rules: str = ""


class StreamingSpeed(BaseModel):
    chars_per_batch: int = 3
    delay_ms: int = 8


class ProcessedActiveContent(BaseModel):
    type: Literal["document", "transcript", "image"] = "document"
    content: str = ""
    summary: Optional[str] = None
    token_estimate: int = 0
    processed_at: Optional[str] = None


class ActiveFile(BaseModel):
    """A file kept in context across turns."""

    id: str
    url: str
    original_filename: str
    added_at: str
    source_message_id: str = ""
    status: Literal["idle", "processing", "ready", "error"] = "idle"
    last_used_at: Optional[str] = None
    error_message: Optional[str] = None
    pinned: bool = False
    processed_content: Optional[ProcessedActiveContent] = None
    mime_type: Optional[str] = None
    size_bytes: Optional[int] = None

    @property
    def recency_key(self) -> str:
        return self.last_used_at or self.added_at


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


class ChatContext(BaseModel):
    """Everything a stage knows about the current request."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    # identity
    request_id: str
    user: ChatUser

    # request
    model_id: str
    model: ModelConfig
    messages: list[Message]
    system_prompt: str
    temperature: Optional[float] = None
    stream: bool = True
    reasoning_effort: Optional[str] = None
    verbosity: Optional[str] = None
    bot_id: Optional[str] = None
    search_mode: Optional[SearchMode] = None
    code_interpreter_mode: Optional[CodeInterpreterMode] = None
    agent_mode: bool = False
    thread_id: Optional[str] = None
    tone: Optional[Tone] = None
    streaming_speed: Optional[StreamingSpeed] = None
    active_files: list[ActiveFile] = Field(default_factory=list)
    stop_signal: Optional[StopSignal] = Field(default=None, exclude=True)

    # content analysis
    content_types: frozenset[str] = frozenset()
    has_files: bool = False
    has_images: bool = False
    has_audio: bool = False

    # pipeline output
    processed_content: ProcessedContent = Field(default_factory=ProcessedContent)
    enriched_messages: Optional[list[Message]] = None
    execution_strategy: Optional[ExecutionStrategy] = None
    agent_capabilities: Optional[AgentCapabilities] = None
    code_interpreter_recommended: Optional[bool] = None
    response: Any = None
    errors: list[PipelineError] = Field(default_factory=list)
    rate_limit_info: Optional[RateLimitInfo] = None
    started_at: float = 0.0

    def with_(self, **changes: Any) -> ChatContext:
        """Return a copy with *changes* applied."""
        return self.model_copy(update=changes)

    def with_error(self, error: PipelineError) -> ChatContext:
        return self.with_(errors=[*self.errors, error])

    @property
    def current_messages(self) -> list[Message]:
        """``enriched_messages`` once any stage set them, else ``messages``."""
        if self.enriched_messages is not None:
            return self.enriched_messages
        return self.messages

    @property
    def strategy(self) -> ExecutionStrategy:
        return self.execution_strategy or ExecutionStrategy.STANDARD

    @property
    def has_critical_error(self) -> bool:
        return any(e.is_critical for e in self.errors)
