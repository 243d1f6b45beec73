"""Pydantic models for the chat API.

The request schema is strict at the top level (unknown fields are
rejected) and lenient inside messages, where clients attach UI metadata
that the pipeline ignores.  Field names are snake_case; the camelCase
spelling used by browser clients is accepted as an alias.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from chatpipe.core.errors import ErrorCode, PipelineError
from chatpipe.core.pipeline.context import (
    ActiveFile,
    CodeInterpreterMode,
    Message,
    SearchMode,
    StreamingSpeed,
    Tone,
)

MAX_MESSAGES = 100
MAX_STRING_CONTENT = 100_000
MAX_TEXT_BLOCK = 50_000
MAX_PROMPT_LENGTH = 10_000
MAX_VOICE_RULES = 10_000
MAX_ID_LENGTH = 100
MAX_USER_CONTEXT = 2_000
MAX_REQUEST_BYTES = 10 * 1024 * 1024


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


class TextContent(BaseModel):
    type: Literal["text"]
    text: str = Field(max_length=MAX_TEXT_BLOCK)


class ImageUrlContent(BaseModel):
    url: str = Field(min_length=1)
    detail: Literal["auto", "low", "high"] = "auto"


class ImageContent(BaseModel):
    type: Literal["image_url"]
    image_url: ImageUrlContent


class FileContent(_CamelModel):
    type: Literal["file_url"]
    url: str = Field(min_length=1)
    original_filename: Optional[str] = None
    transcription_language: Optional[str] = None
    transcription_prompt: Optional[str] = None


class ThinkingContent(BaseModel):
    type: Literal["thinking"]
    thinking: str


RequestContentBlock = Annotated[
    Union[TextContent, ImageContent, FileContent, ThinkingContent],
    Field(discriminator="type"),
]


class RequestMessage(BaseModel):
    """One conversation turn.  Unknown per-message fields are dropped."""

    model_config = ConfigDict(extra="ignore")

    role: Literal["user", "assistant", "system"]
    content: Union[
        Annotated[str, Field(max_length=MAX_STRING_CONTENT)],
        list[RequestContentBlock],
    ]

    def to_message(self) -> Message:
        if isinstance(self.content, str):
            return Message(role=self.role, content=self.content)
        return Message.model_validate(
            {"role": self.role, "content": [b.model_dump() for b in self.content]}
        )


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


class ModelDescriptor(_CamelModel):
    """The model the client picked.  Only the id is authoritative."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    name: str = ""
    max_length: Optional[int] = Field(default=None, gt=0)
    token_limit: Optional[int] = Field(default=None, gt=0)
    is_agent: Optional[bool] = None
    is_custom_agent: Optional[bool] = None
    agent_id: Optional[str] = None


class ToneOption(_CamelModel):
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    name: str = Field(min_length=1)
    description: str = ""
    voice_rules: str = Field(default="", max_length=MAX_VOICE_RULES)


class StreamingSpeedOption(_CamelModel):
    chars_per_batch: int = Field(ge=1, le=20)
    delay_ms: int = Field(ge=1, le=100)


class ChatRequest(_CamelModel):
    """Request body of ``POST /api/v1/chat``."""

    model_config = ConfigDict(extra="forbid")

    model: ModelDescriptor
    messages: list[RequestMessage] = Field(min_length=1, max_length=MAX_MESSAGES)
    prompt: Optional[str] = Field(default=None, max_length=MAX_PROMPT_LENGTH)
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    stream: bool = True
    reasoning_effort: Optional[Literal["minimal", "low", "medium", "high"]] = None
    verbosity: Optional[Literal["low", "medium", "high"]] = None
    bot_id: Optional[str] = Field(default=None, max_length=MAX_ID_LENGTH)
    search_mode: Optional[SearchMode] = None
    code_interpreter_mode: Optional[CodeInterpreterMode] = None
    thread_id: Optional[str] = Field(default=None, max_length=MAX_ID_LENGTH)
    tone: Optional[ToneOption] = None
    streaming_speed: Optional[StreamingSpeedOption] = None
    active_files: Optional[list[ActiveFile]] = None
    include_user_info_in_prompt: bool = False
    preferred_name: Optional[str] = Field(default=None, max_length=MAX_ID_LENGTH)
    user_context: Optional[str] = Field(default=None, max_length=MAX_USER_CONTEXT)

    def to_messages(self) -> list[Message]:
        return [m.to_message() for m in self.messages]

    def to_tone(self) -> Optional[Tone]:
        if self.tone is None:
            return None
        return Tone(name=self.tone.name, voice_rules=self.tone.voice_rules)

    def to_streaming_speed(self) -> Optional[StreamingSpeed]:
        if self.streaming_speed is None:
            return None
        return StreamingSpeed(**self.streaming_speed.model_dump())


def validate_request_size(raw: bytes, max_bytes: int = MAX_REQUEST_BYTES) -> None:
    """Reject bodies over *max_bytes* before they are parsed."""
    if len(raw) > max_bytes:
        raise PipelineError.critical(
            f"Request body of {len(raw)} bytes exceeds the {max_bytes} byte limit",
            ErrorCode.VALIDATION_FAILED,
            details={"size": len(raw), "max_size": max_bytes},
        )


class TranscriptionJobResponse(_CamelModel):
    job_id: str
    filename: str
    status: Literal["pending", "processing", "completed", "failed"]
    progress: float
    total_chunks: int
    completed_chunks: int
    transcript: Optional[str] = None
    error: Optional[str] = None
