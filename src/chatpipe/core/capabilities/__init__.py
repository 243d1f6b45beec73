"""Agent capability stream handlers.

The set of capabilities is closed, so selection is a plain enum rather
than a registry: code interpreter claims the stream only when it is
explicitly enabled, web grounding handles everything else.
"""

from collections.abc import AsyncIterable, AsyncIterator
from enum import Enum
from typing import Optional

from chatpipe.core.pipeline.context import AgentCapabilities

from .bing import bing_grounding_stream
from .code_interpreter import code_interpreter_stream
from .events import AgentEvent, AgentStreamContext, AgentStreamError  # noqa: F401


class CapabilityKind(str, Enum):
    BING_GROUNDING = "bing_grounding"
    CODE_INTERPRETER = "code_interpreter"


def select_capability(capabilities: Optional[AgentCapabilities]) -> CapabilityKind:
    if (
        capabilities is not None
        and capabilities.code_interpreter is not None
        and capabilities.code_interpreter.enabled
    ):
        return CapabilityKind.CODE_INTERPRETER
    return CapabilityKind.BING_GROUNDING


def create_capability_stream(
    kind: CapabilityKind,
    events: AsyncIterable[AgentEvent],
    context: AgentStreamContext,
) -> AsyncIterator[str]:
    if kind is CapabilityKind.CODE_INTERPRETER:
        return code_interpreter_stream(events, context)
    return bing_grounding_stream(events, context)
