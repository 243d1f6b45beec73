"""The stage contract."""

from abc import ABC, abstractmethod
from typing import ClassVar

from .context import ChatContext


class PipelineStage(ABC):
    """A guarded unit of pipeline work.

    ``should_run`` is a pure predicate.  ``execute`` returns a new
    context and handles expected failures itself, by recording them in
    ``context.errors`` or returning its input unchanged.  Only
    unrecoverable conditions should raise.

    Terminal stages (the execution handlers) set ``response``; the
    runner lets their exceptions propagate to the caller instead of
    recording them.
    """

    name: ClassVar[str]
    terminal: ClassVar[bool] = False

    @abstractmethod
    def should_run(self, context: ChatContext) -> bool: ...

    @abstractmethod
    async def execute(self, context: ChatContext) -> ChatContext: ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
