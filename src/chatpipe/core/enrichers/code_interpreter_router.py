import logging

from chatpipe.core.pipeline.context import ChatContext, CodeInterpreterMode
from chatpipe.core.pipeline.stage import PipelineStage
from chatpipe.core.services.code_interpreter import CodeInterpreterRouterService

logger = logging.getLogger(__name__)


def _filenames(context: ChatContext) -> list[str]:
    names = [b.filename for b in context.current_messages[-1].file_blocks()]
    names += [s.filename for s in context.processed_content.file_summaries]
    return list(dict.fromkeys(names))


class CodeInterpreterRouterEnricher(PipelineStage):
    """Asks the routing model whether this turn needs code execution.

    Only used in ``intelligent`` mode on agent-capable models.  Requests
    to generate files count even when nothing is attached.
    """

    name = "CodeInterpreterRouterEnricher"

    def __init__(self, router: CodeInterpreterRouterService) -> None:
        self._router = router

    def should_run(self, context: ChatContext) -> bool:
        return (
            context.code_interpreter_mode is CodeInterpreterMode.INTELLIGENT
            and context.agent_mode
            and context.model.code_interpreter
            and bool(context.model.agent_id)
        )

    async def execute(self, context: ChatContext) -> ChatContext:
        decision = await self._router.route(context.current_messages, _filenames(context))
        logger.debug(
            "[%s] Code interpreter recommended=%s",
            context.request_id,
            decision.needs_code_interpreter,
        )
        return context.with_(code_interpreter_recommended=decision.needs_code_interpreter)
