import logging

from chatpipe.core.errors import ErrorCode, PipelineError
from chatpipe.core.pipeline.context import (
    AgentCapabilities,
    ChatContext,
    CodeInterpreterCapability,
    ExecutionStrategy,
)
from chatpipe.core.pipeline.stage import PipelineStage
from chatpipe.core.services.agents import AgentChatService
from chatpipe.infra.logging import sanitize_for_log

from .agent import run_agent

logger = logging.getLogger(__name__)

CODE_INTERPRETER_DEFAULT_TEMPERATURE = 0.5


class CodeInterpreterHandler(PipelineStage):
    """Direct code-interpreter runs (``execution_strategy=code_interpreter``).

    A dedicated ``code_interpreter_agent_id`` wins over the model's
    general ``agent_id``.
    """

    name = "CodeInterpreterHandler"
    terminal = True

    def __init__(self, agents: AgentChatService) -> None:
        self._agents = agents

    def should_run(self, context: ChatContext) -> bool:
        return context.strategy is ExecutionStrategy.CODE_INTERPRETER

    async def execute(self, context: ChatContext) -> ChatContext:
        agent_id = context.model.code_interpreter_agent_id or context.model.agent_id
        if not agent_id:
            raise PipelineError.critical(
                f"Model {context.model_id} does not have a Code Interpreter agent configured",
                ErrorCode.MODEL_CONFIG_INVALID,
            )

        existing = (
            context.agent_capabilities.code_interpreter
            if context.agent_capabilities
            else None
        )
        uploaded = existing.uploaded_files if existing else []
        logger.info(
            "[%s] Code interpreter run: agent=%s files=%s",
            context.request_id,
            sanitize_for_log(agent_id),
            [f.filename for f in uploaded],
        )
        response = await run_agent(
            self._agents,
            context,
            agent_id=agent_id,
            temperature=context.temperature or CODE_INTERPRETER_DEFAULT_TEMPERATURE,
            capabilities=AgentCapabilities(
                code_interpreter=CodeInterpreterCapability(
                    enabled=True, uploaded_files=uploaded
                )
            ),
            strategy=ExecutionStrategy.CODE_INTERPRETER,
        )
        return context.with_(response=response)
