"""Final routing for agent-mode requests.

Code interpreter policy by ``code_interpreter_mode``:

* ``off`` -- never.
* ``always`` (or unset) -- when the turn carries compatible files.
* ``intelligent`` -- when the router recommended it; compatible files
  are required only if files are attached at all.

With code interpreter, compatible files are uploaded to the agent file
store and referenced at the top of the last message.  Without it, a turn
carrying files or images cannot go through the agent, so the search mode
is switched to the configured fallback and ``execution_strategy`` is
left unset: the standard handler answers.  Anything else runs as a
web-grounded agent.
"""

from __future__ import annotations

import logging
from typing import Optional

from chatpipe.configs.system import AgentConfig
from chatpipe.core.pipeline.context import (
    AgentCapabilities,
    ChatContext,
    CodeInterpreterCapability,
    CodeInterpreterMode,
    ExecutionStrategy,
    Message,
    SearchMode,
)
from chatpipe.core.pipeline.stage import PipelineStage
from chatpipe.core.services.code_interpreter import (
    CodeInterpreterFileService,
    is_code_interpreter_compatible,
)
from chatpipe.core.stream.metadata import UploadedFileRef
from chatpipe.infra.logging import sanitize_for_log

logger = logging.getLogger(__name__)


def wants_code_interpreter(context: ChatContext, has_compatible_files: bool) -> bool:
    if not context.model.code_interpreter:
        return False
    mode = context.code_interpreter_mode
    if mode is CodeInterpreterMode.OFF:
        return False
    if mode is None or mode is CodeInterpreterMode.ALWAYS:
        return context.has_files and has_compatible_files
    if not context.code_interpreter_recommended:
        return False
    return has_compatible_files if context.has_files else True


def with_file_references(message: Message, uploaded: list[UploadedFileRef]) -> Message:
    if not uploaded:
        return message
    refs = "\n".join(f"[Uploaded file: {f.filename} (ID: {f.id})]" for f in uploaded)
    return Message(role=message.role, content=f"{refs}\n\n{message.text()}")


def fallback_search_mode(
    requested: Optional[SearchMode], config: AgentConfig
) -> Optional[SearchMode]:
    if requested is SearchMode.OFF and config.respect_explicit_search_off:
        return requested
    return SearchMode(config.multimodal_fallback_search_mode)


class AgentEnricher(PipelineStage):
    name = "AgentEnricher"

    def __init__(
        self,
        code_files: CodeInterpreterFileService,
        config: AgentConfig,
        web_search: Optional[PipelineStage] = None,
    ) -> None:
        self._code_files = code_files
        self._config = config
        # runs again after a multimodal fallback, since its slot has passed
        self._web_search = web_search

    def should_run(self, context: ChatContext) -> bool:
        return context.agent_mode and bool(context.model.agent_id)

    async def execute(self, context: ChatContext) -> ChatContext:
        messages = context.current_messages
        last = messages[-1]
        compatible = [
            (b.url, b.filename)
            for b in last.file_blocks()
            if is_code_interpreter_compatible(b.filename)
        ]

        if wants_code_interpreter(context, bool(compatible)):
            uploaded = (
                await self._code_files.upload_files(compatible, context.user)
                if compatible
                else []
            )
            if compatible and not uploaded:
                logger.warning(
                    "[%s] No file could be staged for code interpreter, using web grounding",
                    context.request_id,
                )
                return self._web_grounded(context)

            logger.info(
                "[%s] Agent with code interpreter, %d file(s) uploaded",
                context.request_id,
                len(uploaded),
            )
            return context.with_(
                enriched_messages=[*messages[:-1], with_file_references(last, uploaded)],
                execution_strategy=ExecutionStrategy.AGENT,
                agent_capabilities=AgentCapabilities(
                    code_interpreter=CodeInterpreterCapability(
                        enabled=True, uploaded_files=uploaded
                    )
                ),
            )

        if context.has_files or context.has_images:
            mode = fallback_search_mode(context.search_mode, self._config)
            logger.info(
                "[%s] Agent mode cannot take attachments, standard chat with search_mode=%s",
                context.request_id,
                sanitize_for_log(mode.value if mode else None),
            )
            fallback = context.with_(search_mode=mode)
            search = self._web_search
            if (
                search is not None
                and not search.should_run(context)
                and search.should_run(fallback)
            ):
                return await search.execute(fallback)
            return fallback

        return self._web_grounded(context)

    def _web_grounded(self, context: ChatContext) -> ChatContext:
        return context.with_(
            execution_strategy=ExecutionStrategy.AGENT,
            agent_capabilities=AgentCapabilities(bing_grounding=True),
        )
