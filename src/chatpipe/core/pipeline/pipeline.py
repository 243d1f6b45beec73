"""Sequential stage runner.

Stages run in registration order.  Each one is bounded by its timeout
from ``StageTimeoutConfig``; a stage that runs out of time is recorded
as a ``PIPELINE_TIMEOUT`` warning and skipped.  Non-terminal failures
are recorded and the pipeline moves on, so optional enrichment can
never take a request down.  Critical ``PipelineError``s and terminal
handler failures propagate.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence

from chatpipe.configs.system import StageTimeoutConfig
from chatpipe.core.errors import ErrorCode, PipelineError
from chatpipe.core.metrics import STAGE_DURATION_SECONDS, STAGE_OUTCOMES_TOTAL
from chatpipe.infra.logging import sanitize_for_log
from chatpipe.infra.telemetry import (
    ATTR_ERROR_COUNT,
    ATTR_STAGE_NAME,
    ATTR_STAGE_OUTCOME,
    ATTR_STRATEGY,
    SPAN_PIPELINE_EXECUTE,
    SPAN_PIPELINE_STAGE,
    tracer,
)

from .context import ChatContext
from .stage import PipelineStage

logger = logging.getLogger(__name__)


class ChatPipeline:
    """Runs a fixed list of stages over a ``ChatContext``."""

    def __init__(
        self,
        stages: Sequence[PipelineStage],
        timeouts: StageTimeoutConfig | None = None,
    ) -> None:
        self._stages = tuple(stages)
        self._timeouts = timeouts or StageTimeoutConfig()

    @property
    def stages(self) -> tuple[PipelineStage, ...]:
        return self._stages

    @property
    def stage_names(self) -> list[str]:
        return [s.name for s in self._stages]

    async def execute(self, context: ChatContext) -> ChatContext:
        """Run every applicable stage and return the final context.

        Raises ``PipelineError(NO_RESPONSE)`` if no terminal handler set
        a response.
        """
        start = time.monotonic()
        with tracer.start_as_current_span(SPAN_PIPELINE_EXECUTE) as span:
            logger.debug(
                "[%s] Pipeline starting: %s", context.request_id, self.stage_names
            )
            for stage in self._stages:
                context = await self._run_stage(stage, context)
                critical = next((e for e in context.errors if e.is_critical), None)
                if critical is not None:
                    logger.error(
                        "[%s] Critical error in %s, stopping pipeline: %s",
                        context.request_id,
                        stage.name,
                        sanitize_for_log(critical),
                    )
                    raise critical

            span.set_attribute(ATTR_STRATEGY, context.strategy.value)
            span.set_attribute(ATTR_ERROR_COUNT, len(context.errors))

        logger.info(
            "[%s] Pipeline completed in %.0fms (strategy=%s, errors=%d)",
            context.request_id,
            (time.monotonic() - start) * 1000,
            context.strategy.value,
            len(context.errors),
        )

        if context.response is None:
            raise PipelineError.critical(
                "No response generated by the pipeline", ErrorCode.NO_RESPONSE
            )
        return context

    async def _run_stage(
        self, stage: PipelineStage, context: ChatContext
    ) -> ChatContext:
        if not stage.should_run(context):
            STAGE_OUTCOMES_TOTAL.labels(stage=stage.name, outcome="skipped").inc()
            return context

        timeout = self._timeouts.for_stage(stage.name)
        outcome = "ok"
        start = time.monotonic()
        with tracer.start_as_current_span(SPAN_PIPELINE_STAGE) as span:
            span.set_attribute(ATTR_STAGE_NAME, stage.name)
            try:
                async with asyncio.timeout(timeout):
                    return await stage.execute(context)
            except TimeoutError:
                outcome = "timeout"
                logger.warning(
                    "[%s] Stage %s exceeded %.0fs, skipping",
                    context.request_id,
                    stage.name,
                    timeout,
                )
                return context.with_error(
                    PipelineError.warning(
                        f"Stage {stage.name} exceeded timeout of {timeout}s",
                        ErrorCode.PIPELINE_TIMEOUT,
                        details={"stage": stage.name, "timeout": timeout},
                    )
                )
            except PipelineError as e:
                outcome = "error"
                if e.is_critical or stage.terminal:
                    raise
                logger.warning(
                    "[%s] Stage %s failed: %s",
                    context.request_id,
                    stage.name,
                    sanitize_for_log(e),
                )
                return context.with_error(e)
            except Exception as e:
                outcome = "error"
                if stage.terminal:
                    raise
                span.record_exception(e)
                logger.exception(
                    "[%s] Uncaught error in stage %s", context.request_id, stage.name
                )
                return context.with_error(
                    PipelineError.error(
                        f"Uncaught error in {stage.name}: {e}",
                        ErrorCode.PROVIDER_ERROR,
                        details={"stage": stage.name},
                        cause=e,
                    )
                )
            finally:
                span.set_attribute(ATTR_STAGE_OUTCOME, outcome)
                STAGE_OUTCOMES_TOTAL.labels(stage=stage.name, outcome=outcome).inc()
                STAGE_DURATION_SECONDS.labels(stage=stage.name).observe(
                    time.monotonic() - start
                )
