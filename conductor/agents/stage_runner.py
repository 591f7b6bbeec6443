"""
Stage Runner
============
Executes a pipeline's declared stages for one run, strictly in order, on the
run's single worker task.

Semantics:
    - Each stage delegates to an async collaborator action and is recorded as
      an immutable StageResult. The runner knows nothing about stage internals.
    - Fail-fast: the first failing non-cleanup stage fails the run and every
      later non-cleanup stage is recorded as SKIPPED.
    - Cleanup-tagged stages always run, after failures and aborts alike.
      A failing cleanup stage is recorded but never changes the run status.
    - Abort: an abort request is honoured at the next stage boundary. Stages
      are never preempted mid-execution. Remaining non-cleanup stages are
      SKIPPED and the run ends ABORTED.
    - Cancellation of the worker task (service shutdown) interrupts the
      current stage, which is recorded as SKIPPED. The run then behaves as
      aborted: cleanup stages still run, the run ends ABORTED, and the
      cancellation is re-raised afterwards.
    - Final status is SUCCEEDED iff every non-cleanup stage succeeded.

Error mapping:
    PipelineError subclasses keep their class name as ``error_kind``; any
    other exception is logged with traceback and recorded under its own class
    name. Nothing escapes ``run`` except task cancellation, which is
    re-raised once the run has been finished.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol

from conductor.core.exceptions import PipelineError
from conductor.models.pipeline_run import PipelineKind, PipelineRun, RunFailure, RunStatus
from conductor.models.stage_result import Capability, StageResult, StageStatus

logger = logging.getLogger(__name__)


@dataclass
class StageOutcome:
    """What a stage action reports back. Returning None means success."""
    succeeded: bool = True
    output_ref: Optional[str] = None
    output: str = ""
    message: str = ""
    error_kind: Optional[str] = None


@dataclass
class StageContext:
    """Per-run scratch space shared by the stages of one run."""
    run: PipelineRun
    stage: "StageDefinition"
    scratch: dict[str, Any]


StageAction = Callable[[StageContext], Awaitable[Optional[StageOutcome]]]


@dataclass
class StageDefinition:
    name: str
    capability: Capability
    action: StageAction
    cleanup: bool = False


@dataclass
class PipelineDefinition:
    name: str
    kind: PipelineKind
    stages: list[StageDefinition] = field(default_factory=list)


@dataclass
class RunResult:
    run: PipelineRun
    status: RunStatus
    failed_stage: Optional[str] = None
    error_kind: Optional[str] = None
    output_ref: Optional[str] = None


class OutputStore(Protocol):
    def write_stage_output(self, run: PipelineRun, stage_name: str, output: str) -> Optional[str]:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StageRunner:

    def __init__(self, output_store: Optional[OutputStore] = None) -> None:
        self.output_store = output_store

    async def run(self, pipeline: PipelineDefinition, run: PipelineRun) -> RunResult:
        """Drive ``run`` through every stage of ``pipeline``."""
        run.start()
        scratch: dict[str, Any] = {}
        failure: Optional[RunFailure] = None
        aborted = False
        cancelled = False

        logger.info("[%s] Run started (%d stages)", run.key, len(pipeline.stages))

        for index, stage in enumerate(pipeline.stages):
            run.advance(index)

            if not stage.cleanup:
                if failure is None and not aborted and run.abort_requested:
                    aborted = True
                    logger.warning("[%s] Abort honoured before stage '%s'", run.key, stage.name)
                if failure is not None or aborted:
                    run.record_stage(self._skipped(stage))
                    continue

            try:
                result = await self._execute(stage, StageContext(run=run, stage=stage, scratch=scratch))
            except asyncio.CancelledError:
                if cancelled:
                    raise
                cancelled = True
                logger.warning("[%s] Worker cancelled during stage '%s', running cleanup", run.key, stage.name)
                result = self._skipped(stage, "Interrupted by worker cancellation")
                if not stage.cleanup and failure is None:
                    aborted = True
            run.record_stage(result)

            if result.status == StageStatus.FAILED:
                if stage.cleanup:
                    logger.warning("[%s] Cleanup stage '%s' failed: %s", run.key, stage.name, result.message)
                elif failure is None:
                    failure = RunFailure(
                        stage=stage.name,
                        error_kind=result.error_kind or "StageFailedError",
                        output_ref=result.output_ref,
                        message=result.message,
                    )

        if failure is not None:
            status = RunStatus.FAILED
        elif aborted:
            status = RunStatus.ABORTED
        else:
            status = RunStatus.SUCCEEDED
        run.finish(status, failure)

        logger.info(
            "[%s] Run finished: %s%s",
            run.key, status.value,
            f" at stage '{failure.stage}' ({failure.error_kind})" if failure else "",
        )
        if cancelled:
            raise asyncio.CancelledError()
        return RunResult(
            run=run,
            status=status,
            failed_stage=failure.stage if failure else None,
            error_kind=failure.error_kind if failure else None,
            output_ref=failure.output_ref if failure else None,
        )

    async def _execute(self, stage: StageDefinition, ctx: StageContext) -> StageResult:
        started_at = _utcnow()
        logger.info("[%s] Stage '%s' started", ctx.run.key, stage.name)

        try:
            outcome = await stage.action(ctx) or StageOutcome()
        except PipelineError as e:
            logger.error("[%s] Stage '%s' failed: %s", ctx.run.key, stage.name, e)
            outcome = StageOutcome(
                succeeded=False,
                error_kind=e.kind,
                message=e.message,
                output=str(e.details.get("log_tail", "")),
            )
        except Exception as e:
            logger.exception("[%s] Stage '%s' raised unexpectedly", ctx.run.key, stage.name)
            outcome = StageOutcome(succeeded=False, error_kind=type(e).__name__, message=str(e))

        output_ref = outcome.output_ref
        if outcome.output and self.output_store is not None:
            output_ref = self.output_store.write_stage_output(ctx.run, stage.name, outcome.output) or output_ref

        status = StageStatus.SUCCEEDED if outcome.succeeded else StageStatus.FAILED
        if status == StageStatus.SUCCEEDED:
            logger.info("[%s] Stage '%s' succeeded", ctx.run.key, stage.name)

        return StageResult(
            name=stage.name,
            capability=stage.capability,
            status=status,
            started_at=started_at,
            finished_at=_utcnow(),
            output_ref=output_ref,
            error_kind=None if outcome.succeeded else (outcome.error_kind or "StageFailedError"),
            message=outcome.message,
            cleanup=stage.cleanup,
        )

    @staticmethod
    def _skipped(stage: StageDefinition, message: str = "") -> StageResult:
        return StageResult(
            name=stage.name,
            capability=stage.capability,
            status=StageStatus.SKIPPED,
            message=message,
            cleanup=stage.cleanup,
        )
