"""
Orchestrator
============
Wires the pipeline agents together and owns the lifecycle of every run.

Responsibilities:
    - Allocate run ids from the persisted BuildSequence (one counter per
      pipeline kind) and create PipelineRun records.
    - Spawn one asyncio task per run. Runs never share a task, so a CI run
      parked on its quality gate does not hold up any other run.
    - On a terminal status: write the run report, notify, trim the registry.
    - Route CI → CD through the PipelineChainer. Without DOWNSTREAM_TRIGGER_URL
      the CD pipeline of this same process is the registered target.

Abort:
    ``abort`` only flags the run. The Stage Runner honours the flag at the
    next stage boundary. Cancelling the task itself is reserved for shutdown:
    the Stage Runner still runs the cleanup stages and finishes the run as
    ABORTED before the cancellation propagates.

Quality gate verdicts:
    Only accepted for a CI run that exists and is not yet terminal. The
    gate state of a run is dropped once the run finishes.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from conductor.agents.artifact_tagger import ArtifactTagger
from conductor.agents.manifest_patcher import ManifestPatcher
from conductor.agents.notifier import Notifier
from conductor.agents.pipeline_chainer import HttpDownstream, LocalDownstream, PipelineChainer
from conductor.agents.pipelines import CDSettings, CDStages, CISettings, CIStages
from conductor.agents.quality_gate import QualityGateWaiter
from conductor.agents.stage_runner import PipelineDefinition, StageRunner
from conductor.agents.trigger_watcher import TriggerWatcher
from conductor.core import config
from conductor.core.constants import CD_PIPELINE_NAME, CI_PIPELINE_NAME
from conductor.db.database import Database
from conductor.models.events import ChangeEvent, DownstreamTriggerParams, NotificationEvent
from conductor.models.pipeline_run import PipelineKind, PipelineRun, RunStatus
from conductor.models.quality_gate import QualityGateVerdict
from conductor.services.analysis_client import AnalysisClient
from conductor.services.build_sequence import BuildSequence
from conductor.services.gitops_repository import GitManifestRepository, ManifestRepository
from conductor.services.results_writer import ResultsWriter
from conductor.services.run_registry import RunRegistry
from conductor.services.scanner_client import ScannerClient
from conductor.services.source_client import SourceClient
from conductor.services.trigger_ledger import TriggerLedger

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def summarize(run: PipelineRun) -> str:
    """One-line human summary used in notifications."""
    if run.failure is not None:
        summary = f"failed at '{run.failure.stage}' ({run.failure.error_kind})"
        if run.failure.message:
            summary += f": {run.failure.message}"
        return summary
    if run.status == RunStatus.ABORTED:
        return "aborted on request"
    if run.kind == PipelineKind.CI:
        image_ref = run.params.get("image_ref")
        return f"published {image_ref}" if image_ref else "succeeded"
    return (
        f"deployed {run.params.get('image_tag', '?')} "
        f"(commit {run.params.get('commit_id') or 'unchanged'})"
    )


class Orchestrator:

    def __init__(
        self,
        database: Database,
        ci_settings: Optional[CISettings] = None,
        cd_settings: Optional[CDSettings] = None,
        gate: Optional[QualityGateWaiter] = None,
        chainer: Optional[PipelineChainer] = None,
        analysis: Optional[AnalysisClient] = None,
        scanner: Optional[ScannerClient] = None,
        manifest_repository: Callable[[], ManifestRepository] = GitManifestRepository,
        source_client: Optional[SourceClient] = None,
        notifier: Optional[Notifier] = None,
        results_writer: Optional[ResultsWriter] = None,
    ) -> None:
        self.database = database
        self.ci_settings = ci_settings or CISettings()
        self.cd_settings = cd_settings or CDSettings()

        self.sequence = BuildSequence(database)
        self.ledger = TriggerLedger(database)
        self.gate = gate or QualityGateWaiter()
        self.tagger = ArtifactTagger(database, self.ci_settings.image_repository)
        self.chainer = chainer or PipelineChainer()
        self.patcher = ManifestPatcher()
        self.notifier = notifier or Notifier()
        self.results_writer = results_writer or ResultsWriter()
        self.runner = StageRunner(output_store=self.results_writer)
        self.registry = RunRegistry()
        self.watcher = TriggerWatcher(self.ledger, self.submit_ci, source_client=source_client)

        if self.ci_settings.downstream_pipeline not in self.chainer.targets:
            self.chainer.register(self.ci_settings.downstream_pipeline, LocalDownstream(self.submit_cd))

        self.pipelines: Dict[PipelineKind, PipelineDefinition] = {}
        self.configure_pipelines(
            CIStages(self.gate, self.tagger, self.chainer, analysis, scanner, self.ci_settings),
            CDStages(self.patcher, manifest_repository, self.cd_settings),
        )

    @classmethod
    def from_config(cls, database: Database) -> "Orchestrator":
        """Build an orchestrator from the environment-driven config module."""
        chainer = PipelineChainer()
        if config.DOWNSTREAM_TRIGGER_URL:
            chainer.register(
                config.DOWNSTREAM_PIPELINE_ID,
                HttpDownstream(config.DOWNSTREAM_TRIGGER_URL, config.DOWNSTREAM_TRIGGER_TOKEN),
            )
            logger.info("CD runs are triggered remotely at %s", config.DOWNSTREAM_TRIGGER_URL)
        return cls(database, chainer=chainer)

    def configure_pipelines(self, ci: CIStages, cd: CDStages) -> None:
        self.pipelines[PipelineKind.CI] = ci.definition()
        self.pipelines[PipelineKind.CD] = cd.definition()

    # -------------------------------------------------------------------
    # Run creation
    # -------------------------------------------------------------------
    async def submit_ci(self, event: ChangeEvent) -> int:
        """Create and start the CI run for one source change."""
        run_id = await asyncio.to_thread(self.sequence.next_value, CI_PIPELINE_NAME)
        run = PipelineRun(
            run_id=run_id,
            kind=PipelineKind.CI,
            pipeline_name=CI_PIPELINE_NAME,
            source_commit=event.commit_id,
            params={"repo_ref": event.repo_ref} if event.repo_ref else {},
            created_at=_utcnow(),
        )
        self._spawn(run)
        return run_id

    async def submit_cd(self, params: DownstreamTriggerParams) -> int:
        """Create and start the CD run deploying the artifact of a CI run."""
        run_id = await asyncio.to_thread(self.sequence.next_value, CD_PIPELINE_NAME)
        run = PipelineRun(
            run_id=run_id,
            kind=PipelineKind.CD,
            pipeline_name=CD_PIPELINE_NAME,
            upstream_run_id=params.source_run_id,
            params={"image_tag": params.image_tag},
            created_at=_utcnow(),
        )
        self._spawn(run)
        return run_id

    def _spawn(self, run: PipelineRun) -> None:
        self.registry.add(run)
        task = asyncio.create_task(self._execute(run), name=run.key)
        self.registry.attach_task(run, task)
        logger.info("Spawned %s run %d", run.kind.value, run.run_id)

    async def _execute(self, run: PipelineRun) -> None:
        pipeline = self.pipelines[run.kind]
        try:
            await self.runner.run(pipeline, run)
        except asyncio.CancelledError:
            logger.warning("[%s] Worker cancelled", run.key)
            if run.status == RunStatus.RUNNING:
                run.finish(RunStatus.ABORTED)
            raise
        finally:
            if run.kind == PipelineKind.CI:
                self.gate.discard(run.run_id)
            if run.is_terminal:
                self.results_writer.write_run(run)

        await self.notifier.notify(
            NotificationEvent(
                run_id=run.run_id,
                kind=run.kind.value,
                status=run.status.value,
                summary=summarize(run),
            )
        )
        self.registry.prune()

    # -------------------------------------------------------------------
    # External operations
    # -------------------------------------------------------------------
    def deliver_verdict(self, verdict: QualityGateVerdict) -> bool:
        run = self.registry.get(PipelineKind.CI, verdict.run_id)
        if run is None or run.is_terminal:
            logger.warning(
                "Quality gate verdict for run %d rejected: %s",
                verdict.run_id, "no such CI run" if run is None else f"run already {run.status.value}",
            )
            return False
        return self.gate.deliver(verdict)

    def abort(self, kind: PipelineKind, run_id: int) -> Optional[PipelineRun]:
        """
        Request an abort.

        Returns
        -------
        PipelineRun | None
            The run (its ``abort_requested`` flag shows whether the request
            was taken), or None if no such run exists.
        """
        run = self.registry.get(kind, run_id)
        if run is None:
            return None
        if run.request_abort():
            logger.info("[%s] Abort requested", run.key)
        else:
            logger.info("[%s] Abort ignored, run already %s", run.key, run.status.value)
        return run

    def get_run(self, kind: PipelineKind, run_id: int) -> Optional[PipelineRun]:
        return self.registry.get(kind, run_id)

    def list_runs(self, kind: Optional[PipelineKind] = None) -> List[PipelineRun]:
        return self.registry.list(kind)

    async def wait_idle(self) -> None:
        """Wait until no run task is active, including CD runs spawned meanwhile."""
        while True:
            tasks = self.registry.active_tasks()
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        self.watcher.stop()
        tasks = self.registry.active_tasks()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Orchestrator stopped (%d runs cancelled)", len(tasks))
