"""
Pipeline Definitions
====================
The concrete CI and CD stage lists and the actions behind each stage.

CI:  Checkout → Build → Test → Analysis → Quality Gate → Package → Scan
     → Publish → Trigger Deploy → Cleanup Workspace (cleanup)
CD:  Update Manifest

Each action delegates to one external collaborator and reports a
StageOutcome, or raises a PipelineError that the Stage Runner records.
Blocking collaborators (docker SDK, git, SQLAlchemy) run in worker threads
so that a run parked on the quality gate never blocks other runs.

Network-bound collaborators (clone, container start, image build and push,
GitOps fetch/push) are retried on TransientInfraError up to
``retry_attempts`` times before the stage fails.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from conductor.agents.artifact_tagger import ArtifactTagger
from conductor.agents.manifest_patcher import ManifestPatcher, with_image_tag
from conductor.agents.pipeline_chainer import PipelineChainer
from conductor.agents.quality_gate import QualityGateWaiter
from conductor.agents.stage_runner import PipelineDefinition, StageContext, StageDefinition, StageOutcome
from conductor.core import config
from conductor.core import constants
from conductor.core.exceptions import ConfigurationError, GateRejectedError, StageFailedError, TransientInfraError
from conductor.executor.build_executor import ExecutionResult, run_in_container
from conductor.executor.image_builder import build_image, push_image, remove_image
from conductor.models.pipeline_run import PipelineKind
from conductor.models.stage_result import Capability
from conductor.services.analysis_client import AnalysisClient
from conductor.services.gitops_repository import GitManifestRepository, ManifestRepository
from conductor.services.repo_service import checkout_commit, clean_workspace
from conductor.services.scanner_client import ScannerClient
from conductor.utils.retry import with_retries

logger = logging.getLogger(__name__)


@dataclass
class CISettings:
    repo_url: str = config.SOURCE_REPO_URL
    repo_token: Optional[str] = config.SOURCE_API_TOKEN
    workspace_root: str = config.WORKSPACE_ROOT
    build_image: str = config.BUILD_IMAGE
    build_command: str = config.BUILD_COMMAND
    test_command: str = config.TEST_COMMAND
    execution_timeout: int = config.EXECUTION_TIMEOUT_SECONDS
    image_repository: str = config.IMAGE_REPOSITORY
    gate_timeout: float = config.QUALITY_GATE_TIMEOUT_SECONDS
    scan_threshold: str = config.SCAN_SEVERITY_THRESHOLD
    downstream_pipeline: str = config.DOWNSTREAM_PIPELINE_ID
    retry_attempts: int = config.RETRY_ATTEMPTS
    retry_backoff: float = config.RETRY_BACKOFF_SECONDS


@dataclass
class CDSettings:
    image_repository: str = config.IMAGE_REPOSITORY
    manifest_path: str = config.MANIFEST_PATH
    field_path: str = config.MANIFEST_FIELD_PATH
    retry_attempts: int = config.RETRY_ATTEMPTS
    retry_backoff: float = config.RETRY_BACKOFF_SECONDS


async def _retry_in_thread(settings, description: str, func: Callable, *args):
    """Run a blocking ``func`` in a worker thread, retrying transient failures."""
    return await with_retries(
        lambda: asyncio.to_thread(func, *args),
        description,
        attempts=settings.retry_attempts,
        backoff_seconds=settings.retry_backoff,
    )


def _container_call(*args) -> ExecutionResult:
    result = run_in_container(*args)
    if result.error and result.exit_code == -1:
        # daemon/image problems are infrastructure, not a red build
        raise TransientInfraError(result.error, {"log_tail": result.log_excerpt})
    return result


def _from_execution(result: ExecutionResult, label: str) -> StageOutcome:
    """Translate a finished container execution into a stage outcome."""
    if result.exit_code != 0:
        return StageOutcome(
            succeeded=False,
            error_kind="StageFailedError",
            message=f"{label} exited with code {result.exit_code}",
            output=result.full_log,
        )
    return StageOutcome(
        message=f"{label} passed in {result.execution_time_seconds:.1f}s",
        output=result.full_log,
    )


class CIStages:
    """Stage actions of the CI pipeline."""

    def __init__(
        self,
        gate: QualityGateWaiter,
        tagger: ArtifactTagger,
        chainer: PipelineChainer,
        analysis: Optional[AnalysisClient] = None,
        scanner: Optional[ScannerClient] = None,
        settings: Optional[CISettings] = None,
    ) -> None:
        self.gate = gate
        self.tagger = tagger
        self.chainer = chainer
        self.analysis = analysis or AnalysisClient()
        self.scanner = scanner or ScannerClient()
        self.settings = settings or CISettings()

    @staticmethod
    def _workspace(ctx: StageContext) -> str:
        workspace = ctx.scratch.get("workspace")
        if not workspace:
            raise StageFailedError(f"Stage '{ctx.stage.name}' needs a checked-out workspace")
        return workspace

    async def checkout(self, ctx: StageContext) -> StageOutcome:
        run = ctx.run
        if not run.source_commit:
            raise ConfigurationError(f"Run {run.key} has no source commit")
        workspace = await _retry_in_thread(
            self.settings,
            f"checkout {run.source_commit}",
            checkout_commit,
            self.settings.repo_url,
            run.source_commit,
            run.run_id,
            self.settings.repo_token,
            self.settings.workspace_root,
        )
        ctx.scratch["workspace"] = workspace
        return StageOutcome(output_ref=run.source_commit, message=f"Checked out {run.source_commit}")

    async def _run_command(self, ctx: StageContext, command: str, label: str) -> StageOutcome:
        result = await _retry_in_thread(
            self.settings,
            f"{label} container",
            _container_call,
            self._workspace(ctx),
            command,
            self.settings.build_image,
            self.settings.execution_timeout,
            label,
        )
        return _from_execution(result, label)

    async def build(self, ctx: StageContext) -> StageOutcome:
        return await self._run_command(ctx, self.settings.build_command, constants.STAGE_BUILD)

    async def test(self, ctx: StageContext) -> StageOutcome:
        return await self._run_command(ctx, self.settings.test_command, constants.STAGE_TEST)

    async def analysis_submit(self, ctx: StageContext) -> StageOutcome:
        task_id = await self.analysis.submit(ctx.run.run_id, ctx.run.source_commit or "")
        return StageOutcome(output_ref=task_id or None, message="Submitted for analysis")

    async def quality_gate(self, ctx: StageContext) -> StageOutcome:
        verdict = await self.gate.require_pass(ctx.run.run_id, self.settings.gate_timeout)
        return StageOutcome(message=f"Quality gate {verdict.outcome.value}")

    async def package(self, ctx: StageContext) -> StageOutcome:
        built = await _retry_in_thread(
            self.settings,
            f"image build for run {ctx.run.run_id}",
            build_image, self._workspace(ctx), self.settings.image_repository, ctx.run.run_id,
        )
        ctx.scratch["image_id"] = built.image_id
        ctx.scratch["local_ref"] = built.local_ref
        return StageOutcome(output_ref=built.image_id, output=built.build_log, message=f"Built {built.local_ref}")

    async def scan(self, ctx: StageContext) -> StageOutcome:
        local_ref = ctx.scratch.get("local_ref")
        if not local_ref:
            raise StageFailedError("Nothing to scan, package stage produced no image")
        report = await self.scanner.scan(local_ref)
        if not report.is_acceptable(self.settings.scan_threshold):
            raise GateRejectedError(
                f"Vulnerability scan rejected {local_ref}",
                {"severity_counts": report.severity_counts, "passed": report.passed},
            )
        return StageOutcome(message=report.summary())

    async def publish(self, ctx: StageContext) -> StageOutcome:
        image_id = ctx.scratch.get("image_id", "")
        reference = await asyncio.to_thread(self.tagger.tag, ctx.run, image_id)
        digest = await _retry_in_thread(
            self.settings,
            f"push {reference.image_ref}",
            push_image, image_id, reference.repository, reference.tag,
        )
        ctx.run.params["image_tag"] = reference.tag
        ctx.run.params["image_ref"] = reference.image_ref
        ctx.run.params["image_digest"] = digest
        return StageOutcome(output_ref=digest, message=f"Published {reference.image_ref}")

    async def trigger_deploy(self, ctx: StageContext) -> StageOutcome:
        # validated by the chainer before anything is sent
        params = {"image_tag": ctx.run.params.get("image_tag", ""), "source_run_id": ctx.run.run_id}
        downstream_run_id = await self.chainer.trigger(self.settings.downstream_pipeline, params)
        ctx.run.params["downstream_run_id"] = str(downstream_run_id)
        return StageOutcome(
            output_ref=f"{self.settings.downstream_pipeline}#{downstream_run_id}",
            message=f"Triggered {self.settings.downstream_pipeline} run {downstream_run_id}",
        )

    async def cleanup(self, ctx: StageContext) -> StageOutcome:
        workspace = ctx.scratch.get("workspace")
        if workspace:
            await asyncio.to_thread(clean_workspace, workspace)
        local_ref = ctx.scratch.get("local_ref")
        if local_ref:
            await asyncio.to_thread(remove_image, local_ref)
        return StageOutcome(message="Workspace cleaned")

    def definition(self) -> PipelineDefinition:
        return PipelineDefinition(
            name=constants.CI_PIPELINE_NAME,
            kind=PipelineKind.CI,
            stages=[
                StageDefinition(constants.STAGE_CHECKOUT, Capability.CHECKOUT, self.checkout),
                StageDefinition(constants.STAGE_BUILD, Capability.BUILD, self.build),
                StageDefinition(constants.STAGE_TEST, Capability.TEST, self.test),
                StageDefinition(constants.STAGE_ANALYSIS, Capability.ANALYZE, self.analysis_submit),
                StageDefinition(constants.STAGE_QUALITY_GATE, Capability.ANALYZE, self.quality_gate),
                StageDefinition(constants.STAGE_PACKAGE, Capability.PACKAGE, self.package),
                StageDefinition(constants.STAGE_SCAN, Capability.SCAN, self.scan),
                StageDefinition(constants.STAGE_PUBLISH, Capability.PUBLISH, self.publish),
                StageDefinition(constants.STAGE_TRIGGER_DEPLOY, Capability.TRIGGER, self.trigger_deploy),
                StageDefinition(constants.STAGE_CLEANUP, Capability.CLEANUP, self.cleanup, cleanup=True),
            ],
        )


class CDStages:
    """Stage actions of the CD pipeline."""

    def __init__(
        self,
        patcher: ManifestPatcher,
        repository_factory: Callable[[], ManifestRepository] = GitManifestRepository,
        settings: Optional[CDSettings] = None,
    ) -> None:
        self.patcher = patcher
        self.repository_factory = repository_factory
        self.settings = settings or CDSettings()
        self._repository: Optional[ManifestRepository] = None

    @property
    def repository(self) -> ManifestRepository:
        if self._repository is None:
            self._repository = self.repository_factory()
        return self._repository

    async def update_manifest(self, ctx: StageContext) -> StageOutcome:
        if not self.settings.image_repository:
            raise ConfigurationError("IMAGE_REPOSITORY is not configured")
        tag = ctx.run.params.get("image_tag")
        if not tag:
            raise ConfigurationError(f"Run {ctx.run.key} carries no image_tag parameter")

        new_value = with_image_tag(self.settings.image_repository, tag)
        patch = await _retry_in_thread(
            self.settings,
            f"manifest update to {new_value}",
            self.patcher.patch,
            self.repository,
            self.settings.manifest_path,
            self.settings.field_path,
            new_value,
        )
        ctx.run.params["commit_id"] = patch.commit_id or ""
        ctx.run.params["previous_image"] = patch.old_value
        return StageOutcome(
            output_ref=patch.commit_id,
            message=f"{patch.field_path}: {patch.old_value} -> {patch.new_value}",
        )

    def definition(self) -> PipelineDefinition:
        return PipelineDefinition(
            name=constants.CD_PIPELINE_NAME,
            kind=PipelineKind.CD,
            stages=[
                StageDefinition(constants.STAGE_UPDATE_MANIFEST, Capability.PATCH, self.update_manifest),
            ],
        )
