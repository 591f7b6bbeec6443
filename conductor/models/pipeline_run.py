"""
Pipeline Run Model
==================
Pydantic model for one execution of the CI or CD pipeline.

State machine:
    PENDING → RUNNING → {SUCCEEDED, FAILED, ABORTED}

    ABORTED is only reachable from RUNNING, through an explicit external
    abort request honoured at a stage boundary. Stage failures end in FAILED.

Mutation:
    A run is created on trigger and afterwards mutated only by the Stage
    Runner through the methods below. Direct status assignment bypasses the
    state machine and is not used anywhere in the package.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, model_validator

from conductor.core.exceptions import InvalidTransitionError
from conductor.models.stage_result import Capability, StageResult, StageStatus


class PipelineKind(str, Enum):
    CI = "CI"
    CD = "CD"


class RunStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ABORTED = "ABORTED"


TERMINAL_STATUSES = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED})


class RunFailure(BaseModel):
    stage: str
    error_kind: str
    output_ref: Optional[str] = None
    message: str = ""


class PipelineRun(BaseModel):
    run_id: int
    kind: PipelineKind
    pipeline_name: str
    status: RunStatus = RunStatus.PENDING
    stage_index: int = 0
    stages: List[StageResult] = []
    upstream_run_id: Optional[int] = None
    params: Dict[str, str] = {}
    source_commit: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    failure: Optional[RunFailure] = None
    abort_requested: bool = False

    @model_validator(mode="after")
    def _cd_needs_upstream(self) -> "PipelineRun":
        if self.kind == PipelineKind.CD and self.upstream_run_id is None:
            raise ValueError("A CD run must reference its upstream CI run")
        return self

    @property
    def key(self) -> str:
        return f"{self.kind.value}-{self.run_id}"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    # -------------------------------------------------------------------
    # State transitions
    # -------------------------------------------------------------------
    def start(self) -> None:
        if self.status != RunStatus.PENDING:
            raise InvalidTransitionError(
                f"Run {self.key} cannot start from {self.status.value}"
            )
        self.status = RunStatus.RUNNING
        self.started_at = datetime.now(timezone.utc)

    def advance(self, index: int) -> None:
        """Move the stage cursor. Indices only move forward."""
        if index < self.stage_index:
            raise InvalidTransitionError(
                f"Run {self.key} stage index cannot move back from {self.stage_index} to {index}"
            )
        self.stage_index = index

    def record_stage(self, result: StageResult) -> None:
        if self.status != RunStatus.RUNNING:
            raise InvalidTransitionError(
                f"Run {self.key} is {self.status.value}, cannot record stage {result.name}"
            )
        self.stages.append(result)

    def request_abort(self) -> bool:
        """Flag the run for abort at the next stage boundary."""
        if self.is_terminal:
            return False
        self.abort_requested = True
        return True

    def finish(self, status: RunStatus, failure: Optional[RunFailure] = None) -> None:
        if status not in TERMINAL_STATUSES:
            raise InvalidTransitionError(f"{status.value} is not a terminal status")
        if self.status != RunStatus.RUNNING:
            raise InvalidTransitionError(
                f"Run {self.key} cannot finish from {self.status.value}"
            )
        self.status = status
        self.failure = failure
        self.finished_at = datetime.now(timezone.utc)

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    def stage_succeeded(self, capability: Capability) -> bool:
        return any(
            s.capability == capability and s.status == StageStatus.SUCCEEDED
            for s in self.stages
        )
