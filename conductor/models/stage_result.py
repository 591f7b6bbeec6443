"""
Stage Result Model
==================
Immutable record of one executed (or skipped) stage, appended to a run's log.

Fields:
    name        — declared stage name ("Build", "Quality Gate", ...)
    capability  — what kind of work the stage delegates (build, scan, patch, ...)
    status      — SUCCEEDED | FAILED | SKIPPED
    started_at  — UTC timestamp the runner invoked the collaborator
    finished_at — UTC timestamp the collaborator returned
    output_ref  — reference to captured output (log excerpt path, digest, commit id)
    error_kind  — error class name when the stage failed
    message     — short human readable outcome
    cleanup     — True for stages that always run
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class StageStatus(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class Capability(str, Enum):
    CHECKOUT = "checkout"
    BUILD = "build"
    TEST = "test"
    ANALYZE = "analyze"
    PACKAGE = "package"
    SCAN = "scan"
    PUBLISH = "publish"
    TRIGGER = "trigger"
    PATCH = "patch"
    NOTIFY = "notify"
    CLEANUP = "cleanup"


class StageResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    capability: Capability
    status: StageStatus
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    output_ref: Optional[str] = None
    error_kind: Optional[str] = None
    message: str = ""
    cleanup: bool = False

    @property
    def duration_seconds(self) -> float:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0
