"""
Event Models
============
Payloads crossing the orchestrator boundary.

    ChangeEvent              — a new source commit seen by poll or webhook
    DownstreamTriggerParams  — declared parameter schema for the CI → CD call
    NotificationEvent        — terminal run status sent to channels
"""
import re
from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_validator

_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]{0,127}$")


class ChangeEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    commit_id: str
    repo_ref: str
    timestamp: datetime

    @field_validator("commit_id")
    @classmethod
    def validate_commit_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("commit_id must not be empty")
        return v.strip()


class DownstreamTriggerParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    image_tag: str
    source_run_id: int

    @field_validator("image_tag")
    @classmethod
    def validate_image_tag(cls, v: str) -> str:
        if not _TAG_RE.match(v):
            raise ValueError(f"'{v}' is not a valid image tag")
        return v

    @field_validator("source_run_id")
    @classmethod
    def validate_source_run_id(cls, v: int) -> int:
        if v < 1:
            raise ValueError("source_run_id must be a positive build number")
        return v

    def to_wire(self) -> dict:
        return {"imageTag": self.image_tag, "sourceRunId": self.source_run_id}


class NotificationEvent(BaseModel):
    run_id: int
    kind: str
    status: str
    summary: str = ""

    def to_wire(self) -> dict:
        return {"runId": self.run_id, "kind": self.kind, "status": self.status, "summary": self.summary}
