"""
Quality Gate Verdict Model
Asynchronous pass/fail decision from the static-analysis service, correlated by CI run id.
"""
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict


class GateOutcome(str, Enum):
    PASSED = "PASSED"
    FAILED = "FAILED"
    ERROR = "ERROR"


class QualityGateVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    run_id: int
    outcome: GateOutcome
    received_at: datetime
