"""
Inbound Webhooks
================
POST /webhooks/source         — source change notification → CI run
POST /webhooks/quality-gate   — asynchronous verdict of the analysis service

Both endpoints are idempotent. A repeated source delivery reports
``enqueued: false`` together with the run the first delivery created; a
repeated verdict reports ``accepted: false``.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from conductor.agents.orchestrator import Orchestrator
from conductor.api.dependencies import get_orchestrator
from conductor.core.exceptions import PipelineError
from conductor.models.quality_gate import GateOutcome, QualityGateVerdict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------
class SourceWebhookResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enqueued: bool
    run_id: Optional[int] = Field(default=None, alias="runId")


class QualityGateWebhook(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    run_id: int = Field(alias="runId", ge=1)
    outcome: GateOutcome
    timestamp: Optional[datetime] = None


class QualityGateResponse(BaseModel):
    accepted: bool


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@router.post("/source", response_model=SourceWebhookResponse)
async def source_webhook(
    payload: Dict[str, Any] = Body(...),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    watcher = orchestrator.watcher
    try:
        event = watcher.on_webhook(payload)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    try:
        run_id = await watcher.enqueue(event)
    except PipelineError as e:
        logger.error("Could not enqueue run for %s: %s", event.commit_id, e)
        raise HTTPException(status_code=503, detail=e.message)

    if run_id is None:
        existing = watcher.ledger.run_for(event.commit_id, watcher.kind.value)
        return SourceWebhookResponse(enqueued=False, run_id=existing)
    return SourceWebhookResponse(enqueued=True, run_id=run_id)


@router.post("/quality-gate", response_model=QualityGateResponse)
async def quality_gate_webhook(
    payload: QualityGateWebhook,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    verdict = QualityGateVerdict(
        run_id=payload.run_id,
        outcome=payload.outcome,
        received_at=payload.timestamp or datetime.now(timezone.utc),
    )
    return QualityGateResponse(accepted=orchestrator.deliver_verdict(verdict))
