"""
Run inspection and control.

GET  /runs                          — all known runs, optionally ?kind=CI|CD
GET  /runs/{kind}/{run_id}          — one run with its stage log and failure
POST /runs/{kind}/{run_id}/abort    — abort at the next stage boundary
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException

from conductor.agents.orchestrator import Orchestrator
from conductor.api.dependencies import get_orchestrator, parse_kind
from conductor.models.pipeline_run import PipelineRun

router = APIRouter(prefix="/runs", tags=["Runs"])


@router.get("", response_model=List[PipelineRun])
async def list_runs(
    kind: Optional[str] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return orchestrator.list_runs(parse_kind(kind) if kind else None)


@router.get("/{kind}/{run_id}", response_model=PipelineRun)
async def get_run(
    kind: str,
    run_id: int,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    run = orchestrator.get_run(parse_kind(kind), run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {kind}-{run_id} not found")
    return run


@router.post("/{kind}/{run_id}/abort")
async def abort_run(
    kind: str,
    run_id: int,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    run = orchestrator.abort(parse_kind(kind), run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {kind}-{run_id} not found")
    if run.is_terminal:
        raise HTTPException(status_code=409, detail=f"Run {run.key} already {run.status.value}")
    return {"runId": run.run_id, "kind": run.kind.value, "status": run.status.value, "abortRequested": True}
