"""Shared FastAPI dependencies."""
from fastapi import HTTPException, Request

from conductor.agents.orchestrator import Orchestrator
from conductor.models.pipeline_run import PipelineKind


def get_orchestrator(request: Request) -> Orchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator is not running")
    return orchestrator


def parse_kind(kind: str) -> PipelineKind:
    try:
        return PipelineKind(kind.upper())
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown pipeline kind '{kind}'")
