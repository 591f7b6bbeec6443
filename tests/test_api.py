"""
API Tests
=========
Routers mounted on a bare FastAPI app whose orchestrator is a mock with a
real TriggerWatcher + ledger and a real QualityGateWaiter behind it.
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conductor.agents.orchestrator import Orchestrator
from conductor.agents.quality_gate import QualityGateWaiter
from conductor.agents.trigger_watcher import TriggerWatcher
from conductor.api.pipelines import router as pipelines_router
from conductor.api.runs import router as runs_router
from conductor.api.webhooks import router as webhooks_router
from conductor.core.exceptions import TransientInfraError
from conductor.models.events import DownstreamTriggerParams
from conductor.models.pipeline_run import PipelineKind, PipelineRun, RunFailure, RunStatus
from conductor.models.quality_gate import GateOutcome
from conductor.services.trigger_ledger import TriggerLedger


def _run(run_id, kind=PipelineKind.CI, status=RunStatus.RUNNING):
    run = PipelineRun(
        run_id=run_id,
        kind=kind,
        pipeline_name=kind.value.lower(),
        upstream_run_id=42 if kind == PipelineKind.CD else None,
        created_at=datetime.now(timezone.utc),
    )
    if status != RunStatus.PENDING:
        run.start()
    if status == RunStatus.FAILED:
        run.finish(status, RunFailure(stage="Quality Gate", error_kind="GateTimeoutError", output_ref=None))
    elif status in (RunStatus.SUCCEEDED, RunStatus.ABORTED):
        run.finish(status)
    return run


@pytest.fixture
def orchestrator(database):
    runs = {
        (PipelineKind.CI, 42): _run(42, status=RunStatus.FAILED),
        (PipelineKind.CI, 43): _run(43),
        (PipelineKind.CD, 7): _run(7, kind=PipelineKind.CD, status=RunStatus.SUCCEEDED),
    }
    gate = QualityGateWaiter()

    orch = MagicMock(spec=Orchestrator)
    orch.enqueue_run = AsyncMock(return_value=44)
    orch.watcher = TriggerWatcher(TriggerLedger(database), orch.enqueue_run)
    orch.deliver_verdict.side_effect = gate.deliver
    orch.submit_cd = AsyncMock(return_value=8)
    orch.get_run.side_effect = lambda kind, run_id: runs.get((kind, run_id))
    orch.list_runs.side_effect = lambda kind=None: [r for (k, _), r in sorted(runs.items()) if kind in (None, k)]

    def abort(kind, run_id):
        run = runs.get((kind, run_id))
        if run is not None:
            run.request_abort()
        return run

    orch.abort.side_effect = abort
    orch.gate = gate
    return orch


@pytest.fixture
def client(orchestrator):
    app = FastAPI()
    app.include_router(webhooks_router)
    app.include_router(pipelines_router)
    app.include_router(runs_router)
    app.state.orchestrator = orchestrator
    return TestClient(app)


# ===================================================================
# Webhooks
# ===================================================================
def test_source_webhook_enqueues_once(client, orchestrator):
    payload = {"commitId": "abc123", "repoRef": "org/app", "timestamp": "2024-05-01T10:00:00Z"}

    first = client.post("/webhooks/source", json=payload)
    second = client.post("/webhooks/source", json=payload)

    assert first.status_code == 200
    assert first.json() == {"enqueued": True, "runId": 44}
    assert second.json() == {"enqueued": False, "runId": 44}
    orchestrator.enqueue_run.assert_awaited_once()


def test_source_webhook_missing_commit_is_422(client, orchestrator):
    resp = client.post("/webhooks/source", json={"repoRef": "org/app"})
    assert resp.status_code == 422
    orchestrator.enqueue_run.assert_not_called()


def test_source_webhook_enqueue_failure_is_503(client, orchestrator):
    orchestrator.enqueue_run.side_effect = TransientInfraError("database busy")
    resp = client.post("/webhooks/source", json={"commitId": "abc123"})
    assert resp.status_code == 503
    assert orchestrator.watcher.ledger.run_for("abc123", "CI") is None


def test_quality_gate_webhook_first_verdict_wins(client, orchestrator):
    first = client.post("/webhooks/quality-gate", json={"runId": 42, "outcome": "PASSED"})
    second = client.post("/webhooks/quality-gate", json={"runId": 42, "outcome": "FAILED"})

    assert first.json() == {"accepted": True}
    assert second.json() == {"accepted": False}
    assert orchestrator.gate.verdict_for(42).outcome == GateOutcome.PASSED


def test_quality_gate_webhook_rejects_unknown_outcome(client):
    resp = client.post("/webhooks/quality-gate", json={"runId": 42, "outcome": "MAYBE"})
    assert resp.status_code == 422


# ===================================================================
# Downstream trigger
# ===================================================================
def test_cd_trigger(client, orchestrator):
    resp = client.post(
        "/pipelines/cd/trigger",
        json={"pipelineId": "cd", "params": {"imageTag": "42", "sourceRunId": 42}},
    )
    assert resp.status_code == 200
    assert resp.json() == {"runId": 8}
    orchestrator.submit_cd.assert_awaited_once_with(DownstreamTriggerParams(image_tag="42", source_run_id=42))


def test_cd_trigger_invalid_params(client, orchestrator):
    resp = client.post("/pipelines/cd/trigger", json={"params": {"imageTag": "bad tag", "sourceRunId": 42}})
    assert resp.status_code == 422
    orchestrator.submit_cd.assert_not_called()


def test_unknown_pipeline_trigger(client):
    resp = client.post("/pipelines/ci/trigger", json={"params": {"imageTag": "42", "sourceRunId": 42}})
    assert resp.status_code == 404


# ===================================================================
# Runs
# ===================================================================
def test_list_runs(client):
    resp = client.get("/runs")
    assert resp.status_code == 200
    assert [(r["kind"], r["run_id"]) for r in resp.json()] == [("CD", 7), ("CI", 42), ("CI", 43)]

    only_cd = client.get("/runs", params={"kind": "cd"}).json()
    assert [r["run_id"] for r in only_cd] == [7]


def test_failed_run_exposes_failure(client):
    resp = client.get("/runs/ci/42")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "FAILED"
    assert body["failure"]["stage"] == "Quality Gate"
    assert body["failure"]["error_kind"] == "GateTimeoutError"


def test_get_missing_run(client):
    assert client.get("/runs/ci/999").status_code == 404
    assert client.get("/runs/qa/1").status_code == 404


def test_abort_running_run(client):
    resp = client.post("/runs/ci/43/abort")
    assert resp.status_code == 200
    assert resp.json()["abortRequested"] is True


def test_abort_finished_run_conflicts(client):
    assert client.post("/runs/cd/7/abort").status_code == 409
    assert client.post("/runs/ci/999/abort").status_code == 404


def test_missing_orchestrator_is_503():
    app = FastAPI()
    app.include_router(runs_router)
    assert TestClient(app).get("/runs").status_code == 503


def test_health_endpoint():
    from main import app
    resp = TestClient(app).get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
