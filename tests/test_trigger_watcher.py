"""
Unit Tests — Trigger Watcher
============================
Dedup of webhook/poll events and poll-loop resilience. The source API is
mocked; the dedup ledger is a real SQLite-backed TriggerLedger.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from conductor.agents.trigger_watcher import TriggerWatcher
from conductor.core.exceptions import ConfigurationError, TransientInfraError
from conductor.services.source_client import SourceClient
from conductor.services.trigger_ledger import TriggerLedger


@pytest.fixture
def ledger(database):
    return TriggerLedger(database)


def _counting_enqueue(start=42):
    created = []

    async def enqueue_run(event):
        run_id = start + len(created)
        created.append((event.commit_id, run_id))
        return run_id

    return enqueue_run, created


def test_webhook_payload_parsed(ledger):
    watcher = TriggerWatcher(ledger, AsyncMock())
    event = watcher.on_webhook({"commitId": "abc123", "repoRef": "org/app", "timestamp": "2024-05-01T10:00:00Z"})
    assert event.commit_id == "abc123"
    assert event.repo_ref == "org/app"
    assert event.timestamp.year == 2024


def test_webhook_without_commit_rejected(ledger):
    watcher = TriggerWatcher(ledger, AsyncMock())
    with pytest.raises(ValueError):
        watcher.on_webhook({"repoRef": "org/app"})


def test_duplicate_webhook_enqueues_one_run(ledger):
    enqueue_run, created = _counting_enqueue()
    watcher = TriggerWatcher(ledger, enqueue_run)

    async def run_test():
        payload = {"commitId": "abc123", "repoRef": "org/app"}
        first = await watcher.enqueue(watcher.on_webhook(payload))
        second = await watcher.enqueue(watcher.on_webhook(payload))
        return first, second

    first, second = asyncio.run(run_test())
    assert first == 42
    assert second is None
    assert created == [("abc123", 42)]
    assert ledger.run_for("abc123", "CI") == 42


def test_dedup_survives_new_watcher_instance(ledger):
    enqueue_run, created = _counting_enqueue()
    payload = {"commitId": "abc123", "repoRef": "org/app"}

    async def run_test():
        first = TriggerWatcher(ledger, enqueue_run)
        await first.enqueue(first.on_webhook(payload))
        restarted = TriggerWatcher(ledger, enqueue_run)
        return await restarted.enqueue(restarted.on_webhook(payload))

    assert asyncio.run(run_test()) is None
    assert len(created) == 1


def test_failed_enqueue_releases_claim(ledger):
    failing = AsyncMock(side_effect=TransientInfraError("database busy"))
    watcher = TriggerWatcher(ledger, failing)
    event = watcher.on_webhook({"commitId": "abc123", "repoRef": "org/app"})

    with pytest.raises(TransientInfraError):
        asyncio.run(watcher.enqueue(event))
    assert ledger.claim("abc123", "CI") is True


def test_poll_reports_only_new_commits(ledger):
    source = MagicMock(spec=SourceClient)
    source.latest_commit = AsyncMock(side_effect=["abc123", "abc123", "def456"])
    watcher = TriggerWatcher(ledger, AsyncMock(), source_client=source)

    async def run_test():
        return [await watcher.poll("org/app") for _ in range(3)]

    first, second, third = asyncio.run(run_test())
    assert first.commit_id == "abc123"
    assert second is None
    assert third.commit_id == "def456"


def test_watch_survives_poll_failures(ledger):
    enqueue_run, created = _counting_enqueue()
    source = MagicMock(spec=SourceClient)
    watcher = TriggerWatcher(ledger, enqueue_run, source_client=source, poll_interval=0.01)

    calls = {"n": 0}

    async def latest_commit(ref):
        calls["n"] += 1
        if calls["n"] == 1:
            raise TransientInfraError("source API unreachable")
        if calls["n"] == 2:
            raise httpx.ConnectError("connection refused")
        if calls["n"] >= 4:
            watcher.stop()
        return "abc123"

    source.latest_commit = latest_commit

    asyncio.run(asyncio.wait_for(watcher.watch("org/app"), timeout=5))
    assert calls["n"] >= 4
    assert created == [("abc123", 42)]


def test_watch_stops_on_configuration_error(ledger):
    source = MagicMock(spec=SourceClient)
    source.latest_commit = AsyncMock(side_effect=ConfigurationError("SOURCE_API_URL is not configured"))
    watcher = TriggerWatcher(ledger, AsyncMock(), source_client=source, poll_interval=0.01)

    with pytest.raises(ConfigurationError):
        asyncio.run(watcher.watch("org/app"))


def test_source_client_reads_latest_commit():
    async def run_test():
        mock_resp = MagicMock()
        mock_resp.json.return_value = {"latestCommitId": "abc123"}
        mock_resp.raise_for_status = MagicMock()
        with patch("httpx.AsyncClient.get", return_value=mock_resp) as mock_get:
            client = SourceClient(base_url="https://source.example", token="t", branch="main")
            commit = await client.latest_commit("org/app")
            assert commit == "abc123"
            assert "/repos/org/app/latest" in mock_get.call_args.args[0]

    asyncio.run(run_test())


def test_source_client_rejects_non_json_body():
    async def run_test():
        mock_resp = MagicMock()
        mock_resp.json.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")
        mock_resp.raise_for_status = MagicMock()
        with patch("httpx.AsyncClient.get", return_value=mock_resp):
            await SourceClient(base_url="https://source.example").latest_commit("org/app")

    with pytest.raises(TransientInfraError):
        asyncio.run(run_test())


def test_source_client_rejects_list_body():
    async def run_test():
        mock_resp = MagicMock()
        mock_resp.json.return_value = ["abc123"]
        mock_resp.raise_for_status = MagicMock()
        with patch("httpx.AsyncClient.get", return_value=mock_resp):
            await SourceClient(base_url="https://source.example").latest_commit("org/app")

    with pytest.raises(TransientInfraError):
        asyncio.run(run_test())


def test_watch_survives_maintenance_page(ledger):
    enqueue_run, created = _counting_enqueue()
    watcher = TriggerWatcher(
        ledger, enqueue_run, source_client=SourceClient(base_url="https://source.example"), poll_interval=0.01,
    )
    calls = {"n": 0}

    def respond(*args, **kwargs):
        calls["n"] += 1
        resp = MagicMock()
        resp.raise_for_status = MagicMock()
        if calls["n"] == 1:
            resp.json.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")
        else:
            resp.json.return_value = {"latestCommitId": "abc123"}
        if calls["n"] >= 3:
            watcher.stop()
        return resp

    with patch("httpx.AsyncClient.get", side_effect=respond):
        asyncio.run(asyncio.wait_for(watcher.watch("org/app"), timeout=5))

    assert calls["n"] >= 3
    assert created == [("abc123", 42)]


def test_watch_survives_unexpected_errors(ledger):
    enqueue_run, created = _counting_enqueue()
    source = MagicMock(spec=SourceClient)
    watcher = TriggerWatcher(ledger, enqueue_run, source_client=source, poll_interval=0.01)
    calls = {"n": 0}

    async def latest_commit(ref):
        calls["n"] += 1
        if calls["n"] == 1:
            raise AttributeError("'list' object has no attribute 'get'")
        watcher.stop()
        return "abc123"

    source.latest_commit = latest_commit

    asyncio.run(asyncio.wait_for(watcher.watch("org/app"), timeout=5))
    assert created == [("abc123", 42)]


def test_failed_enqueue_retried_on_next_poll(ledger):
    attempts = []

    async def enqueue_run(event):
        attempts.append(event.commit_id)
        if len(attempts) == 1:
            raise TransientInfraError("database busy")
        return 42

    source = MagicMock(spec=SourceClient)
    watcher = TriggerWatcher(ledger, enqueue_run, source_client=source, poll_interval=0.01)
    calls = {"n": 0}

    async def latest_commit(ref):
        calls["n"] += 1
        if calls["n"] >= 4:
            watcher.stop()
        return "abc123"

    source.latest_commit = latest_commit

    asyncio.run(asyncio.wait_for(watcher.watch("org/app"), timeout=5))
    assert attempts == ["abc123", "abc123"]
    assert ledger.run_for("abc123", "CI") == 42
