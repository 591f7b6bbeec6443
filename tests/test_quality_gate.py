"""
Unit Tests — Quality Gate Waiter
"""
import asyncio
from datetime import datetime, timezone

import pytest

from conductor.agents.quality_gate import QualityGateWaiter
from conductor.core.exceptions import GateRejectedError, GateTimeoutError
from conductor.models.quality_gate import GateOutcome, QualityGateVerdict


def _verdict(run_id, outcome=GateOutcome.PASSED):
    return QualityGateVerdict(run_id=run_id, outcome=outcome, received_at=datetime.now(timezone.utc))


@pytest.fixture
def waiter():
    return QualityGateWaiter(recheck_seconds=0.05)


def test_verdict_delivered_before_wait_returns_immediately(waiter):
    async def run_test():
        assert waiter.deliver(_verdict(7)) is True
        loop = asyncio.get_running_loop()
        started = loop.time()
        verdict = await waiter.await_verdict(7, timeout=5)
        assert verdict.outcome == GateOutcome.PASSED
        assert loop.time() - started < 0.5

    asyncio.run(run_test())


def test_verdict_delivered_while_waiting(waiter):
    async def run_test():
        async def deliver_later():
            await asyncio.sleep(0.02)
            waiter.deliver(_verdict(8, GateOutcome.FAILED))

        asyncio.create_task(deliver_later())
        verdict = await waiter.await_verdict(8, timeout=5)
        assert verdict.outcome == GateOutcome.FAILED

    asyncio.run(run_test())


def test_timeout_yields_error_verdict(waiter):
    async def run_test():
        loop = asyncio.get_running_loop()
        started = loop.time()
        verdict = await waiter.await_verdict(9, timeout=0.2)
        elapsed = loop.time() - started
        assert verdict.outcome == GateOutcome.ERROR
        assert elapsed >= 0.2
        assert elapsed < 1.0

    asyncio.run(run_test())


def test_duplicate_verdicts_ignored(waiter):
    assert waiter.deliver(_verdict(10, GateOutcome.PASSED)) is True
    assert waiter.deliver(_verdict(10, GateOutcome.FAILED)) is False
    assert waiter.verdict_for(10).outcome == GateOutcome.PASSED


def test_verdicts_are_correlated_by_run_id(waiter):
    async def run_test():
        waiter.deliver(_verdict(2, GateOutcome.FAILED))
        first = asyncio.create_task(waiter.await_verdict(1, timeout=2))
        await asyncio.sleep(0.01)
        assert not first.done()
        waiter.deliver(_verdict(1, GateOutcome.PASSED))
        assert (await first).outcome == GateOutcome.PASSED

    asyncio.run(run_test())


def test_require_pass_raises_timeout(waiter):
    with pytest.raises(GateTimeoutError):
        asyncio.run(waiter.require_pass(11, timeout=0.1))


def test_require_pass_raises_on_failed_verdict(waiter):
    waiter.deliver(_verdict(12, GateOutcome.FAILED))
    with pytest.raises(GateRejectedError) as exc:
        asyncio.run(waiter.require_pass(12, timeout=1))
    assert not isinstance(exc.value, GateTimeoutError)


def test_require_pass_rejects_delivered_error(waiter):
    waiter.deliver(_verdict(13, GateOutcome.ERROR))
    with pytest.raises(GateRejectedError) as exc:
        asyncio.run(waiter.require_pass(13, timeout=1))
    assert not isinstance(exc.value, GateTimeoutError)


def test_require_pass_returns_passed(waiter):
    waiter.deliver(_verdict(14))
    verdict = asyncio.run(waiter.require_pass(14, timeout=1))
    assert verdict.outcome == GateOutcome.PASSED


def test_late_verdict_after_timeout_refused(waiter):
    verdict = asyncio.run(waiter.await_verdict(15, timeout=0.1))
    assert verdict.outcome == GateOutcome.ERROR

    assert waiter.deliver(_verdict(15, GateOutcome.PASSED)) is False
    assert waiter.verdict_for(15) is None


def test_discard_forgets_run(waiter):
    asyncio.run(waiter.await_verdict(16, timeout=0.1))
    waiter.deliver(_verdict(17))

    waiter.discard(16)
    waiter.discard(17)

    assert waiter.verdict_for(17) is None
    assert waiter.deliver(_verdict(16)) is True
