"""
Quality Gate Waiter
===================
Bridges the analysis service's asynchronous webhook verdict into the
otherwise sequential CI stage list.

Suspension model:
    - ``await_verdict`` parks the run's own task on an asyncio.Event keyed by
      run id. Other runs keep executing.
    - The task wakes either when ``deliver`` sets the event or after
      ``recheck_seconds``, re-checks the verdict store, and goes back to
      sleep until the deadline. No tight polling loop.
    - When the deadline passes without a verdict the result is ERROR.

Correlation:
    - The first verdict delivered for a run id is kept; later duplicates are
      ignored (``deliver`` returns False).
    - A verdict that arrives before anybody waits is retained and returned
      immediately by the next ``await_verdict`` call.
    - Once a gate has timed out it is closed: late verdicts are refused.
    - ``discard`` drops everything kept for a run once the run is finished.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Set

from conductor.core.config import GATE_RECHECK_SECONDS, QUALITY_GATE_TIMEOUT_SECONDS
from conductor.core.exceptions import GateRejectedError, GateTimeoutError
from conductor.models.quality_gate import GateOutcome, QualityGateVerdict

logger = logging.getLogger(__name__)


class QualityGateWaiter:

    def __init__(self, recheck_seconds: float = GATE_RECHECK_SECONDS) -> None:
        self.recheck_seconds = recheck_seconds
        self._verdicts: Dict[int, QualityGateVerdict] = {}
        self._events: Dict[int, asyncio.Event] = {}
        self._closed: Set[int] = set()

    def _event_for(self, run_id: int) -> asyncio.Event:
        event = self._events.get(run_id)
        if event is None:
            event = asyncio.Event()
            self._events[run_id] = event
        return event

    def deliver(self, verdict: QualityGateVerdict) -> bool:
        """Accept the first verdict per run; ignore duplicates and closed gates."""
        if verdict.run_id in self._closed:
            logger.info(
                "Quality gate for run %d already timed out, verdict %s ignored",
                verdict.run_id, verdict.outcome.value,
            )
            return False
        if verdict.run_id in self._verdicts:
            logger.info(
                "Duplicate quality gate verdict for run %d ignored (%s)",
                verdict.run_id, verdict.outcome.value,
            )
            return False

        self._verdicts[verdict.run_id] = verdict
        logger.info("Quality gate verdict for run %d: %s", verdict.run_id, verdict.outcome.value)
        event = self._events.get(verdict.run_id)
        if event is not None:
            event.set()
        return True

    def verdict_for(self, run_id: int) -> Optional[QualityGateVerdict]:
        return self._verdicts.get(run_id)

    def discard(self, run_id: int) -> None:
        self._verdicts.pop(run_id, None)
        self._closed.discard(run_id)
        self._events.pop(run_id, None)

    async def await_verdict(
        self,
        run_id: int,
        timeout: float = QUALITY_GATE_TIMEOUT_SECONDS,
    ) -> QualityGateVerdict:
        """
        Wait for the verdict of ``run_id``.

        Returns
        -------
        QualityGateVerdict
            The delivered verdict, or a synthetic ERROR verdict on timeout.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        event = self._event_for(run_id)

        try:
            while True:
                verdict = self._verdicts.get(run_id)
                if verdict is not None:
                    return verdict

                remaining = deadline - loop.time()
                if remaining <= 0:
                    logger.warning("Quality gate for run %d timed out after %.1fs", run_id, timeout)
                    self._closed.add(run_id)
                    return QualityGateVerdict(
                        run_id=run_id,
                        outcome=GateOutcome.ERROR,
                        received_at=datetime.now(timezone.utc),
                    )

                try:
                    await asyncio.wait_for(event.wait(), timeout=min(self.recheck_seconds, remaining))
                except asyncio.TimeoutError:
                    logger.debug("Run %d still waiting for quality gate (%.1fs left)", run_id, remaining)
        finally:
            self._events.pop(run_id, None)

    async def require_pass(self, run_id: int, timeout: float = QUALITY_GATE_TIMEOUT_SECONDS) -> QualityGateVerdict:
        """Stage-level wrapper: anything but PASSED is a stage failure."""
        verdict = await self.await_verdict(run_id, timeout)
        if verdict.outcome == GateOutcome.PASSED:
            return verdict
        if run_id not in self._verdicts:
            raise GateTimeoutError(
                f"No quality gate verdict for run {run_id} within {timeout:.0f}s",
                {"run_id": run_id},
            )
        raise GateRejectedError(
            f"Quality gate {verdict.outcome.value} for run {run_id}",
            {"run_id": run_id},
        )
