"""
Trigger Watcher
===============
Turns source changes into CI runs.

Inputs:
    - Webhook: {"commitId": "...", "repoRef": "...", "timestamp": "..."}
    - Poll:    SourceClient.latest_commit() → {"latestCommitId": "..."}

Guarantees:
    - Exactly one run per (commit id, pipeline kind). The dedup key is
      claimed in the persisted TriggerLedger before the run is created, so
      duplicate webhook deliveries, repeated polls and restarts are no-ops.
    - A network failure or a malformed answer while polling is logged and
      retried at the next scheduled poll; it never stops the watch loop.
    - A polled commit whose enqueue failed is offered again on the next poll.
    - A ConfigurationError (no source API, bad credentials) stops the loop.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx
from pydantic import ValidationError

from conductor.core.config import POLL_INTERVAL_SECONDS
from conductor.core.exceptions import ConfigurationError, TransientInfraError
from conductor.models.events import ChangeEvent
from conductor.models.pipeline_run import PipelineKind
from conductor.services.source_client import SourceClient
from conductor.services.trigger_ledger import TriggerLedger

logger = logging.getLogger(__name__)

EnqueueRun = Callable[[ChangeEvent], Awaitable[int]]


class TriggerWatcher:

    def __init__(
        self,
        ledger: TriggerLedger,
        enqueue_run: EnqueueRun,
        source_client: Optional[SourceClient] = None,
        kind: PipelineKind = PipelineKind.CI,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ) -> None:
        self.ledger = ledger
        self.enqueue_run = enqueue_run
        self.source_client = source_client
        self.kind = kind
        self.poll_interval = poll_interval
        self._last_seen: Dict[str, str] = {}
        self._stop = asyncio.Event()

    # -------------------------------------------------------------------
    # Event sources
    # -------------------------------------------------------------------
    async def poll(self, source_ref: str) -> Optional[ChangeEvent]:
        """Ask the source for its head commit; return an event if it changed."""
        if self.source_client is None:
            self.source_client = SourceClient()

        latest = await self.source_client.latest_commit(source_ref)
        if not latest or self._last_seen.get(source_ref) == latest:
            return None

        self._last_seen[source_ref] = latest
        logger.info("Poll observed %s at %s", source_ref, latest)
        return ChangeEvent(commit_id=latest, repo_ref=source_ref, timestamp=datetime.now(timezone.utc))

    def on_webhook(self, payload: Mapping[str, Any]) -> ChangeEvent:
        """Parse an inbound webhook payload into a ChangeEvent."""
        try:
            return ChangeEvent(
                commit_id=payload.get("commitId") or "",
                repo_ref=payload.get("repoRef") or "",
                timestamp=payload.get("timestamp") or datetime.now(timezone.utc),
            )
        except ValidationError as e:
            raise ValueError(f"Malformed source change payload: {e.errors(include_url=False)}") from e

    # -------------------------------------------------------------------
    # Dedup + enqueue
    # -------------------------------------------------------------------
    async def enqueue(self, event: ChangeEvent) -> Optional[int]:
        """
        Enqueue one run for ``event`` unless its key was already claimed.

        Returns
        -------
        int | None
            The new run id, or None for a duplicate.
        """
        if not self.ledger.claim(event.commit_id, self.kind.value):
            return None

        try:
            run_id = await self.enqueue_run(event)
        except Exception:
            self.ledger.release(event.commit_id, self.kind.value)
            raise

        self.ledger.bind_run(event.commit_id, self.kind.value, run_id)
        logger.info("Enqueued %s run %d for commit %s", self.kind.value, run_id, event.commit_id)
        return run_id

    # -------------------------------------------------------------------
    # Poll loop
    # -------------------------------------------------------------------
    async def watch(self, source_ref: str) -> None:
        """Poll ``source_ref`` every ``poll_interval`` seconds until stopped."""
        logger.info("Watching %s every %.0fs", source_ref, self.poll_interval)
        self._stop.clear()

        while not self._stop.is_set():
            try:
                event = await self.poll(source_ref)
                if event is not None:
                    try:
                        await self.enqueue(event)
                    except Exception:
                        # offer the same head again next cycle
                        self._last_seen.pop(source_ref, None)
                        raise
            except ConfigurationError:
                raise
            except (TransientInfraError, httpx.HTTPError) as e:
                logger.warning("Poll of %s failed, retrying next cycle: %s", source_ref, e)
            except Exception:
                logger.exception("Poll of %s raised unexpectedly, retrying next cycle", source_ref)

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Stopped watching %s", source_ref)

    def stop(self) -> None:
        self._stop.set()
