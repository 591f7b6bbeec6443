"""
Notifier
========
Best-effort terminal run notifications.

Delivery failures of any kind are logged and dropped; they never reach the
run. This is the only collaborator allowed to swallow errors.
"""
import logging
from typing import Iterable, List, Optional

import httpx

from conductor.core.config import NOTIFY_TIMEOUT_SECONDS, NOTIFY_WEBHOOK_URLS
from conductor.models.events import NotificationEvent

logger = logging.getLogger(__name__)


class Notifier:

    def __init__(
        self,
        channels: Optional[Iterable[str]] = None,
        timeout_seconds: float = NOTIFY_TIMEOUT_SECONDS,
    ) -> None:
        self.channels: List[str] = list(NOTIFY_WEBHOOK_URLS if channels is None else channels)
        self.timeout_seconds = timeout_seconds
        self.delivered = 0
        self.dropped = 0

    async def notify(self, event: NotificationEvent) -> None:
        logger.info(
            "Run %s-%d finished %s: %s", event.kind, event.run_id, event.status, event.summary
        )
        if not self.channels:
            return

        payload = event.to_wire()
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                for url in self.channels:
                    try:
                        response = await client.post(url, json=payload)
                        response.raise_for_status()
                        self.delivered += 1
                    except Exception as e:
                        self.dropped += 1
                        logger.warning("Notification to %s dropped: %s", url, e)
        except Exception as e:
            self.dropped += 1
            logger.warning("Notification delivery failed: %s", e)
