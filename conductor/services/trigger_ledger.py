"""
Trigger Ledger
==============
Persisted dedup keys for source change events.

A change is identified by (commit_id, pipeline kind). The first caller to
claim a key wins; every later poll or duplicate webhook delivery for the same
key is a no-op. The unique constraint lives in the database so the guarantee
survives restarts and multiple watcher processes.
"""
import logging
import threading
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from conductor.db.database import Database
from conductor.db.tables import TriggerKey

logger = logging.getLogger(__name__)


class TriggerLedger:

    def __init__(self, database: Database) -> None:
        self.database = database
        self._lock = threading.Lock()

    def claim(self, commit_id: str, kind: str) -> bool:
        """Return True if this call is the first to see (commit_id, kind)."""
        with self._lock:
            with self.database.session() as db:
                try:
                    with db.begin():
                        db.add(TriggerKey(commit_id=commit_id, kind=kind))
                except IntegrityError:
                    logger.info("Duplicate change event ignored: %s/%s", kind, commit_id)
                    return False
        return True

    def bind_run(self, commit_id: str, kind: str, run_id: int) -> None:
        with self.database.session() as db:
            with db.begin():
                db.execute(
                    update(TriggerKey)
                    .where(TriggerKey.commit_id == commit_id, TriggerKey.kind == kind)
                    .values(run_id=run_id)
                )

    def run_for(self, commit_id: str, kind: str) -> Optional[int]:
        with self.database.session() as db:
            return db.execute(
                select(TriggerKey.run_id).where(
                    TriggerKey.commit_id == commit_id, TriggerKey.kind == kind
                )
            ).scalar_one_or_none()

    def release(self, commit_id: str, kind: str) -> None:
        """Forget a claim whose run could not be created, so a later event may retry."""
        with self.database.session() as db:
            with db.begin():
                db.execute(
                    delete(TriggerKey).where(TriggerKey.commit_id == commit_id, TriggerKey.kind == kind)
                )
