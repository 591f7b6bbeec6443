"""
Build Sequence
==============
Persisted, atomically incremented build numbers, one counter per pipeline.

The number handed out here is the run id of a new PipelineRun and, for CI
runs, the image tag the Artifact Tagger binds to the published image.

Atomicity:
    - ``UPDATE ... SET value = value + 1`` and the read-back happen inside one
      transaction, so two processes sharing the database never observe the
      same value.
    - A process-local lock serialises threads of this process in front of
      the database (SQLite allows a single writer anyway).
    - The counter lives in the database, so a restart never reuses a number.
"""
import logging
import threading

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from conductor.db.database import Database
from conductor.db.tables import PipelineSequence

logger = logging.getLogger(__name__)


class BuildSequence:

    def __init__(self, database: Database) -> None:
        self.database = database
        self._lock = threading.Lock()

    def next_value(self, name: str) -> int:
        """Increment the named counter and return the new value."""
        with self._lock:
            try:
                value = self._increment(name)
            except IntegrityError:
                # Another process created the counter row first.
                value = self._increment(name)

        logger.debug("Sequence %s advanced to %d", name, value)
        return value

    def _increment(self, name: str) -> int:
        with self.database.session() as db:
            with db.begin():
                result = db.execute(
                    update(PipelineSequence)
                    .where(PipelineSequence.name == name)
                    .values(value=PipelineSequence.value + 1)
                )
                if result.rowcount == 0:
                    db.add(PipelineSequence(name=name, value=1))
                    db.flush()
                return db.execute(
                    select(PipelineSequence.value).where(PipelineSequence.name == name)
                ).scalar_one()

    def current(self, name: str) -> int:
        with self.database.session() as db:
            value = db.execute(
                select(PipelineSequence.value).where(PipelineSequence.name == name)
            ).scalar_one_or_none()
        return value or 0

    def ensure_at_least(self, name: str, value: int) -> None:
        """
        Raise the counter floor, e.g. to continue numbering from a previous
        build server. Never lowers an existing counter.
        """
        with self._lock:
            with self.database.session() as db:
                with db.begin():
                    row = db.get(PipelineSequence, name)
                    if row is None:
                        db.add(PipelineSequence(name=name, value=value))
                    elif row.value < value:
                        row.value = value
        logger.info("Sequence %s floor set to %d", name, value)
