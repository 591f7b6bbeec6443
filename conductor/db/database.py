"""Database connection and session management."""

from __future__ import annotations

import logging
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from conductor.core.config import DATABASE_URL
from conductor.db.tables import Base

logger = logging.getLogger(__name__)


def _build_engine(database_url: str):
    if database_url.startswith("sqlite"):
        # Run workers hand sessions across threads via asyncio.to_thread.
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_size=10,
        max_overflow=20,
    )


class Database:
    """Engine + sessionmaker pair bound to one database URL."""

    def __init__(self, database_url: str = DATABASE_URL) -> None:
        self.url = database_url
        self.engine = _build_engine(database_url)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_all(self) -> None:
        Base.metadata.create_all(bind=self.engine)
        logger.info("Database schema ready at %s", self.engine.url.render_as_string(hide_password=True))

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Context-manager wrapper for safe DB session lifecycle."""
        db = self.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    def dispose(self) -> None:
        self.engine.dispose()
