"""
Durable store plumbing for the transmission queue.

``open_store`` accepts either a SQLAlchemy URL or a plain filesystem path
(treated as a SQLite file) and creates the schema if it is missing.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from fhir_bridge.errors import StoreUnavailable

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_SECONDS = 30


class Base(DeclarativeBase):
    pass


def _database_url(location: str) -> str:
    return location if "://" in location else f"sqlite:///{location}"


class TransmissionStore:
    """Owns the engine and hands out one transaction per queue operation."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Yield a session inside a transaction that commits on success.
        Any database error is rolled back and re-raised as StoreUnavailable.
        """
        try:
            with self._sessions.begin() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error("Queue store operation failed: %s", exc)
            raise StoreUnavailable(f"Queue store operation failed: {exc}") from exc

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            return False

    def close(self) -> None:
        self.engine.dispose()


def open_store(location: str) -> TransmissionStore:
    """Open (or create) the queue store at ``location``."""
    # Register the queue tables on Base.metadata before create_all
    from fhir_bridge.models import queue  # noqa: F401

    url = _database_url(location)
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS}

    try:
        engine = create_engine(url, pool_pre_ping=True, connect_args=connect_args)
        Base.metadata.create_all(bind=engine)
    except SQLAlchemyError as exc:
        raise StoreUnavailable(f"Cannot open queue store at {location!r}: {exc}") from exc

    logger.info("Opened queue store at %s", engine.url.render_as_string(hide_password=True))
    return TransmissionStore(engine)
