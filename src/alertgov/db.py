"""
Database configuration and session management
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Database:
    """Holds the engine and session factory for one durable store.

    Constructed with ``url=None`` it reports ``is_configured == False`` and
    every persistence call treats that as "skip", not as an error.
    """

    def __init__(self, url: Optional[str] = None, echo: bool = False):
        self.url = url
        self.engine: Optional[Engine] = None
        self.SessionLocal: Optional[sessionmaker] = None
        if url:
            self.engine = self._create_engine(url, echo)
            self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False)

    @staticmethod
    def _create_engine(url: str, echo: bool) -> Engine:
        if url.startswith("sqlite"):
            kwargs = {
                "connect_args": {"check_same_thread": False},
                "pool_pre_ping": True,
                "echo": echo,
            }
            # in-memory sqlite needs a single shared connection across threads
            if ":memory:" in url or url.rstrip("/") == "sqlite:":
                kwargs["poolclass"] = StaticPool
            return create_engine(url, **kwargs)
        return create_engine(url, pool_pre_ping=True, pool_size=10, max_overflow=20, echo=echo)

    @property
    def is_configured(self) -> bool:
        return self.SessionLocal is not None

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Transactional scope: commit on success, rollback on error"""
        if self.SessionLocal is None:
            raise RuntimeError("database is not configured")
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_db(self) -> Iterator[Session]:
        """Dependency for FastAPI"""
        if self.SessionLocal is None:
            raise RuntimeError("database is not configured")
        db = self.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    def init_db(self) -> None:
        """Initialize database tables"""
        if self.engine is None:
            logger.info("No database configured; running memory-only")
            return
        from alertgov.models.governance import Base
        Base.metadata.create_all(bind=self.engine)
        logger.info(f"Database initialized at: {self.engine.url.render_as_string(hide_password=True)}")

    def drop_all(self) -> None:
        if self.engine is None:
            return
        from alertgov.models.governance import Base
        Base.metadata.drop_all(bind=self.engine)

    def dispose(self) -> None:
        if self.engine is not None:
            self.engine.dispose()


def coerce_datetime(value: Any) -> Optional[datetime]:
    """Accept a datetime or ISO-8601 string and return naive UTC, else None"""
    if isinstance(value, str) and value:
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    return None
