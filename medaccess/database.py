"""
Record store adapter.

Engine/session wiring plus the two guarantees the access-grant core needs
from the store boundary: bounded timeouts on every connection and a single
bounded retry for transient failures.
"""

import time
import logging
from contextlib import contextmanager
from typing import Callable, TypeVar, Optional

from sqlalchemy import create_engine
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

from medaccess.config import settings
from medaccess.core.error_handling import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def create_store_engine(database_url: str, timeout_seconds: int = settings.STORE_TIMEOUT_SECONDS):
    """
    Create an engine with bounded timeouts.

    SQLite doesn't support pool_size/max_overflow, PostgreSQL does.
    In-memory SQLite shares one connection so every session sees the same data.
    """
    if database_url.startswith("sqlite"):
        kwargs = {
            "connect_args": {"check_same_thread": False, "timeout": timeout_seconds},
        }
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)

    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_timeout=timeout_seconds,
        connect_args={
            "connect_timeout": timeout_seconds,
            "options": f"-c statement_timeout={timeout_seconds * 1000}",
            "application_name": "medaccess",
        },
    )


settings.validate_database_url()

engine = create_store_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(factory: Callable[[], Session] = SessionLocal):
    """Session for long-lived services and background jobs: commit, rollback, close"""
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _is_transient(error: Exception) -> bool:
    if isinstance(error, OperationalError):
        return True
    return isinstance(error, DBAPIError) and bool(error.connection_invalidated)


def run_with_retry(
    db: Session,
    operation: Callable[[Session], T],
    backoff_seconds: Optional[float] = None,
) -> T:
    """
    Run a store operation, retrying exactly once on a transient failure.

    The session is rolled back before the retry so the operation starts from
    a clean transaction. A second failure surfaces as StoreUnavailableError.
    Non-transient errors (integrity violations, programming errors) propagate
    unchanged.
    """
    if backoff_seconds is None:
        backoff_seconds = settings.STORE_RETRY_BACKOFF_SECONDS

    try:
        return operation(db)
    except (OperationalError, DBAPIError) as e:
        if not _is_transient(e):
            raise
        logger.warning(f"Transient store failure, retrying once: {type(e).__name__}")
        db.rollback()

    time.sleep(backoff_seconds)
    try:
        return operation(db)
    except (OperationalError, DBAPIError) as e:
        if not _is_transient(e):
            raise
        db.rollback()
        logger.error(f"Store unavailable after retry: {type(e).__name__}")
        raise StoreUnavailableError("Record store unavailable") from e
