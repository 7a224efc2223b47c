from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Callable, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from fleetstate import metrics
from fleetstate.config import settings
from fleetstate.errors import DatastoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_engine_kwargs: dict = dict(
    pool_pre_ping=True,
    future=True,
)

if settings.database_url.startswith("sqlite"):
    _engine_kwargs["connect_args"] = {"check_same_thread": False}
else:
    _engine_kwargs.update(
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_recycle=300,       # Recycle connections after 5 minutes
        pool_timeout=settings.db_pool_timeout,
        connect_args={"options": f"-c statement_timeout={settings.db_statement_timeout_ms}"},
    )

engine = create_engine(settings.database_url, **_engine_kwargs)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@contextmanager
def get_session(session_factory: Callable[[], Session] | None = None):
    """Get a database session with proper cleanup.

    The session is always rolled back before close so an uncommitted
    transaction never lingers as "idle in transaction".

    Usage:
        with get_session() as session:
            # do work
            session.commit()  # if needed
    """
    session = (session_factory or SessionLocal)()
    try:
        yield session
    finally:
        try:
            session.rollback()  # No-op after a successful commit
        except SQLAlchemyError as e:
            logger.debug(f"Rollback before close failed: {e}")
        session.close()


# ---------------------------------------------------------------------------
# Transactions with retry on deadlock / serialization failure
# ---------------------------------------------------------------------------

# Postgres: serialization_failure, deadlock_detected
_RETRYABLE_SQLSTATES = {"40001", "40P01"}
# MySQL: lock wait timeout, deadlock found
_RETRYABLE_MYSQL_CODES = {1205, 1213}
_RETRYABLE_MESSAGES = ("deadlock", "could not serialize", "database is locked")


def is_retryable_error(exc: BaseException) -> bool:
    """Whether a failed transaction can be safely re-run from scratch."""
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _RETRYABLE_SQLSTATES:
        return True
    args = getattr(orig, "args", None) or ()
    if args and args[0] in _RETRYABLE_MYSQL_CODES:
        return True
    message = str(orig).lower()
    return any(marker in message for marker in _RETRYABLE_MESSAGES)


def _calculate_backoff(attempt: int) -> float:
    """Exponential backoff: min(base * 2^attempt, max)."""
    delay = settings.db_retry_backoff_base * (2 ** attempt)
    return min(delay, settings.db_retry_backoff_max)


def with_retry_tx(
    fn: Callable[[Session], T],
    operation: str,
    session_factory: Callable[[], Session] | None = None,
    max_attempts: int | None = None,
) -> T:
    """Run ``fn`` inside one transaction, retrying transient failures.

    Every attempt gets a fresh session, so ``fn`` must be safe to run again
    from scratch. Non-retryable storage errors roll back and are raised as
    DatastoreError carrying ``operation``. DatastoreError raised by ``fn``
    itself (e.g. NotFoundError) rolls back and propagates unchanged.
    """
    if max_attempts is None:
        max_attempts = settings.db_retry_max_attempts

    for attempt in range(max_attempts):
        with get_session(session_factory) as session:
            try:
                result = fn(session)
                session.commit()
                return result
            except DatastoreError:
                session.rollback()
                metrics.record_transaction_failure(operation)
                raise
            except SQLAlchemyError as e:
                session.rollback()
                if is_retryable_error(e) and attempt < max_attempts - 1:
                    delay = _calculate_backoff(attempt)
                    metrics.record_transaction_retry(operation)
                    logger.warning(
                        f"{operation} hit a transient conflict "
                        f"(attempt {attempt + 1}/{max_attempts}), retrying in {delay:.2f}s: {e}"
                    )
                    if delay > 0:
                        time.sleep(delay)
                    continue

                retriable = is_retryable_error(e)
                metrics.record_transaction_failure(operation)
                logger.error(f"{operation} failed after {attempt + 1} attempt(s): {e}")
                raise DatastoreError(f"{operation}: {e}", operation, retriable=retriable) from e

    # max_attempts < 1
    raise DatastoreError(f"{operation}: no transaction attempts allowed", operation)


def dialect_insert(session: Session, table):
    """Return a dialect-specific INSERT supporting ON CONFLICT clauses."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise DatastoreError(f"unsupported database dialect for upserts: {dialect}")
