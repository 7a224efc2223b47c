"""Tests for transaction retry handling (db.py)."""
from __future__ import annotations

from types import SimpleNamespace

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, OperationalError

from fleetstate import models
from fleetstate.config import settings
from fleetstate.db import _calculate_backoff, dialect_insert, is_retryable_error, with_retry_tx
from fleetstate.errors import DatastoreError, NotFoundError


class _PgError(Exception):
    def __init__(self, message: str, sqlstate: str):
        super().__init__(message)
        self.sqlstate = sqlstate


def _operational(orig: Exception) -> OperationalError:
    return OperationalError("UPDATE hosts SET label_updated_at=?", {}, orig)


def _sample(name: str, operation: str) -> float:
    return REGISTRY.get_sample_value(name, {"operation": operation}) or 0.0


class TestIsRetryableError:
    @pytest.mark.parametrize("sqlstate", ["40001", "40P01"])
    def test_postgres_serialization_and_deadlock(self, sqlstate):
        assert is_retryable_error(_operational(_PgError("conflict", sqlstate)))

    def test_postgres_other_sqlstate(self):
        assert not is_retryable_error(_operational(_PgError("syntax error", "42601")))

    @pytest.mark.parametrize("code", [1205, 1213])
    def test_mysql_lock_errors(self, code):
        assert is_retryable_error(_operational(Exception(code, "Deadlock found when trying to get lock")))

    @pytest.mark.parametrize(
        "message",
        ["deadlock detected", "could not serialize access due to concurrent update", "database is locked"],
    )
    def test_message_markers(self, message):
        assert is_retryable_error(_operational(Exception(message)))

    def test_constraint_violation_not_retryable(self):
        error = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: labels.name"))
        assert not is_retryable_error(error)

    def test_non_database_error(self):
        assert not is_retryable_error(ValueError("deadlock"))


class TestCalculateBackoff:
    def test_exponential_growth(self, monkeypatch):
        monkeypatch.setattr(settings, "db_retry_backoff_base", 0.05)
        monkeypatch.setattr(settings, "db_retry_backoff_max", 2.0)

        assert _calculate_backoff(0) == pytest.approx(0.05)
        assert _calculate_backoff(1) == pytest.approx(0.1)
        assert _calculate_backoff(3) == pytest.approx(0.4)

    def test_capped_at_max(self, monkeypatch):
        monkeypatch.setattr(settings, "db_retry_backoff_base", 0.05)
        monkeypatch.setattr(settings, "db_retry_backoff_max", 2.0)

        assert _calculate_backoff(10) == 2.0


class TestWithRetryTx:
    def test_commits_on_success(self, session_factory, test_db):
        def _add(session):
            session.add(models.Host(hostname="committed"))
            return "ok"

        assert with_retry_tx(_add, "add host", session_factory=session_factory) == "ok"

        hostnames = test_db.scalars(select(models.Host.hostname)).all()
        assert hostnames == ["committed"]

    def test_retries_transient_failure_with_fresh_session(self, session_factory, test_db):
        sessions = []

        def _flaky(session):
            sessions.append(session)
            session.add(models.Host(hostname=f"attempt{len(sessions)}"))
            if len(sessions) < 3:
                session.flush()
                raise _operational(Exception("deadlock detected"))
            return len(sessions)

        before = _sample("fleetstate_transaction_retries_total", "flaky op")

        assert with_retry_tx(_flaky, "flaky op", session_factory=session_factory) == 3

        assert len({id(s) for s in sessions}) == 3
        # Rolled-back attempts leave nothing behind
        assert test_db.scalars(select(models.Host.hostname)).all() == ["attempt3"]
        assert _sample("fleetstate_transaction_retries_total", "flaky op") - before == 2

    def test_gives_up_after_max_attempts(self, session_factory):
        calls = []

        def _always_deadlocks(session):
            calls.append(1)
            raise _operational(_PgError("deadlock detected", "40P01"))

        with pytest.raises(DatastoreError) as exc_info:
            with_retry_tx(_always_deadlocks, "stuck op", session_factory=session_factory, max_attempts=3)

        assert len(calls) == 3
        assert exc_info.value.operation == "stuck op"
        assert exc_info.value.retriable is True
        assert str(exc_info.value).startswith("stuck op:")

    def test_non_retryable_error_raised_once(self, session_factory, test_db):
        calls = []

        def _broken(session):
            calls.append(1)
            session.add(models.Host(hostname="never"))
            session.flush()
            raise _operational(Exception("disk I/O error"))

        before = _sample("fleetstate_transaction_failures_total", "broken op")

        with pytest.raises(DatastoreError) as exc_info:
            with_retry_tx(_broken, "broken op", session_factory=session_factory)

        assert len(calls) == 1
        assert exc_info.value.retriable is False
        assert isinstance(exc_info.value.__cause__, OperationalError)
        assert test_db.scalars(select(models.Host)).all() == []
        assert _sample("fleetstate_transaction_failures_total", "broken op") - before == 1

    def test_datastore_errors_propagate_unchanged(self, session_factory, test_db):
        def _missing(session):
            session.add(models.Host(hostname="rolled back"))
            session.flush()
            raise NotFoundError("host", 42, "lookup")

        with pytest.raises(NotFoundError) as exc_info:
            with_retry_tx(_missing, "lookup", session_factory=session_factory)

        assert exc_info.value.identifier == 42
        assert test_db.scalars(select(models.Host)).all() == []

    def test_zero_attempts(self, session_factory):
        with pytest.raises(DatastoreError):
            with_retry_tx(lambda s: None, "noop", session_factory=session_factory, max_attempts=0)


class TestDialectInsert:
    def test_sqlite(self, test_db):
        stmt = dialect_insert(test_db, models.LabelMembership.__table__)

        assert isinstance(stmt, sqlite.Insert)

    def test_postgresql(self):
        session = SimpleNamespace(get_bind=lambda: SimpleNamespace(dialect=postgresql.dialect()))

        assert isinstance(dialect_insert(session, models.LabelMembership.__table__), postgresql.Insert)

    def test_unsupported_dialect(self):
        session = SimpleNamespace(get_bind=lambda: SimpleNamespace(dialect=SimpleNamespace(name="mysql")))

        with pytest.raises(DatastoreError, match="mysql"):
            dialect_insert(session, models.LabelMembership.__table__)
