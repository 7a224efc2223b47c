"""Shared pytest fixtures for datastore tests."""
from __future__ import annotations

from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from fleetstate import models
from fleetstate.config import settings
from fleetstate.datastore import Datastore
from fleetstate.enums import ALL_HOSTS_LABEL_NAME, LabelMembershipType, LabelType
from fleetstate.services.capacity import QueryReportCapacity

TEST_MAX_ROWS = 100


@pytest.fixture(autouse=True)
def no_retry_backoff(monkeypatch):
    """Retry immediately so transient-failure tests don't sleep."""
    monkeypatch.setattr(settings, "db_retry_backoff_base", 0.0)


@pytest.fixture(scope="function")
def test_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    models.Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture(scope="function")
def session_factory(test_engine):
    return sessionmaker(bind=test_engine, autoflush=False, autocommit=False)


@pytest.fixture(scope="function")
def test_db(session_factory):
    """Create a database session for seeding and inspecting state."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def datastore(session_factory) -> Datastore:
    return Datastore(
        session_factory=session_factory,
        capacity=QueryReportCapacity(TEST_MAX_ROWS),
        hostname_batch_size=2,
    )


@pytest.fixture
def mock_time() -> datetime:
    return datetime(2026, 1, 15, 12, 0, 0)


@pytest.fixture
def make_host(test_db: Session):
    def _make(hostname: str, platform: str = "ubuntu", os_version: str = "", host_id: int | None = None):
        host = models.Host(id=host_id, hostname=hostname, platform=platform, os_version=os_version)
        test_db.add(host)
        test_db.commit()
        test_db.refresh(host)
        return host
    return _make


@pytest.fixture
def make_label(test_db: Session):
    def _make(
        name: str,
        query: str = "SELECT 1",
        platform: str = "",
        label_type: LabelType = LabelType.REGULAR,
        membership_type: LabelMembershipType = LabelMembershipType.DYNAMIC,
        label_id: int | None = None,
    ):
        label = models.Label(
            id=label_id,
            name=name,
            query=query,
            platform=platform,
            label_type=label_type.value,
            label_membership_type=membership_type.value,
        )
        test_db.add(label)
        test_db.commit()
        test_db.refresh(label)
        return label
    return _make


@pytest.fixture
def make_query(test_db: Session):
    def _make(name: str, query: str = "SELECT 1"):
        scheduled = models.ScheduledQuery(name=name, query=query)
        test_db.add(scheduled)
        test_db.commit()
        test_db.refresh(scheduled)
        return scheduled
    return _make


@pytest.fixture
def all_hosts_label(make_label):
    return make_label(
        ALL_HOSTS_LABEL_NAME,
        query="SELECT 1",
        label_type=LabelType.BUILTIN,
    )


@pytest.fixture
def membership_pairs(test_db: Session):
    """Current (label_id, host_id) pairs, optionally for one host."""
    def _pairs(host_id: int | None = None) -> set[tuple[int, int]]:
        test_db.expire_all()
        query = test_db.query(models.LabelMembership.label_id, models.LabelMembership.host_id)
        if host_id is not None:
            query = query.filter(models.LabelMembership.host_id == host_id)
        return {(label_id, hid) for label_id, hid in query.all()}
    return _pairs
