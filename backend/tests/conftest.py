"""
Pytest configuration and fixtures for backend tests.

Provides shared fixtures for:
- Test database sessions (in-memory SQLite)
- Reconciliation config without pacing
- Sample data factories (events, locations, users)
- FastAPI test client
"""

import os
import pytest
from datetime import datetime, timedelta

from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app modules
os.environ['ROOMCAL_DB_URL'] = 'sqlite:///:memory:'
os.environ['ROOMCAL_ENV'] = 'test'
os.environ['ROOMCAL_BATCH_PAUSE_SECONDS'] = '0'

from backend.src.config.settings import ReconcileConfig
from backend.src.models import Base, Event, Location, User
from backend.src.schemas.event import history_entry
from backend.src.utils.batch_runner import NoPacing, RunnerOptions


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture(scope='function')
def test_db_engine():
    """Create an in-memory SQLite database engine for testing."""
    from sqlalchemy import event

    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )

    # Enable foreign key constraints for SQLite
    # This must be set for each connection
    def _fk_pragma_on_connect(dbapi_con, con_record):
        dbapi_con.execute('pragma foreign_keys=ON')

    event.listen(engine, 'connect', _fk_pragma_on_connect)

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope='function')
def test_db_session(test_db_engine):
    """Create a test database session."""
    TestingSessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def reconcile_config():
    """Reconciliation config with no pause between chunks."""
    return ReconcileConfig(batch_size=100, batch_pause_seconds=0.0, max_conflict_retries=3)


@pytest.fixture
def runner_options():
    """Batch hooks without pacing."""
    return RunnerOptions(pacing=NoPacing())


# ============================================================================
# Sample Data Factories
# ============================================================================

BOARD_MEETING_START = datetime(2025, 3, 1, 18, 0)


@pytest.fixture
def sample_event(test_db_session):
    """
    Factory inserting an Event row directly (bypassing services).

    Used to set up legacy or inconsistent states. Pass version=None to get
    a legacy row without a version counter.
    """
    def _create(
        title="Board Meeting",
        start_at=BOARD_MEETING_START,
        end_at=None,
        status="draft",
        creation_source="form",
        with_history=True,
        **kwargs
    ):
        legacy_version = "version" in kwargs and kwargs["version"] is None
        if legacy_version:
            del kwargs["version"]

        if end_at is None and start_at is not None:
            end_at = start_at + timedelta(hours=1)

        if with_history and "status_history" not in kwargs:
            kwargs["status_history"] = [
                history_entry(status, start_at or datetime(2025, 1, 1), "creator@example.org")
            ]

        event = Event(
            title=title,
            start_at=start_at,
            end_at=end_at,
            status=status,
            creation_source=creation_source,
            **kwargs
        )
        test_db_session.add(event)
        test_db_session.commit()

        if legacy_version:
            test_db_session.execute(
                update(Event).where(Event.id == event.id).values(version=None)
            )
            test_db_session.commit()

        test_db_session.refresh(event)
        return event

    return _create


@pytest.fixture
def sample_location(test_db_session):
    """Factory for creating sample Location models."""
    def _create(name="Room 402", **kwargs):
        location = Location(name=name, **kwargs)
        test_db_session.add(location)
        test_db_session.commit()
        test_db_session.refresh(location)
        return location

    return _create


@pytest.fixture
def sample_user(test_db_session):
    """Factory for creating sample User models."""
    def _create(email="approver@example.org", role="approver", **kwargs):
        user = User(email=email, role=role, notification_preferences={}, **kwargs)
        test_db_session.add(user)
        test_db_session.commit()
        test_db_session.refresh(user)
        return user

    return _create


# ============================================================================
# API Fixtures
# ============================================================================

@pytest.fixture
def test_client(test_db_session, reconcile_config):
    """Create a test client for FastAPI application."""
    from fastapi.testclient import TestClient
    from backend.src.main import app
    from backend.src.api.events import get_config
    from backend.src.db.database import get_db

    # Override dependencies
    def get_test_db():
        try:
            yield test_db_session
        finally:
            pass

    app.dependency_overrides[get_db] = get_test_db
    app.dependency_overrides[get_config] = lambda: reconcile_config

    with TestClient(app) as client:
        yield client

    # Clear overrides
    app.dependency_overrides.clear()
