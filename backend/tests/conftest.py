"""Pytest fixtures for the matching service.

Provides reusable test fixtures for:
- SQLite in-memory database with all tables created
- Manual clock shared by the orchestrator and the timeout scheduler
- In-memory event bus, mocked broadcast gateway and agent directory
- A fully wired orchestrator (inline timer callbacks, no background threads)

Usage:
    def test_accept(orchestrator, bus):
        orchestrator.start_matching(make_request())
        assert bus.messages("agents.matched")
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set environment variables BEFORE any imports to ensure they take effect
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("BROADCAST_ENABLED", "false")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("LOCK_BACKEND", "inprocess")

backend_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(backend_src))
sys.path.insert(0, str(Path(__file__).parent))

import pytest
from unittest.mock import Mock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import create_all
from events.bus import InMemoryEventBus
from events.publisher import EventPublisher
from matching.admin_override import AdminOverrideHandler
from matching.candidates import InMemoryCandidateRepository
from matching.locks import InProcessRequestLocks
from matching.orchestrator import MatchingConfig, MatchingOrchestrator
from matching.peak_season import PeakSeasonPolicy
from matching.scorer import AgentScorer
from scheduler.heap_scheduler import HeapTimeoutScheduler

from fixtures.agents import goa_directory


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# Early May: outside every default peak window
OFF_PEAK_START = datetime(2026, 5, 4, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(OFF_PEAK_START)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def broadcaster() -> Mock:
    return Mock()


@pytest.fixture
def sleep() -> Mock:
    return Mock()


@pytest.fixture
def publisher(bus, broadcaster, sleep) -> EventPublisher:
    return EventPublisher(bus, broadcaster=broadcaster, max_retries=2, retry_delay_base=0.5, sleep=sleep)


@pytest.fixture
def directory() -> InMemoryCandidateRepository:
    return goa_directory()


@pytest.fixture
def scheduler(clock) -> HeapTimeoutScheduler:
    return HeapTimeoutScheduler(clock=clock, max_workers=0)


@pytest.fixture
def make_orchestrator(session_factory, directory, scheduler, publisher, clock, sleep):
    """Factory for orchestrators with custom policy values."""

    def factory(candidates=None, peak_policy=None, event_publisher=None, locks=None, **config) -> MatchingOrchestrator:
        values = {"min_agents": 3, "timeout_hours": 24, "max_attempts": 3}
        values.update(config)
        return MatchingOrchestrator(
            session_factory=session_factory,
            candidates=candidates or directory,
            scorer=AgentScorer(),
            peak_policy=peak_policy or PeakSeasonPolicy(),
            scheduler=scheduler,
            publisher=event_publisher or publisher,
            locks=locks or InProcessRequestLocks(timeout_seconds=1.0),
            config=MatchingConfig(**values),
            clock=clock,
            sleep=sleep,
        )

    return factory


@pytest.fixture
def orchestrator(make_orchestrator) -> MatchingOrchestrator:
    return make_orchestrator()


@pytest.fixture
def admin_handler(orchestrator) -> AdminOverrideHandler:
    return AdminOverrideHandler(orchestrator, reason_min_length=10)


@pytest.fixture
def container(session_factory, bus, directory, scheduler, broadcaster, clock, sleep):
    """Service container wired to test adapters, as the API would build it."""
    from config import Settings
    from dependencies import build_container

    return build_container(
        Settings(MATCHING_MIN_AGENTS=3),
        session_factory=session_factory,
        bus=bus,
        candidates=directory,
        scheduler=scheduler,
        broadcaster=broadcaster,
        clock=clock,
        sleep=sleep,
    )


@pytest.fixture
def client(container, session_factory):
    """Test client over the real app with dependencies pointed at the test container.

    The lifespan is not run, so no background timer thread starts.
    """
    from fastapi.testclient import TestClient

    from database import get_db
    from dependencies import get_admin_handler, get_container, get_orchestrator
    from main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_container] = lambda: container
    app.dependency_overrides[get_orchestrator] = lambda: container.orchestrator
    app.dependency_overrides[get_admin_handler] = lambda: container.admin_handler

    yield TestClient(app)

    app.dependency_overrides.clear()
