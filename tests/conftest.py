"""Root-level pytest fixtures for all tests.

Provides shared fixtures:
- Database fixtures (file-based SQLite so separate sessions see each
  other's commits, as worker sessions do in production)
- Fake language model, push transport and task queue
- A fully wired PipelineServices built on the fakes
- A TestClient for the API on top of them
"""

import os
from collections.abc import Generator
from datetime import datetime

# Keep the module-level engine off the user's data directory
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from journalcoach.api.main import create_app
from journalcoach.cli.config import (
    CoachConfig,
    CronConfig,
    PushConfig,
    QueueConfig,
)
from journalcoach.db.connection import build_engine, get_db
from journalcoach.db.models import Base, PushSubscription
from journalcoach.services.message_store import MessageStore, SubmittedTurn
from journalcoach.services.pipeline import PipelineServices, build_services
from journalcoach.services.push_dispatcher import PushDispatcher
from tests.helpers import FakeLanguageModel, FakeQueue, RecordingTransport

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def engine(tmp_path) -> Generator[Engine, None, None]:
    """File-based SQLite engine with all tables created."""
    db_engine = build_engine(f"sqlite:///{tmp_path / 'coach.db'}")
    Base.metadata.create_all(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """A session for arranging and asserting on state."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# ============================================================================
# Pipeline Fixtures
# ============================================================================


@pytest.fixture
def coach_config() -> CoachConfig:
    return CoachConfig(
        push=PushConfig(vapid_public_key="test-public", vapid_private_key="test-private"),
        queue=QueueConfig(
            token="qstash-token",
            callback_base_url="https://coach.example.com",
            current_signing_key="sig-current",
            next_signing_key="sig-next",
        ),
        cron=CronConfig(secret="cron-secret"),
    )


@pytest.fixture
def fake_model() -> FakeLanguageModel:
    return FakeLanguageModel()


@pytest.fixture
def push_transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def fake_queue() -> FakeQueue:
    return FakeQueue()


@pytest.fixture
def services(
    coach_config: CoachConfig,
    session_factory: sessionmaker,
    fake_model: FakeLanguageModel,
    push_transport: RecordingTransport,
    fake_queue: FakeQueue,
) -> PipelineServices:
    dispatcher = PushDispatcher(coach_config.push, session_factory, transport=push_transport)
    return build_services(
        coach_config,
        session_factory,
        language_model=fake_model,
        dispatcher=dispatcher,
        queue=fake_queue,
    )


# ============================================================================
# Data Helpers
# ============================================================================


def add_subscription(
    db: Session, user_id: str = USER_ID, endpoint: str = "https://push.example/1"
) -> PushSubscription:
    subscription = PushSubscription(
        user_id=user_id, endpoint=endpoint, p256dh="p256dh-key", auth="auth-key"
    )
    db.add(subscription)
    db.commit()
    return subscription


def submit(
    db: Session,
    text: str = "I had a rough day at work.",
    user_id: str = USER_ID,
    now: datetime | None = None,
    **kwargs,
) -> SubmittedTurn:
    return MessageStore(db).submit_turn(user_id, text, now=now, **kwargs)


# ============================================================================
# API Fixtures
# ============================================================================


@pytest.fixture
def client(services: PipelineServices, session_factory: sessionmaker) -> Generator[TestClient, None, None]:
    """TestClient on an app wired to the test database and fakes.

    Requests carry X-User-Id for USER_ID unless a test overrides it.
    """
    app = create_app(services=services)

    def _override_get_db() -> Generator[Session, None, None]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app, headers={"X-User-Id": USER_ID}) as test_client:
        yield test_client
    app.dependency_overrides.clear()
