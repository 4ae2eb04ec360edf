"""
Test database wiring.

Settings are read once per process, so the environment is prepared before any
truesight module is imported. Every test gets a fresh SQLite schema.
"""
import os
import tempfile

_TEST_DB_DIR = tempfile.mkdtemp(prefix="truesight-tests-")

os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DB_DIR, 'truesight.db')}"
os.environ["ENV"] = "test"
os.environ["API_AUTH_KEY"] = "test-instance-key"
os.environ["KEY_SOURCE_ENCRYPTION_KEY"] = "test-key-source-secret"
os.environ["KEY_SOURCE_KEY_ID"] = "test"
os.environ["OPENAI_API_KEY"] = ""

import pytest  # noqa: E402

import truesight.models  # noqa: E402,F401  (registers tables)
from truesight.core.db import Base, SessionLocal, engine  # noqa: E402

from tests.fixtures.investigation_fixtures import EnqueueRecorder, HeartbeatRecorder  # noqa: E402


@pytest.fixture(autouse=True)
def _schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def enqueue():
    return EnqueueRecorder()


@pytest.fixture
def heartbeats(monkeypatch):
    """Replace the executor's heartbeat thread with a recorder."""
    from truesight.services import orchestrator

    recorder = HeartbeatRecorder()
    monkeypatch.setattr(orchestrator, "RunHeartbeat", recorder.factory)
    return recorder
