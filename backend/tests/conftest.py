"""
Shared pytest fixtures for backend tests.
Uses a temporary SQLite file per test for isolation.
"""
import pytest
import sqlite3
import sys
import os

# Add backend to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import DocumentStore


@pytest.fixture
def test_db(tmp_path):
    """
    Create an isolated test database for each test.
    Uses a temp file (not :memory:) because the store opens new connections per operation.
    """
    db_path = str(tmp_path / "test.db")

    # Create tables directly (skip alembic for tests)
    conn = sqlite3.connect(db_path)
    conn.executescript("""
        CREATE TABLE documents (
            collection TEXT NOT NULL,
            id TEXT NOT NULL,
            data TEXT NOT NULL DEFAULT '{}',
            PRIMARY KEY (collection, id)
        );
    """)
    conn.commit()
    conn.close()

    yield db_path


@pytest.fixture
def store(test_db):
    return DocumentStore(test_db)


class RecordingDispatcher:
    """Notification dispatcher that records messages instead of sending them."""

    def __init__(self, fail_tokens=()):
        self.sent = []
        self.fail_tokens = set(fail_tokens)
        self.closed = False

    def send(self, token, message):
        if token in self.fail_tokens:
            raise RuntimeError(f"push rejected for {token}")
        self.sent.append((token, message))

    def close(self):
        self.closed = True


JOB_SECRET = "test-job-secret"


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def app_client(store, dispatcher, monkeypatch):
    """
    Create a test client for the FastAPI app.
    Skips alembic migrations and the background scheduler; the app's
    dispatcher is the recording one.
    """
    from fastapi.testclient import TestClient
    import config
    import main

    monkeypatch.setattr(main, "init_db", lambda: None)
    monkeypatch.setattr(main, "start_scheduler", lambda dispatcher: None)
    monkeypatch.setattr(main, "get_dispatcher", lambda: dispatcher)
    monkeypatch.setattr(config, "JOB_SECRET", JOB_SECRET)
    main.app.dependency_overrides[main.get_store] = lambda: store

    with TestClient(main.app) as client:
        yield client

    main.app.dependency_overrides.clear()
