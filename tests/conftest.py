"""
Pytest fixtures for ReelWatch tests.
Provides a test database, job factories, a fake status client and test clients.

Uses a throwaway SQLite file so the suite runs without a PostgreSQL server.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import sqlalchemy as sa
from databases import Database

# Set up the test environment BEFORE importing config
_test_temp_dir = tempfile.mkdtemp()
os.environ["REELWATCH_TEST_MODE"] = "1"
os.environ["REELWATCH_DATABASE_URL"] = f"sqlite:///{Path(_test_temp_dir) / 'reelwatch_test.db'}"
os.environ["REELWATCH_RATE_LIMIT_ENABLED"] = "false"
os.environ["REELWATCH_NOTIFY_WEBHOOK_URL"] = ""
os.environ["REELWATCH_REDIS_URL"] = ""

from api.database import configure_database, jobs, metadata  # noqa: E402
from api.enums import JobState  # noqa: E402
from api.job_state import StatusUpdate  # noqa: E402
from api.job_store import JobStore  # noqa: E402
from worker.notifier import reset_metrics  # noqa: E402

TEST_DATABASE_URL = os.environ["REELWATCH_DATABASE_URL"]

TEST_ADMIN_SECRET = "test-admin-secret-12345"
TEST_WEBHOOK_SECRET = "test-webhook-secret-67890"


def _reset_tables(db_url: str) -> None:
    """Drop and recreate all tables in the test database."""
    engine = sa.create_engine(db_url)
    metadata.drop_all(engine)
    metadata.create_all(engine)
    engine.dispose()


def insert_job_sync(
    title: str = "Test Video",
    external_id: Optional[str] = "ext-1",
    state: JobState = JobState.QUEUED,
    progress_percent: int = 0,
    updated_minutes_ago: float = 0,
    **values,
) -> int:
    """
    Insert a job row directly (for HTTP tests, where the app owns the async connection).

    Returns:
        The new job id
    """
    now = datetime.now(timezone.utc)
    updated_at = now - timedelta(minutes=updated_minutes_ago)
    engine = sa.create_engine(TEST_DATABASE_URL)
    try:
        with engine.begin() as conn:
            result = conn.execute(
                jobs.insert().values(
                    title=title,
                    external_id=external_id,
                    state=state.value,
                    progress_percent=progress_percent,
                    reopen_count=values.pop("reopen_count", 0),
                    version=values.pop("version", 1),
                    created_at=values.pop("created_at", updated_at),
                    updated_at=updated_at,
                    **values,
                )
            )
            return result.inserted_primary_key[0]
    finally:
        engine.dispose()


@pytest.fixture(autouse=True)
def _reset_notification_metrics():
    reset_metrics()
    yield


@pytest.fixture(scope="function")
def test_db_url() -> str:
    """Fresh tables for each test."""
    _reset_tables(TEST_DATABASE_URL)
    yield TEST_DATABASE_URL


@pytest.fixture(scope="function")
async def test_database(test_db_url: str) -> AsyncGenerator[Database, None]:
    """A connection to the test database owned by the test's event loop."""
    database = Database(test_db_url)
    await database.connect()
    await configure_database(database)

    yield database

    await database.disconnect()


@pytest.fixture(scope="function")
def store(test_database: Database) -> JobStore:
    return JobStore(db=test_database)


@pytest.fixture(scope="function")
def make_job(store: JobStore, test_database: Database):
    """
    Factory for jobs in any state.

    Rows are written directly so the factory can place a job in a state
    (or at an age) the state machine would not allow reaching in one step.
    """

    async def _make_job(
        title: str = "Test Video",
        external_id: Optional[str] = "ext-1",
        state: JobState = JobState.QUEUED,
        progress_percent: int = 0,
        updated_minutes_ago: float = 0,
        **values,
    ):
        job = await store.create_job(title, external_id=external_id)
        now = datetime.now(timezone.utc)
        await test_database.execute(
            jobs.update()
            .where(jobs.c.id == job.id)
            .values(
                state=state.value,
                progress_percent=progress_percent,
                updated_at=now - timedelta(minutes=updated_minutes_ago),
                **values,
            )
        )
        return await store.get_job(job.id)

    return _make_job


@pytest.fixture(scope="function")
def fake_client():
    """Stand-in for ExternalStatusClient; set fetch_status.return_value / side_effect per test."""
    client = MagicMock()
    client.fetch_status = AsyncMock(return_value=StatusUpdate(state=JobState.IN_PROGRESS, progress_percent=10))
    client.close = AsyncMock()
    return client


# ============================================================================
# Test Client Fixtures
# ============================================================================


@pytest.fixture(scope="function")
def admin_headers() -> dict:
    return {"X-Admin-Secret": TEST_ADMIN_SECRET}


@pytest.fixture(scope="function")
def admin_client(test_db_url: str, fake_client, monkeypatch):
    """
    Test client for the admin API.

    The app manages its own database connection through its lifespan; the
    poller and retry engine talk to `fake_client` instead of the network.
    """
    from fastapi.testclient import TestClient

    import api.admin as admin

    monkeypatch.setattr(admin, "ADMIN_API_SECRET", TEST_ADMIN_SECRET)
    monkeypatch.setattr(admin.poller, "client", fake_client)
    monkeypatch.setattr(admin.poller, "request_delay", 0)
    monkeypatch.setattr(admin.retry_engine, "client", fake_client)
    monkeypatch.setattr(admin.retry_engine, "sweep_delay", 0)

    with TestClient(admin.app, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture(scope="function")
def webhook_client(test_db_url: str, monkeypatch):
    """Test client for the webhook receiver, with a signing secret configured."""
    from fastapi.testclient import TestClient

    import api.webhook_ingest as webhook_ingest
    from api.webhooks import app

    monkeypatch.setattr(webhook_ingest, "TRANSCODER_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture(scope="function")
def seed_job(test_db_url: str):
    """Synchronous job factory for tests that go through a TestClient."""
    return insert_job_sync
