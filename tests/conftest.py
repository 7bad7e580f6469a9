"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator, Callable
from pathlib import Path

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from renderqueue.api.main import create_app
from renderqueue.config import Settings
from renderqueue.db.connection import Database
from renderqueue.db.migrations import run_migrations

TEST_API_TOKEN = "test-token"

# Keep tests offline: no OTLP exporter, no instrumentation. Set before any
# call to get_settings().
os.environ.setdefault("TRACING_ENABLED", "false")


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings backed by a temporary SQLite file."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}",
        api_auth_token=TEST_API_TOKEN,
        worker_id="test-worker",
        worker_poll_interval_seconds=0.01,
        worker_max_retries=5,
        worker_progress_interval_seconds=0.01,
        automatic1111_api_base="http://a1111.test",
        civitai_endpoint="https://civitai.com/api/v1",
        civitai_token="civitai-token",
        autotag_endpoint="http://tagger.test/evaluate",
        models_dir=str(tmp_path / "models"),
        loras_dir=str(tmp_path / "loras"),
        tracing_enabled=False,
        log_level="INFO",
        log_format="console",
    )


@pytest_asyncio.fixture
async def database(test_settings: Settings) -> AsyncGenerator[Database]:
    """Create a migrated database for one test."""
    database = Database(settings=test_settings)
    report = await run_migrations(database)
    assert report.ok, report.failed

    yield database

    await database.dispose()


@pytest_asyncio.fixture
async def db_session(database: Database) -> AsyncGenerator[AsyncSession]:
    """Create a database session for tests."""
    async with database.session_factory() as session:
        yield session

        # Rollback any uncommitted changes
        await session.rollback()


@pytest.fixture
def mock_http() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    """Build an httpx client whose requests are answered by a handler function."""
    def factory(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return factory


@pytest.fixture
def app(database: Database, test_settings: Settings) -> FastAPI:
    """Create a FastAPI app serving the test database."""
    return create_app(database=database, settings=test_settings)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def auth_headers() -> dict[str, str]:
    """Authentication headers matching the test token."""
    return {"Authorization": f"Bearer {TEST_API_TOKEN}"}
