"""Pytest fixtures for API and service tests."""

import sys
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from core.config import Settings
from db.session import build_engine, build_session_maker, create_db_and_tables
from helpers import FakeMangaDexClient
from services.chapter_history import ChapterHistoryStore
from services.container import ServiceContainer
from services.download_engine import DownloadEngine
from services.download_queue import DownloadQueue
from services.process_runner import ProcessRunner
from services.rate_limiter import RateLimiter

FAKE_DOWNLOADER = Path(__file__).parent / "fake_downloader.py"


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with overrides."""
    library = tmp_path / "library"
    library.mkdir()
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        debug=True,
        environment="development",
        data_dir=tmp_path / "data",
        library_dir=library,
        downloader_command=f'"{sys.executable}" "{FAKE_DOWNLOADER}"',
        scheduler_tick_seconds=0.05,
        retry_check_seconds=0.05,
        retry_base_seconds=0,
        rate_limit_per_second=1000,
        rate_limit_per_minute=10000,
        follow_enabled=False,
        ws_log_buffer_ms=10,
    )


@pytest.fixture
async def test_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Create test database engine backed by a temporary SQLite file."""
    engine = build_engine(test_settings.database_url)
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> Any:
    return build_session_maker(test_engine)


@pytest.fixture
async def test_session(session_factory: Any) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def history(session_factory: Any) -> ChapterHistoryStore:
    return ChapterHistoryStore(session_factory)


@pytest.fixture
def queue(session_factory: Any, test_settings: Settings) -> DownloadQueue:
    return DownloadQueue(session_factory, test_settings)


@pytest.fixture
def fake_api() -> FakeMangaDexClient:
    return FakeMangaDexClient()


@pytest.fixture
def rate_limiter(test_settings: Settings) -> RateLimiter:
    return RateLimiter(test_settings.rate_limit_per_second, test_settings.rate_limit_per_minute)


@pytest.fixture
def runner(test_settings: Settings) -> ProcessRunner:
    return ProcessRunner(test_settings)


@pytest.fixture
async def engine(
    queue: DownloadQueue,
    history: ChapterHistoryStore,
    runner: ProcessRunner,
    fake_api: FakeMangaDexClient,
    rate_limiter: RateLimiter,
    test_settings: Settings,
) -> AsyncGenerator[DownloadEngine, None]:
    engine = DownloadEngine(queue, history, runner, fake_api, rate_limiter, test_settings)  # type: ignore[arg-type]
    yield engine
    await engine.shutdown(timeout=5.0)


@pytest.fixture
async def services(
    session_factory: Any,
    test_settings: Settings,
    fake_api: FakeMangaDexClient,
) -> AsyncGenerator[ServiceContainer, None]:
    container = ServiceContainer(session_factory, test_settings, api_client=fake_api)  # type: ignore[arg-type]
    yield container
    await container.shutdown(timeout=5.0)


@pytest.fixture
async def client(services: ServiceContainer) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client bound to the test service container."""
    from main import app

    app.state.services = services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
