import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest

from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import settings
from app.core.api_rate_limiter import limiter
from app.core.auth import verify_credentials
from app.core.bulk_sync import BulkJobRunner
from app.core.issue_sync import IssueSyncEngine
from app.core.kv_store import SqlKeyValueStore
from app.core.rate_limiter import RetryExecutor
from app.core.services import get_kv_store, get_tracker_factory
from app.core.sync_config import ConfigStore, SyncConfig
from app.models import Base
from tests.tracker_fakes import FakeTracker, FakeTrackerFactory


LOCAL_URL = "https://local-org.atlassian.net"
REMOTE_URL = "https://remote-org.atlassian.net"


@pytest.fixture(autouse=True)
def fast_timings(monkeypatch):
    """No real sleeps in retries, throttles or pending link retries."""
    monkeypatch.setattr(settings, "retry_base_delay_ms", 0)
    monkeypatch.setattr(settings, "rate_limit_retry_delay_ms", 0)
    monkeypatch.setattr(settings, "scheduled_sync_delay_ms", 0)
    monkeypatch.setattr(settings, "pending_link_retry_delay_ms", 0)
    monkeypatch.setattr(settings, "bulk_sync_delay_ms", 0)
    monkeypatch.setattr(settings, "local_org_name", "")


@pytest.fixture(autouse=True)
def reset_rate_limits():
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture()
async def engine(tmp_path):
    db_file = tmp_path / "test.db"
    eng = create_async_engine(f"sqlite+aiosqlite:///{db_file}", future=True)
    try:
        yield eng
    finally:
        await eng.dispose()


@pytest.fixture()
async def session_maker(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture()
async def kv_store(engine, session_maker: async_sessionmaker[AsyncSession]) -> SqlKeyValueStore:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    return SqlKeyValueStore(session_maker)


@pytest.fixture()
def sync_config() -> SyncConfig:
    return SyncConfig(
        remote_url=REMOTE_URL,
        remote_email="sync@example.com",
        remote_api_token="remote-token",
        remote_project_key="REM",
        allowed_projects=["LOC"],
        webhook_secret="s3cret",
    )


@pytest.fixture()
async def configured_store(kv_store, sync_config) -> SqlKeyValueStore:
    """Key-value store holding a complete remote connection."""
    await ConfigStore(kv_store).save_sync_config(sync_config)
    return kv_store


@pytest.fixture()
def local_tracker() -> FakeTracker:
    return FakeTracker(LOCAL_URL)


@pytest.fixture()
def remote_tracker() -> FakeTracker:
    return FakeTracker(REMOTE_URL)


@pytest.fixture()
def tracker_factory(local_tracker, remote_tracker) -> FakeTrackerFactory:
    return FakeTrackerFactory(local_tracker, remote_tracker)


@pytest.fixture()
def fast_retry() -> RetryExecutor:
    return RetryExecutor(base_delay_ms=0, rate_limit_delay_ms=0, max_rate_limit_waits=2)


@pytest.fixture()
async def sync_engine(configured_store, local_tracker, remote_tracker, fast_retry) -> IssueSyncEngine:
    return await IssueSyncEngine.from_store(local_tracker, remote_tracker, configured_store, retry=fast_retry)


@pytest.fixture()
def bulk_runner(kv_store, tracker_factory) -> BulkJobRunner:
    return BulkJobRunner(kv=kv_store, factory=tracker_factory, delay_ms=0)


@pytest.fixture()
async def app(kv_store, tracker_factory, bulk_runner):
    """
    FastAPI app with:
    - key-value store dependency overridden to use a per-test SQLite DB
    - tracker clients replaced by in-memory fakes
    - auth dependency overridden to bypass HTTP basic
    """
    from app.main import app as fastapi_app
    from app.api.bulk import get_bulk_runner

    fastapi_app.dependency_overrides[get_kv_store] = lambda: kv_store
    fastapi_app.dependency_overrides[get_tracker_factory] = lambda: tracker_factory
    fastapi_app.dependency_overrides[get_bulk_runner] = lambda: bulk_runner
    fastapi_app.dependency_overrides[verify_credentials] = lambda: "test-user"

    try:
        yield fastapi_app
    finally:
        await bulk_runner.wait()
        fastapi_app.dependency_overrides.clear()


@pytest.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
