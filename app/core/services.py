"""
Wiring of tracker clients, stores and engines for one unit of work.

Routes, the scheduler and the bulk runner all obtain their engines here so
that each invocation reads the configuration currently stored.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from app.config import settings
from app.core.inbound_sync import InboundSyncHandler
from app.core.issue_sync import IssueSyncEngine
from app.core.kv_store import SqlKeyValueStore
from app.core.stats import StatsStore
from app.core.sync_config import ConfigStore, SyncConfig
from app.core.tracker_client import TrackerClient
from app.core.translation import USER_TABLE
from app.database import AsyncSessionLocal


logger = logging.getLogger(__name__)


class TrackerFactory:
    """Builds the HTTP clients for the local and remote trackers."""

    def local(self, stats: Optional[StatsStore] = None) -> TrackerClient:
        return TrackerClient(
            settings.local_url,
            settings.local_email,
            settings.local_api_token,
            usage_recorder=stats.record_api_call if stats else None,
        )

    def remote(self, config: SyncConfig, stats: Optional[StatsStore] = None) -> TrackerClient:
        return TrackerClient(
            config.remote_url,
            config.remote_email,
            config.remote_api_token,
            usage_recorder=stats.record_api_call if stats else None,
        )


default_kv_store = SqlKeyValueStore(AsyncSessionLocal)
default_tracker_factory = TrackerFactory()


def get_kv_store() -> SqlKeyValueStore:
    """Dependency for the application key-value store."""
    return default_kv_store


def get_tracker_factory() -> TrackerFactory:
    """Dependency for the tracker client factory."""
    return default_tracker_factory


@asynccontextmanager
async def open_sync_engine(
    kv: SqlKeyValueStore,
    factory: TrackerFactory,
) -> AsyncIterator[IssueSyncEngine]:
    """Yield an engine over freshly built clients and close them afterwards."""
    stats = StatsStore(kv)
    config = await ConfigStore(kv).get_sync_config()
    local = factory.local(stats)
    remote = factory.remote(config, stats)
    try:
        yield await IssueSyncEngine.from_store(local, remote, kv)
    finally:
        await local.close()
        await remote.close()


@asynccontextmanager
async def open_inbound_handler(
    kv: SqlKeyValueStore,
    factory: TrackerFactory,
) -> AsyncIterator[InboundSyncHandler]:
    """Yield an inbound handler over a fresh local client."""
    store = ConfigStore(kv)
    config = await store.get_sync_config()
    local = factory.local(StatsStore(kv))
    try:
        yield InboundSyncHandler(local, kv, config, user_table=await store.get_table(USER_TABLE))
    finally:
        await local.close()
