"""
Loop prevention for propagated changes.

Three independent signals suppress echoes:

- a short-lived "syncing" flag set before every remote write,
- a permanent marker on local issues that the remote side created,
- a create/update race window for issues whose create is still in flight.

All checks fail toward "skip": a storage error while checking delays a sync
instead of risking a duplicate write.
"""

import logging
import time
from typing import Optional

from app.config import settings
from app.core.kv_store import SqlKeyValueStore
from app.core.mapping_store import MappingStore, SYNCING_PREFIX


logger = logging.getLogger(__name__)

SKIP_SYNCING = "Issue is currently being synced by another process"
SKIP_CREATED_BY_COUNTERPART = "Issue was created by remote sync"
SKIP_RECENT_CREATION = "Issue was just created, create still in flight"
SKIP_GUARD_ERROR = "Loop guard check failed"


def now_ms() -> int:
    return int(time.time() * 1000)


class LoopGuard:
    """Combines the sync flag, origin marker and creation race checks."""

    def __init__(
        self,
        kv: SqlKeyValueStore,
        mappings: MappingStore,
        ttl_seconds: Optional[int] = None,
        creation_window_ms: Optional[int] = None,
    ):
        self.kv = kv
        self.mappings = mappings
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.sync_flag_ttl_seconds
        self.creation_window_ms = (
            creation_window_ms if creation_window_ms is not None else settings.recent_creation_window_ms
        )

    async def mark_syncing(self, issue_key: str) -> None:
        """Flag ``issue_key`` as having a remote write in flight."""
        await self.kv.set(f"{SYNCING_PREFIX}{issue_key}", True, ttl_seconds=self.ttl_seconds)

    async def is_syncing(self, issue_key: str) -> bool:
        return bool(await self.kv.get(f"{SYNCING_PREFIX}{issue_key}"))

    async def was_created_by_counterpart(self, issue_key: str) -> bool:
        return await self.mappings.get_counterpart_origin(issue_key) is not None

    async def mark_created(self, issue_key: str) -> None:
        await self.mappings.store_created_timestamp(issue_key, now_ms())

    async def is_recent_creation_race(self, issue_key: str) -> bool:
        """True when an update arrives while the issue's create is still in flight."""
        created_at = await self.mappings.get_created_timestamp(issue_key)
        if created_at is None:
            return False
        if now_ms() - int(created_at) >= self.creation_window_ms:
            return False
        return await self.mappings.get_remote_key(issue_key) is None

    async def should_skip(self, issue_key: str, event_type: str) -> Optional[str]:
        """
        Decide whether a locally observed event is an echo.

        Args:
            issue_key: Local issue key the event refers to
            event_type: Tracker event name (e.g. ``jira:issue_updated``)

        Returns:
            A skip reason, or None when the event should be processed
        """
        try:
            if await self.is_syncing(issue_key):
                return SKIP_SYNCING
            if await self.was_created_by_counterpart(issue_key):
                return SKIP_CREATED_BY_COUNTERPART
            if event_type.endswith("updated") and await self.is_recent_creation_race(issue_key):
                return SKIP_RECENT_CREATION
        except Exception as e:
            logger.error(f"Loop guard check failed for {issue_key}: {e}", exc_info=True)
            return SKIP_GUARD_ERROR
        return None
