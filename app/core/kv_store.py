"""
SQL-backed key-value store.

All cross-invocation state (mappings, sync flags, translation tables,
statistics) goes through this interface. Each operation runs in its own
session and transaction, which gives per-key atomicity and nothing more:
there are no multi-key transactions.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models import KeyValueEntry


logger = logging.getLogger(__name__)


class SqlKeyValueStore:
    """Key-value storage with optional per-entry TTL."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def get(self, key: str, default: Any = None) -> Any:
        """Return the stored value, or ``default`` when absent or expired."""
        async with self.session_maker() as db:
            entry = await db.get(KeyValueEntry, key)
            if entry is None:
                return default
            if entry.expires_at is not None and entry.expires_at <= datetime.utcnow():
                await db.delete(entry)
                await db.commit()
                return default
            return entry.value

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        """
        Store ``value`` under ``key``.

        Args:
            key: Storage key
            value: Any JSON-serializable value
            ttl_seconds: When given, the entry reads as absent after this many seconds
        """
        expires_at = None
        if ttl_seconds is not None:
            expires_at = datetime.utcnow() + timedelta(seconds=ttl_seconds)

        async with self.session_maker() as db:
            entry = await db.get(KeyValueEntry, key)
            if entry is None:
                db.add(KeyValueEntry(key=key, value=value, expires_at=expires_at))
            else:
                entry.value = value
                entry.expires_at = expires_at
                entry.updated_at = datetime.utcnow()
            await db.commit()

    async def delete(self, key: str) -> bool:
        """Delete ``key``. Returns False when nothing was stored."""
        async with self.session_maker() as db:
            result = await db.execute(delete(KeyValueEntry).where(KeyValueEntry.key == key))
            await db.commit()
            return bool(result.rowcount)

    async def keys_with_prefix(self, prefix: str) -> List[str]:
        """List live keys starting with ``prefix``, in key order."""
        now = datetime.utcnow()
        async with self.session_maker() as db:
            result = await db.execute(
                select(KeyValueEntry.key)
                .where(
                    KeyValueEntry.key.startswith(prefix, autoescape=True),
                    (KeyValueEntry.expires_at.is_(None)) | (KeyValueEntry.expires_at > now),
                )
                .order_by(KeyValueEntry.key)
            )
            return list(result.scalars().all())
