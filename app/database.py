import logging
from datetime import datetime
from pathlib import Path

from sqlalchemy import delete
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from app.config import settings
from app.models import Base, KeyValueEntry


logger = logging.getLogger(__name__)


def _ensure_sqlite_directory(database_url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    url = make_url(database_url)
    if not url.drivername.startswith("sqlite"):
        return
    database = url.database
    if not database or database == ":memory:":
        return
    Path(database).parent.mkdir(parents=True, exist_ok=True)


_ensure_sqlite_directory(settings.database_url)

engine = create_async_engine(
    settings.database_url,
    echo=settings.log_level == "DEBUG",
    future=True
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


async def init_db():
    """Initialize the database, creating all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    purged = await purge_expired_entries()
    if purged:
        logger.info(f"Purged {purged} expired key-value entries at startup")


async def purge_expired_entries(session_maker: async_sessionmaker[AsyncSession] = AsyncSessionLocal) -> int:
    """Delete every key-value entry whose TTL has elapsed."""
    async with session_maker() as db:
        result = await db.execute(
            delete(KeyValueEntry).where(
                KeyValueEntry.expires_at.is_not(None),
                KeyValueEntry.expires_at <= datetime.utcnow(),
            )
        )
        await db.commit()
        return result.rowcount or 0

