from datetime import datetime
from typing import Any, Optional
from sqlalchemy import String, DateTime, JSON, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class KeyValueEntry(Base):
    """
    A single key-value record.

    Every mapping, flag, translation table and statistics record lives in
    this table. Entries with an ``expires_at`` in the past are treated as
    absent.
    """
    __tablename__ = "kv_entries"
    __table_args__ = (
        Index('idx_kv_expires_at', 'expires_at'),
    )

    key: Mapped[str] = mapped_column(String(500), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
