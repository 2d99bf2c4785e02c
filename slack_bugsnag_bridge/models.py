"""SQLAlchemy models backing the key-value store."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, Integer, LargeBinary, String
from sqlalchemy.orm import Mapped, mapped_column

from slack_bugsnag_bridge.db import Base


class KVEntry(Base):
    """A namespaced key holding an opaque byte blob."""

    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC)
    )


class StoreError(Exception):
    """Raised when the underlying storage cannot be read or written."""


class OptimisticLockError(Exception):
    """Raised when a concurrent update is detected."""
