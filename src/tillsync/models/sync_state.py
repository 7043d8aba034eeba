"""Device-local bookkeeping models. These tables are never synchronized."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from tillsync.db.base import Base
from tillsync.db.time import UTCDateTime


class SyncCheckpoint(Base):
    """High-water marks of what has been pushed and pulled for one table."""

    __tablename__ = "sync_state"

    table_name: Mapped[str] = mapped_column("tableName", Text, primary_key=True)
    last_push_at: Mapped[datetime | None] = mapped_column("lastPushAt", UTCDateTime, nullable=True)
    last_pull_at: Mapped[datetime | None] = mapped_column("lastPullAt", UTCDateTime, nullable=True)


class LocalCounter(Base):
    """Last number handed out for a (scope, period, sequence) key."""

    __tablename__ = "local_counters"

    scope: Mapped[str] = mapped_column(Text, primary_key=True)
    period_key: Mapped[str] = mapped_column("periodKey", Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime | None] = mapped_column("updatedAt", UTCDateTime, nullable=True)
