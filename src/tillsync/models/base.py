"""Columns shared by every synchronized business table."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Text
from sqlalchemy.orm import Mapped, mapped_column

from tillsync.db.time import UTCDateTime


def new_id() -> str:
    """Return a fresh client-generated row id."""
    return str(uuid.uuid4())


class SyncableMixin:
    """Identity, partition and change-tracking columns.

    ``created_at``, ``updated_at`` and ``business_unit_id`` are stamped by the
    transaction coordinator at flush time; business code never assigns them.
    """

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    business_unit_id: Mapped[str] = mapped_column("shopId", Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column("createdAt", UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column("updatedAt", UTCDateTime, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column("deletedAt", UTCDateTime, nullable=True)

    # Set through TransactionCoordinator.override_updated_at only.
    _updated_at_override = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
