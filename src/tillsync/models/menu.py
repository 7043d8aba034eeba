"""SQLAlchemy model for menu items."""

from sqlalchemy import Boolean, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from tillsync.db.base import Base
from tillsync.models.base import SyncableMixin


class MenuItem(SyncableMixin, Base):
    """Sellable item. Price is a whole-rupee integer."""

    __tablename__ = "menu_items"

    name: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(
        "isActive", Boolean(create_constraint=False), nullable=False, default=True
    )
