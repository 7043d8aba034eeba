"""SQLAlchemy models for kitchen order tickets (KOTs) and their lines."""

from sqlalchemy import ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from tillsync.db.base import Base
from tillsync.models.base import SyncableMixin


class KotOrder(SyncableMixin, Base):
    """Kitchen order ticket.

    ``kot_number`` restarts every business day; ``bill_id`` stays NULL until
    the order is settled on a bill.
    """

    __tablename__ = "kot_orders"

    kot_number: Mapped[int] = mapped_column("kotNumber", Integer, nullable=False)
    customer_id: Mapped[str] = mapped_column(
        "customerId", Text, ForeignKey("customers.id"), nullable=False
    )
    bill_id: Mapped[str | None] = mapped_column(
        "billId", Text, ForeignKey("bills.id"), nullable=True
    )
    # Local calendar date (YYYY-MM-DD) in the business timezone.
    business_date: Mapped[str | None] = mapped_column("businessDate", Text, nullable=True)


class KotItem(SyncableMixin, Base):
    """Order line; price is captured at order time."""

    __tablename__ = "kot_items"

    kot_id: Mapped[str] = mapped_column(
        "kotId", Text, ForeignKey("kot_orders.id"), nullable=False
    )
    item_id: Mapped[str] = mapped_column(
        "itemId", Text, ForeignKey("menu_items.id"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price_at_time: Mapped[int] = mapped_column("priceAtTime", Integer, nullable=False)
