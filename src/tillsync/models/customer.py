"""SQLAlchemy models for customers and their advance wallet entries."""

from sqlalchemy import ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from tillsync.db.base import Base
from tillsync.models.base import SyncableMixin

ADVANCE_ADD = "Add"
ADVANCE_APPLY = "Apply"
ADVANCE_REFUND = "Refund"
ADVANCE_ENTRY_TYPES = (ADVANCE_ADD, ADVANCE_APPLY, ADVANCE_REFUND)


class Customer(SyncableMixin, Base):
    """A shop customer.

    ``credit_balance`` is the outstanding amount owed by the customer. It is a
    cached total of the customer's Accrual payments minus Clearance payments
    and is only changed by the ledger helpers, in the same transaction as the
    payment rows that justify it.
    """

    __tablename__ = "customers"

    name: Mapped[str] = mapped_column(Text, nullable=False)
    # Not unique: two devices may register the same phone number offline.
    contact: Mapped[str | None] = mapped_column(Text, nullable=True)
    credit_balance: Mapped[int] = mapped_column(
        "creditBalance", Integer, nullable=False, default=0
    )


class CustomerAdvance(SyncableMixin, Base):
    """Append-only entry in a customer's prepaid wallet (Add, Apply or Refund)."""

    __tablename__ = "customer_advances"

    customer_id: Mapped[str] = mapped_column(
        "customerId", Text, ForeignKey("customers.id"), nullable=False
    )
    entry_type: Mapped[str] = mapped_column("entryType", Text, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
