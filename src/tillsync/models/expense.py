"""SQLAlchemy models for expenses and their settlement ledger."""

from sqlalchemy import ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from tillsync.db.base import Base
from tillsync.models.base import SyncableMixin

EXPENSE_STATUS_PAID = "Paid"
EXPENSE_STATUS_PARTIAL = "Partial"
EXPENSE_STATUS_CREDIT = "Credit"


class Expense(SyncableMixin, Base):
    """Shop expense voucher.

    ``amount`` equals the sum of its non-clearance settlements; clearances
    later pay down the Credit (Accrual) part.
    """

    __tablename__ = "expenses"

    voucher_no: Mapped[int] = mapped_column("voucherNo", Integer, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    towards: Mapped[str] = mapped_column(Text, nullable=False)
    mode: Mapped[str] = mapped_column(Text, nullable=False)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    expense_date: Mapped[str | None] = mapped_column("expenseDate", Text, nullable=True)


class ExpenseSettlement(SyncableMixin, Base):
    """How (part of) an expense was paid, or a later clearance of its credit."""

    __tablename__ = "expense_settlements"

    expense_id: Mapped[str] = mapped_column(
        "expenseId", Text, ForeignKey("expenses.id"), nullable=False
    )
    payment_type: Mapped[str] = mapped_column("paymentType", Text, nullable=False)
    sub_type: Mapped[str | None] = mapped_column("subType", Text, nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
