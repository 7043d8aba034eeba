"""SQLAlchemy models for bills, receipts and the payment ledger."""

from sqlalchemy import ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from tillsync.db.base import Base
from tillsync.models.base import SyncableMixin

# Payment modes recorded on payments, receipts and split parts.
MODE_CASH = "Cash"
MODE_UPI = "UPI"
MODE_CREDIT = "Credit"
MODE_CREDIT_CLEAR = "CreditClear"
MODE_SPLIT = "Split"
MODE_ADVANCE = "Advance"
PAYMENT_MODES = (
    MODE_CASH,
    MODE_UPI,
    MODE_CREDIT,
    MODE_CREDIT_CLEAR,
    MODE_SPLIT,
    MODE_ADVANCE,
)

# Ledger subtypes: a debt being created, and a debt being reduced.
SUBTYPE_ACCRUAL = "Accrual"
SUBTYPE_CLEARANCE = "Clearance"


class Bill(SyncableMixin, Base):
    """Customer bill. ``total`` must equal the sum of its payment rows."""

    __tablename__ = "bills"

    bill_number: Mapped[int] = mapped_column("billNumber", Integer, nullable=False)
    customer_id: Mapped[str] = mapped_column(
        "customerId", Text, ForeignKey("customers.id"), nullable=False
    )
    total: Mapped[int] = mapped_column(Integer, nullable=False)
    business_date: Mapped[str | None] = mapped_column("businessDate", Text, nullable=True)


class Receipt(SyncableMixin, Base):
    """Money actually received, either against a bill or as a credit clearance."""

    __tablename__ = "receipts"

    receipt_no: Mapped[int] = mapped_column("receiptNo", Integer, nullable=False)
    customer_id: Mapped[str] = mapped_column(
        "customerId", Text, ForeignKey("customers.id"), nullable=False
    )
    bill_id: Mapped[str | None] = mapped_column(
        "billId", Text, ForeignKey("bills.id"), nullable=True
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    mode: Mapped[str] = mapped_column(Text, nullable=False)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    business_date: Mapped[str | None] = mapped_column("businessDate", Text, nullable=True)


class SplitPayment(SyncableMixin, Base):
    """One component of a split receipt."""

    __tablename__ = "split_payments"

    receipt_id: Mapped[str] = mapped_column(
        "receiptId", Text, ForeignKey("receipts.id"), nullable=False
    )
    payment_type: Mapped[str] = mapped_column("paymentType", Text, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)


class Payment(SyncableMixin, Base):
    """Payment ledger entry.

    Rows with ``bill_id`` set make up that bill's total. ``sub_type`` marks
    credit accruals and clearances for the customer credit ledger.
    """

    __tablename__ = "payments"

    bill_id: Mapped[str | None] = mapped_column(
        "billId", Text, ForeignKey("bills.id"), nullable=True
    )
    customer_id: Mapped[str] = mapped_column(
        "customerId", Text, ForeignKey("customers.id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    mode: Mapped[str] = mapped_column(Text, nullable=False)
    sub_type: Mapped[str | None] = mapped_column("subType", Text, nullable=True)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
