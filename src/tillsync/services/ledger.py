"""Transactional business primitives for the local ledger.

Every method here runs as one coordinator transaction, so a document number,
the rows it labels and any cached balance it changes are committed together
or not at all. These helpers are what keep the ledger invariants that
:mod:`tillsync.services.audit` checks:

- a bill's total equals the sum of its live payment rows
- a customer's ``credit_balance`` equals accruals minus clearances
- an expense's amount equals its non-clearance settlements, and its
  clearances never exceed its accruals
- an advance wallet never goes negative
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from tillsync.core.calendar import business_date
from tillsync.db.session import LocalStore
from tillsync.models import (
    Bill,
    Customer,
    CustomerAdvance,
    Expense,
    ExpenseSettlement,
    KotItem,
    KotOrder,
    MenuItem,
    Payment,
    Receipt,
    SplitPayment,
    SyncableMixin,
)
from tillsync.models.billing import (
    MODE_ADVANCE,
    MODE_CASH,
    MODE_CREDIT,
    MODE_SPLIT,
    MODE_UPI,
    SUBTYPE_ACCRUAL,
    SUBTYPE_CLEARANCE,
)
from tillsync.models.customer import ADVANCE_ADD, ADVANCE_APPLY, ADVANCE_REFUND
from tillsync.models.expense import (
    EXPENSE_STATUS_CREDIT,
    EXPENSE_STATUS_PAID,
    EXPENSE_STATUS_PARTIAL,
)
from tillsync.services.money import ensure_amount

# Configure logger for this module
logger = logging.getLogger(__name__)

BILL_MODES = (MODE_CASH, MODE_UPI, MODE_CREDIT, MODE_ADVANCE)
CLEARANCE_MODES = (MODE_CASH, MODE_UPI, MODE_ADVANCE)
EXPENSE_MODES = (MODE_CASH, MODE_UPI, MODE_CREDIT)

# Rows whose totals are cached elsewhere in the ledger.
LEDGER_ENTRY_MODELS = (Bill, Receipt, SplitPayment, Payment, ExpenseSettlement, CustomerAdvance)


class LedgerError(ValueError):
    """Raised when a business operation would break a ledger invariant."""


class NotFoundError(LedgerError):
    """Raised when a referenced row does not exist or is tombstoned."""


@dataclass(frozen=True)
class PaymentComponent:
    """One part of a settlement: a payment mode and a whole-rupee amount."""

    mode: str
    amount: int


@dataclass(frozen=True)
class OrderLine:
    item_id: str
    quantity: int = 1


@dataclass
class BillSettlement:
    bill: Bill
    receipt: Receipt | None
    payments: list[Payment] = field(default_factory=list)
    orders: list[KotOrder] = field(default_factory=list)

    @property
    def paid_portion(self) -> int:
        return self.receipt.amount if self.receipt is not None else 0

    @property
    def credit_portion(self) -> int:
        return self.bill.total - self.paid_portion


@dataclass
class CreditClearance:
    receipt: Receipt
    payments: list[Payment] = field(default_factory=list)


@dataclass(frozen=True)
class ExpenseStatus:
    """Settlement position of one expense."""

    expense_id: str
    amount: int
    accrued: int
    cleared: int

    @property
    def outstanding(self) -> int:
        return self.accrued - self.cleared

    @property
    def status(self) -> str:
        if self.outstanding <= 0:
            return EXPENSE_STATUS_PAID
        if self.outstanding >= self.amount:
            return EXPENSE_STATUS_CREDIT
        return EXPENSE_STATUS_PARTIAL


def _live(session: Session, model: type[Any], row_id: str) -> Any:
    row = session.get(model, row_id)
    if row is None or row.deleted_at is not None:
        raise NotFoundError(f"{model.__tablename__} {row_id} not found")
    return row


def _validate_components(
    components: Sequence[PaymentComponent], allowed: Sequence[str]
) -> list[PaymentComponent]:
    if not components:
        raise LedgerError("at least one payment component is required")
    checked = []
    for component in components:
        if component.mode not in allowed:
            raise LedgerError(f"payment mode {component.mode!r} is not allowed here")
        try:
            amount = ensure_amount(component.amount)
        except ValueError as exc:
            raise LedgerError(str(exc)) from exc
        checked.append(PaymentComponent(component.mode, amount))
    return checked


class LedgerService:
    """Business writes against the local store."""

    def __init__(self, store: LocalStore) -> None:
        self.store = store

    @property
    def _zone(self) -> str:
        return self.store.config.business_timezone

    def _at(self, at: datetime | None) -> datetime:
        if at is None:
            return self.store.coordinator.now()
        if at.tzinfo is None:
            raise LedgerError("timestamps must be timezone-aware")
        return at

    # Customers and menu

    def create_customer(
        self, name: str, contact: str | None = None, *, opening_credit: int = 0
    ) -> Customer:
        """Create a customer, optionally carrying credit owed from before.

        An opening credit is recorded as an Accrual payment with no bill, so
        the cached ``credit_balance`` is backed by a ledger row.
        """
        if not name or not name.strip():
            raise LedgerError("customer name is required")
        try:
            opening_credit = ensure_amount(opening_credit, allow_zero=True)
        except ValueError as exc:
            raise LedgerError(str(exc)) from exc
        with self.store.coordinator.transaction() as session:
            customer = Customer(
                name=name.strip(),
                contact=(contact or "").strip() or None,
                credit_balance=opening_credit,
            )
            session.add(customer)
            if opening_credit:
                session.flush()
                session.add(
                    Payment(
                        bill_id=None,
                        customer_id=customer.id,
                        amount=opening_credit,
                        mode=MODE_CREDIT,
                        sub_type=SUBTYPE_ACCRUAL,
                        remarks="Opening balance",
                    )
                )
        return customer

    def update_customer(
        self, customer_id: str, *, name: str | None = None, contact: str | None = None
    ) -> Customer:
        with self.store.coordinator.transaction() as session:
            customer = _live(session, Customer, customer_id)
            if name is not None:
                if not name.strip():
                    raise LedgerError("customer name is required")
                customer.name = name.strip()
            if contact is not None:
                customer.contact = contact.strip() or None
        return customer

    def create_menu_item(
        self, name: str, price: int, *, category: str | None = None, is_active: bool = True
    ) -> MenuItem:
        if not name or not name.strip():
            raise LedgerError("menu item name is required")
        try:
            price = ensure_amount(price)
        except ValueError as exc:
            raise LedgerError(str(exc)) from exc
        with self.store.coordinator.transaction() as session:
            item = MenuItem(name=name.strip(), price=price, category=category, is_active=is_active)
            session.add(item)
        return item

    def tombstone(self, model: type[SyncableMixin], row_id: str) -> SyncableMixin:
        """Soft-delete a row; it stays visible to sync so other devices see the delete.

        Rows that back a bill total or a cached balance cannot be tombstoned
        on their own; correct those with a compensating entry instead.

        Raises:
            LedgerError: For bills, receipts, payments, settlements and
                advance entries.
        """
        if model in LEDGER_ENTRY_MODELS:
            raise LedgerError(
                f"{model.__tablename__} rows are ledger entries and cannot be tombstoned"  # type: ignore[attr-defined]
            )
        with self.store.coordinator.transaction() as session:
            row = _live(session, model, row_id)
            row.deleted_at = self.store.coordinator.now()
        logger.info("Tombstoned %s %s", model.__tablename__, row_id)  # type: ignore[attr-defined]
        return row

    # Orders

    def create_order(
        self,
        customer_id: str,
        lines: Sequence[OrderLine],
        at: datetime | None = None,
    ) -> KotOrder:
        """Create a KOT with its lines, numbered from the daily ``kot`` sequence.

        Prices are copied from the menu at order time.
        """
        if not lines:
            raise LedgerError("an order needs at least one line")
        at = self._at(at)
        with self.store.coordinator.transaction() as session:
            _live(session, Customer, customer_id)
            order = KotOrder(
                kot_number=self.store.sequences.next(session, "kot", at),
                customer_id=customer_id,
                business_date=business_date(at, self._zone),
            )
            session.add(order)
            session.flush()
            for line in lines:
                item = _live(session, MenuItem, line.item_id)
                if not item.is_active:
                    raise LedgerError(f"menu item {item.name} is not active")
                if int(line.quantity) <= 0:
                    raise LedgerError("quantity must be positive")
                session.add(
                    KotItem(
                        kot_id=order.id,
                        item_id=item.id,
                        quantity=int(line.quantity),
                        price_at_time=item.price,
                    )
                )
        return order

    def order_total(self, order_id: str) -> int:
        with self.store.coordinator.read() as session:
            total = session.execute(
                select(func.coalesce(func.sum(KotItem.quantity * KotItem.price_at_time), 0)).where(
                    KotItem.kot_id == order_id, KotItem.deleted_at.is_(None)
                )
            ).scalar_one()
        return int(total)

    # Bills and customer credit

    def settle_bill(
        self,
        customer_id: str,
        components: Sequence[PaymentComponent],
        *,
        order_ids: Sequence[str] | None = None,
        remarks: str | None = None,
        at: datetime | None = None,
    ) -> BillSettlement:
        """Create a bill paid by ``components`` and link the customer's unbilled orders.

        Credit components accrue to the customer's credit balance, Advance
        components draw from the advance wallet, and the receipt covers the
        paid (non-credit) portion only.

        Args:
            customer_id: Billed customer.
            components: How the bill is paid; the bill total is their sum.
            order_ids: Orders to link; defaults to the customer's unbilled
                orders of the same business day.
            remarks: Stored on the receipt and payment rows.
            at: Aware timestamp of the sale; defaults to now.

        Raises:
            LedgerError: For invalid components or an overdrawn wallet.
            NotFoundError: If the customer or an order is missing.
        """
        components = _validate_components(components, BILL_MODES)
        at = self._at(at)
        day = business_date(at, self._zone)
        total = sum(component.amount for component in components)
        credit = sum(c.amount for c in components if c.mode == MODE_CREDIT)
        paid = [c for c in components if c.mode != MODE_CREDIT]
        advance_used = sum(c.amount for c in components if c.mode == MODE_ADVANCE)

        with self.store.coordinator.transaction() as session:
            customer = _live(session, Customer, customer_id)
            if advance_used:
                self._check_wallet(session, customer_id, advance_used)

            bill = Bill(
                bill_number=self.store.sequences.next(session, "bill", at),
                customer_id=customer_id,
                total=total,
                business_date=day,
            )
            session.add(bill)
            session.flush()

            receipt = None
            if paid:
                receipt = Receipt(
                    receipt_no=self.store.sequences.next(session, "receipt", at),
                    customer_id=customer_id,
                    bill_id=bill.id,
                    amount=sum(c.amount for c in paid),
                    mode=paid[0].mode if len(paid) == 1 else MODE_SPLIT,
                    remarks=remarks,
                    business_date=day,
                )
                session.add(receipt)
                session.flush()
                if len(components) > 1 or credit:
                    for component in components:
                        session.add(
                            SplitPayment(
                                receipt_id=receipt.id,
                                payment_type=component.mode,
                                amount=component.amount,
                            )
                        )

            payments = []
            for component in components:
                payment = Payment(
                    bill_id=bill.id,
                    customer_id=customer_id,
                    amount=component.amount,
                    mode=component.mode,
                    sub_type=SUBTYPE_ACCRUAL if component.mode == MODE_CREDIT else None,
                    remarks=remarks,
                )
                session.add(payment)
                payments.append(payment)
                if component.mode == MODE_ADVANCE:
                    session.add(
                        CustomerAdvance(
                            customer_id=customer_id,
                            entry_type=ADVANCE_APPLY,
                            amount=component.amount,
                            remarks=f"Applied to bill {bill.bill_number}",
                        )
                    )
            if credit:
                customer.credit_balance = int(customer.credit_balance or 0) + credit

            orders = self._link_orders(session, customer_id, bill, day, order_ids)

        logger.info(
            "Bill %s for customer %s: total %s, credit %s", bill.bill_number, customer_id, total, credit
        )
        return BillSettlement(bill=bill, receipt=receipt, payments=payments, orders=orders)

    def clear_credit(
        self,
        customer_id: str,
        components: Sequence[PaymentComponent],
        *,
        remarks: str | None = None,
        at: datetime | None = None,
    ) -> CreditClearance:
        """Record money received against a customer's outstanding credit.

        Raises:
            LedgerError: If the clearance exceeds the outstanding credit.
        """
        components = _validate_components(components, CLEARANCE_MODES)
        at = self._at(at)
        total = sum(component.amount for component in components)
        advance_used = sum(c.amount for c in components if c.mode == MODE_ADVANCE)
        remarks = remarks or "Credit Clearance"

        with self.store.coordinator.transaction() as session:
            customer = _live(session, Customer, customer_id)
            outstanding = int(customer.credit_balance or 0)
            if total > outstanding:
                raise LedgerError(f"clearance of {total} exceeds outstanding credit {outstanding}")
            if advance_used:
                self._check_wallet(session, customer_id, advance_used)

            receipt = Receipt(
                receipt_no=self.store.sequences.next(session, "receipt", at),
                customer_id=customer_id,
                bill_id=None,
                amount=total,
                mode=components[0].mode if len(components) == 1 else MODE_SPLIT,
                remarks=remarks,
                business_date=business_date(at, self._zone),
            )
            session.add(receipt)
            session.flush()

            payments = []
            for component in components:
                payment = Payment(
                    bill_id=None,
                    customer_id=customer_id,
                    amount=component.amount,
                    mode=component.mode,
                    sub_type=SUBTYPE_CLEARANCE,
                    remarks=remarks,
                )
                session.add(payment)
                payments.append(payment)
                if component.mode == MODE_ADVANCE:
                    session.add(
                        CustomerAdvance(
                            customer_id=customer_id,
                            entry_type=ADVANCE_APPLY,
                            amount=component.amount,
                            remarks=remarks,
                        )
                    )
                if len(components) > 1:
                    session.add(
                        SplitPayment(
                            receipt_id=receipt.id,
                            payment_type=component.mode,
                            amount=component.amount,
                        )
                    )
            customer.credit_balance = outstanding - total

        return CreditClearance(receipt=receipt, payments=payments)

    # Advance wallet

    def add_advance(
        self, customer_id: str, amount: int, *, remarks: str | None = None
    ) -> CustomerAdvance:
        return self._advance_entry(customer_id, ADVANCE_ADD, amount, remarks)

    def apply_advance(
        self, customer_id: str, amount: int, *, remarks: str | None = None
    ) -> CustomerAdvance:
        return self._advance_entry(customer_id, ADVANCE_APPLY, amount, remarks)

    def refund_advance(
        self, customer_id: str, amount: int, *, remarks: str | None = None
    ) -> CustomerAdvance:
        return self._advance_entry(customer_id, ADVANCE_REFUND, amount, remarks)

    def advance_balance(self, customer_id: str) -> int:
        with self.store.coordinator.read() as session:
            return self._wallet_balance(session, customer_id)

    def _advance_entry(
        self, customer_id: str, entry_type: str, amount: int, remarks: str | None
    ) -> CustomerAdvance:
        try:
            amount = ensure_amount(amount)
        except ValueError as exc:
            raise LedgerError(str(exc)) from exc
        with self.store.coordinator.transaction() as session:
            _live(session, Customer, customer_id)
            if entry_type != ADVANCE_ADD:
                self._check_wallet(session, customer_id, amount)
            entry = CustomerAdvance(
                customer_id=customer_id, entry_type=entry_type, amount=amount, remarks=remarks
            )
            session.add(entry)
        return entry

    @staticmethod
    def _wallet_balance(session: Session, customer_id: str) -> int:
        rows = session.execute(
            select(CustomerAdvance.entry_type, func.coalesce(func.sum(CustomerAdvance.amount), 0))
            .where(
                CustomerAdvance.customer_id == customer_id,
                CustomerAdvance.deleted_at.is_(None),
            )
            .group_by(CustomerAdvance.entry_type)
        ).all()
        sums = {entry_type: int(amount) for entry_type, amount in rows}
        return sums.get(ADVANCE_ADD, 0) - sums.get(ADVANCE_APPLY, 0) - sums.get(ADVANCE_REFUND, 0)

    def _check_wallet(self, session: Session, customer_id: str, amount: int) -> None:
        balance = self._wallet_balance(session, customer_id)
        if amount > balance:
            raise LedgerError(f"advance balance {balance} is less than {amount}")

    # Expenses

    def create_expense(
        self,
        amount: int,
        towards: str,
        parts: Sequence[PaymentComponent],
        *,
        remarks: str | None = None,
        at: datetime | None = None,
    ) -> Expense:
        """Record an expense voucher paid by ``parts``; a Credit part is owed to the payee.

        Raises:
            LedgerError: If the parts do not add up to ``amount`` or more than
                one part is Credit.
        """
        try:
            amount = ensure_amount(amount)
        except ValueError as exc:
            raise LedgerError(str(exc)) from exc
        if not towards or not towards.strip():
            raise LedgerError("expense payee is required")
        parts = _validate_components(parts, EXPENSE_MODES)
        if sum(part.amount for part in parts) != amount:
            raise LedgerError("expense parts must add up to the expense amount")
        if sum(1 for part in parts if part.mode == MODE_CREDIT) > 1:
            raise LedgerError("an expense can have at most one Credit part")
        at = self._at(at)

        with self.store.coordinator.transaction() as session:
            expense = Expense(
                voucher_no=self.store.sequences.next(session, "expense", at),
                amount=amount,
                towards=towards.strip(),
                mode=parts[0].mode if len(parts) == 1 else MODE_SPLIT,
                remarks=remarks,
                expense_date=business_date(at, self._zone),
            )
            session.add(expense)
            session.flush()
            for part in parts:
                session.add(
                    ExpenseSettlement(
                        expense_id=expense.id,
                        payment_type=part.mode,
                        sub_type=SUBTYPE_ACCRUAL if part.mode == MODE_CREDIT else None,
                        amount=part.amount,
                        remarks=remarks,
                    )
                )
        return expense

    def clear_expense_credit(
        self,
        expense_id: str,
        parts: Sequence[PaymentComponent],
        *,
        remarks: str | None = None,
    ) -> list[ExpenseSettlement]:
        """Pay down the Credit part of an expense."""
        parts = _validate_components(parts, (MODE_CASH, MODE_UPI))
        total = sum(part.amount for part in parts)
        with self.store.coordinator.transaction() as session:
            _live(session, Expense, expense_id)
            status = self._expense_status(session, expense_id)
            if total > status.outstanding:
                raise LedgerError(
                    f"clearance of {total} exceeds outstanding expense credit {status.outstanding}"
                )
            settlements = [
                ExpenseSettlement(
                    expense_id=expense_id,
                    payment_type=part.mode,
                    sub_type=SUBTYPE_CLEARANCE,
                    amount=part.amount,
                    remarks=remarks,
                )
                for part in parts
            ]
            session.add_all(settlements)
        return settlements

    def expense_status(self, expense_id: str) -> ExpenseStatus:
        with self.store.coordinator.read() as session:
            _live(session, Expense, expense_id)
            return self._expense_status(session, expense_id)

    @staticmethod
    def _expense_status(session: Session, expense_id: str) -> ExpenseStatus:
        expense = session.get(Expense, expense_id)
        rows = session.execute(
            select(ExpenseSettlement.sub_type, func.coalesce(func.sum(ExpenseSettlement.amount), 0))
            .where(
                ExpenseSettlement.expense_id == expense_id,
                ExpenseSettlement.deleted_at.is_(None),
            )
            .group_by(ExpenseSettlement.sub_type)
        ).all()
        sums = {sub_type: int(amount) for sub_type, amount in rows}
        return ExpenseStatus(
            expense_id=expense_id,
            amount=int(expense.amount) if expense is not None else 0,
            accrued=sums.get(SUBTYPE_ACCRUAL, 0),
            cleared=sums.get(SUBTYPE_CLEARANCE, 0),
        )

    def _link_orders(
        self,
        session: Session,
        customer_id: str,
        bill: Bill,
        day: str,
        order_ids: Sequence[str] | None,
    ) -> list[KotOrder]:
        if order_ids is None:
            orders = list(
                session.execute(
                    select(KotOrder).where(
                        KotOrder.customer_id == customer_id,
                        KotOrder.bill_id.is_(None),
                        KotOrder.deleted_at.is_(None),
                        KotOrder.business_date == day,
                    )
                ).scalars()
            )
        else:
            orders = [_live(session, KotOrder, order_id) for order_id in order_ids]
            for order in orders:
                if order.customer_id != customer_id:
                    raise LedgerError(f"order {order.id} belongs to another customer")
                if order.bill_id is not None:
                    raise LedgerError(f"order {order.id} is already billed")
        for order in orders:
            order.bill_id = bill.id
        return orders
