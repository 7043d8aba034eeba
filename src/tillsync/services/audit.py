"""Read-only reconciliation of the local ledger.

The auditor recomputes every cached or derived money figure from the rows
that justify it and reports mismatches as :class:`Discrepancy` records. It
runs inside a read snapshot and never writes; correcting a discrepancy is an
administrative decision.

Tombstoned payments, settlements and advance entries are excluded from the
sums. Tombstoned bills, customers and expenses are not audited.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session, aliased

from tillsync.db.time import to_iso, utcnow
from tillsync.db.transactions import TransactionCoordinator
from tillsync.models import (
    Bill,
    Customer,
    CustomerAdvance,
    Expense,
    ExpenseSettlement,
    KotOrder,
    Payment,
)
from tillsync.models.billing import PAYMENT_MODES, SUBTYPE_ACCRUAL, SUBTYPE_CLEARANCE
from tillsync.models.customer import ADVANCE_ADD, ADVANCE_ENTRY_TYPES

# Configure logger for this module
logger = logging.getLogger(__name__)

KIND_BILL_TOTAL = "bill_total"
KIND_CUSTOMER_CREDIT = "customer_credit"
KIND_EXPENSE_SETTLEMENT = "expense_settlement"
KIND_EXPENSE_OVERCLEARANCE = "expense_overclearance"
KIND_ADVANCE_OVERDRAWN = "advance_overdrawn"
KIND_INVALID_PAYMENT_MODE = "invalid_payment_mode"
KIND_ORPHAN_ORDER_BILL = "orphan_order_bill"


@dataclass(frozen=True)
class Discrepancy:
    """One violated ledger invariant."""

    kind: str
    entity: str
    entity_id: str
    expected: Any
    actual: Any
    detail: str = ""


@dataclass
class AuditReport:
    checked_at: datetime
    discrepancies: list[Discrepancy] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.discrepancies

    def by_kind(self, kind: str) -> list[Discrepancy]:
        return [item for item in self.discrepancies if item.kind == kind]

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at": to_iso(self.checked_at),
            "counts": dict(self.counts),
            "discrepancies": [asdict(item) for item in self.discrepancies],
        }


def _sum(column: Any) -> Any:
    return func.coalesce(func.sum(column), 0)


class IntegrityAuditor:
    """Verify bill, credit, expense and advance invariants over one snapshot."""

    def __init__(self, coordinator: TransactionCoordinator) -> None:
        self.coordinator = coordinator

    def run(self) -> AuditReport:
        report = AuditReport(checked_at=utcnow())
        with self.coordinator.read() as session:
            checks = (
                self._bill_totals,
                self._customer_credit,
                self._expense_settlements,
                self._advance_wallets,
                self._payment_modes,
                self._orphan_orders,
            )
            for check in checks:
                report.discrepancies.extend(check(session, report.counts))

        if report.discrepancies:
            logger.warning("Integrity audit found %s discrepancies", len(report.discrepancies))
        else:
            logger.info("Integrity audit clean")
        return report

    def _bill_totals(self, session: Session, counts: dict[str, int]) -> list[Discrepancy]:
        paid = (
            select(Payment.bill_id.label("bill_id"), _sum(Payment.amount).label("paid"))
            .where(Payment.deleted_at.is_(None), Payment.bill_id.is_not(None))
            .group_by(Payment.bill_id)
            .subquery()
        )
        rows = session.execute(
            select(Bill.id, Bill.bill_number, Bill.total, func.coalesce(paid.c.paid, 0))
            .outerjoin(paid, paid.c.bill_id == Bill.id)
            .where(Bill.deleted_at.is_(None))
            .order_by(Bill.bill_number)
        ).all()
        counts["bills"] = len(rows)
        return [
            Discrepancy(
                KIND_BILL_TOTAL,
                "bills",
                bill_id,
                int(total),
                int(actual),
                f"bill {number}: total {total}, payments {actual}",
            )
            for bill_id, number, total, actual in rows
            if int(total) != int(actual)
        ]

    def _customer_credit(self, session: Session, counts: dict[str, int]) -> list[Discrepancy]:
        sums: dict[str, dict[str, int]] = defaultdict(dict)
        for customer_id, sub_type, amount in session.execute(
            select(Payment.customer_id, Payment.sub_type, _sum(Payment.amount))
            .where(
                Payment.deleted_at.is_(None),
                Payment.sub_type.in_((SUBTYPE_ACCRUAL, SUBTYPE_CLEARANCE)),
            )
            .group_by(Payment.customer_id, Payment.sub_type)
        ):
            sums[customer_id][sub_type] = int(amount)

        found = []
        customers = session.execute(
            select(Customer.id, Customer.name, Customer.credit_balance).where(
                Customer.deleted_at.is_(None)
            )
        ).all()
        counts["customers"] = len(customers)
        for customer_id, name, balance in customers:
            ledger = sums.get(customer_id, {})
            expected = ledger.get(SUBTYPE_ACCRUAL, 0) - ledger.get(SUBTYPE_CLEARANCE, 0)
            if int(balance or 0) != expected:
                found.append(
                    Discrepancy(
                        KIND_CUSTOMER_CREDIT,
                        "customers",
                        customer_id,
                        expected,
                        int(balance or 0),
                        f"{name}: stored credit {balance}, accruals minus clearances {expected}",
                    )
                )
        return found

    def _expense_settlements(self, session: Session, counts: dict[str, int]) -> list[Discrepancy]:
        sums: dict[str, dict[str | None, int]] = defaultdict(dict)
        for expense_id, sub_type, amount in session.execute(
            select(ExpenseSettlement.expense_id, ExpenseSettlement.sub_type, _sum(ExpenseSettlement.amount))
            .where(ExpenseSettlement.deleted_at.is_(None))
            .group_by(ExpenseSettlement.expense_id, ExpenseSettlement.sub_type)
        ):
            sums[expense_id][sub_type] = int(amount)

        found = []
        expenses = session.execute(
            select(Expense.id, Expense.voucher_no, Expense.amount).where(Expense.deleted_at.is_(None))
        ).all()
        counts["expenses"] = len(expenses)
        for expense_id, voucher, amount in expenses:
            ledger = sums.get(expense_id, {})
            settled = sum(value for sub_type, value in ledger.items() if sub_type != SUBTYPE_CLEARANCE)
            if settled != int(amount):
                found.append(
                    Discrepancy(
                        KIND_EXPENSE_SETTLEMENT,
                        "expenses",
                        expense_id,
                        int(amount),
                        settled,
                        f"voucher {voucher}: amount {amount}, settlements {settled}",
                    )
                )
            accrued = ledger.get(SUBTYPE_ACCRUAL, 0)
            cleared = ledger.get(SUBTYPE_CLEARANCE, 0)
            if cleared > accrued:
                found.append(
                    Discrepancy(
                        KIND_EXPENSE_OVERCLEARANCE,
                        "expenses",
                        expense_id,
                        accrued,
                        cleared,
                        f"voucher {voucher}: cleared {cleared} of {accrued} accrued",
                    )
                )
        return found

    def _advance_wallets(self, session: Session, counts: dict[str, int]) -> list[Discrepancy]:
        balances: dict[str, int] = defaultdict(int)
        rows = session.execute(
            select(CustomerAdvance.customer_id, CustomerAdvance.entry_type, _sum(CustomerAdvance.amount))
            .where(CustomerAdvance.deleted_at.is_(None))
            .group_by(CustomerAdvance.customer_id, CustomerAdvance.entry_type)
        ).all()
        found = []
        for customer_id, entry_type, amount in rows:
            if entry_type not in ADVANCE_ENTRY_TYPES:
                found.append(
                    Discrepancy(
                        KIND_ADVANCE_OVERDRAWN,
                        "customer_advances",
                        customer_id,
                        list(ADVANCE_ENTRY_TYPES),
                        entry_type,
                        f"unknown advance entry type {entry_type!r}",
                    )
                )
                continue
            sign = 1 if entry_type == ADVANCE_ADD else -1
            balances[customer_id] += sign * int(amount)
        counts["advance_wallets"] = len(balances)
        found.extend(
            Discrepancy(
                KIND_ADVANCE_OVERDRAWN,
                "customers",
                customer_id,
                0,
                balance,
                f"advance wallet balance is {balance}",
            )
            for customer_id, balance in sorted(balances.items())
            if balance < 0
        )
        return found

    def _payment_modes(self, session: Session, counts: dict[str, int]) -> list[Discrepancy]:
        rows = session.execute(
            select(Payment.id, Payment.mode, Payment.sub_type).where(Payment.deleted_at.is_(None))
        ).all()
        counts["payments"] = len(rows)
        found = []
        for payment_id, mode, sub_type in rows:
            if mode not in PAYMENT_MODES:
                found.append(
                    Discrepancy(
                        KIND_INVALID_PAYMENT_MODE,
                        "payments",
                        payment_id,
                        list(PAYMENT_MODES),
                        mode,
                        f"unknown payment mode {mode!r}",
                    )
                )
            elif sub_type not in (None, SUBTYPE_ACCRUAL, SUBTYPE_CLEARANCE):
                found.append(
                    Discrepancy(
                        KIND_INVALID_PAYMENT_MODE,
                        "payments",
                        payment_id,
                        [SUBTYPE_ACCRUAL, SUBTYPE_CLEARANCE, None],
                        sub_type,
                        f"unknown payment subtype {sub_type!r}",
                    )
                )
        return found

    def _orphan_orders(self, session: Session, counts: dict[str, int]) -> list[Discrepancy]:
        bill = aliased(Bill)
        rows = session.execute(
            select(KotOrder.id, KotOrder.kot_number, KotOrder.bill_id)
            .join(bill, and_(bill.id == KotOrder.bill_id, bill.deleted_at.is_not(None)))
            .where(KotOrder.deleted_at.is_(None))
        ).all()
        return [
            Discrepancy(
                KIND_ORPHAN_ORDER_BILL,
                "kot_orders",
                order_id,
                None,
                bill_id,
                f"KOT {number} is linked to deleted bill {bill_id}",
            )
            for order_id, number, bill_id in rows
        ]
