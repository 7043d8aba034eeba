"""Tests for the read-only integrity auditor."""

from __future__ import annotations

import random

import pytest

from tillsync.db.session import LocalStore
from tillsync.models import Bill, Customer, CustomerAdvance, Expense, ExpenseSettlement, KotOrder, Payment
from tillsync.services.audit import (
    KIND_ADVANCE_OVERDRAWN,
    KIND_BILL_TOTAL,
    KIND_CUSTOMER_CREDIT,
    KIND_EXPENSE_OVERCLEARANCE,
    KIND_EXPENSE_SETTLEMENT,
    KIND_INVALID_PAYMENT_MODE,
    KIND_ORPHAN_ORDER_BILL,
    IntegrityAuditor,
)
from tillsync.services.ledger import LedgerError, LedgerService, OrderLine, PaymentComponent


@pytest.fixture()
def auditor(store: LocalStore) -> IntegrityAuditor:
    return IntegrityAuditor(store.coordinator)


def _populate(ledger: LedgerService, seed: int) -> None:
    rng = random.Random(seed)
    customers = [ledger.create_customer(f"Customer {index}") for index in range(4)]
    item = ledger.create_menu_item("Thali", 180)
    for _ in range(12):
        customer = rng.choice(customers)
        ledger.create_order(customer.id, [OrderLine(item.id, rng.randint(1, 3))])
        cash = rng.randint(1, 300)
        components = [PaymentComponent("Cash", cash)]
        if rng.random() < 0.5:
            components.append(PaymentComponent("Credit", rng.randint(1, 200)))
        ledger.settle_bill(customer.id, components)
    for customer in customers:
        with ledger.store.coordinator.read() as session:
            owed = session.get(Customer, customer.id).credit_balance
        if owed > 1:
            ledger.clear_credit(customer.id, [PaymentComponent("UPI", rng.randint(1, owed))])
    for _ in range(5):
        amount = rng.randint(50, 900)
        credit = rng.randint(1, amount - 1)
        expense = ledger.create_expense(
            amount,
            "Vendor",
            [PaymentComponent("Cash", amount - credit), PaymentComponent("Credit", credit)],
        )
        ledger.clear_expense_credit(expense.id, [PaymentComponent("Cash", rng.randint(1, credit))])
    ledger.add_advance(customers[0].id, 500)
    ledger.settle_bill(customers[0].id, [PaymentComponent("Advance", 200)])


@pytest.mark.parametrize("seed", [1, 7, 42])
def test_ledger_built_through_helpers_is_clean(
    ledger: LedgerService, auditor: IntegrityAuditor, seed: int
) -> None:
    _populate(ledger, seed)

    report = auditor.run()

    assert report.ok, report.discrepancies
    assert report.counts["customers"] == 4
    assert report.counts["bills"] == 13
    assert report.counts["expenses"] == 5


def test_corrupted_bill_total_is_reported(
    ledger: LedgerService, store: LocalStore, auditor: IntegrityAuditor
) -> None:
    _populate(ledger, 3)
    customer = ledger.create_customer("Target")
    bill = ledger.settle_bill(customer.id, [PaymentComponent("Cash", 250)]).bill
    with store.coordinator.transaction() as session:
        session.get(Bill, bill.id).total = 260

    report = auditor.run()

    assert len(report.discrepancies) == 1
    found = report.discrepancies[0]
    assert (found.kind, found.entity, found.entity_id) == (KIND_BILL_TOTAL, "bills", bill.id)
    assert (found.expected, found.actual) == (260, 250)


def test_corrupted_credit_balance_is_reported(
    ledger: LedgerService, store: LocalStore, auditor: IntegrityAuditor
) -> None:
    customer = ledger.create_customer("Asha")
    ledger.settle_bill(customer.id, [PaymentComponent("Credit", 300)])
    with store.coordinator.transaction() as session:
        session.get(Customer, customer.id).credit_balance = 100

    report = auditor.run()

    assert [d.kind for d in report.discrepancies] == [KIND_CUSTOMER_CREDIT]
    assert report.discrepancies[0].expected == 300
    assert report.discrepancies[0].actual == 100


def test_tombstoned_payment_is_excluded(
    ledger: LedgerService, store: LocalStore, auditor: IntegrityAuditor
) -> None:
    customer = ledger.create_customer("Asha")
    settlement = ledger.settle_bill(
        customer.id, [PaymentComponent("Cash", 100), PaymentComponent("UPI", 50)]
    )
    with store.coordinator.transaction() as session:
        session.get(Payment, settlement.payments[1].id).deleted_at = store.coordinator.now()

    report = auditor.run()

    assert report.by_kind(KIND_BILL_TOTAL)[0].actual == 100


def test_tombstoned_bill_is_not_audited(
    ledger: LedgerService, store: LocalStore, auditor: IntegrityAuditor
) -> None:
    customer = ledger.create_customer("Asha")
    bill = ledger.settle_bill(customer.id, [PaymentComponent("Cash", 100)]).bill
    with store.coordinator.transaction() as session:
        row = session.get(Bill, bill.id)
        row.total = 1
        row.deleted_at = store.coordinator.now()

    assert auditor.run().by_kind(KIND_BILL_TOTAL) == []


def test_expense_mismatch_and_overclearance(
    ledger: LedgerService, store: LocalStore, auditor: IntegrityAuditor
) -> None:
    expense = ledger.create_expense(600, "Gas", [PaymentComponent("Credit", 600)])
    with store.coordinator.transaction() as session:
        session.get(Expense, expense.id).amount = 650
        session.add(
            ExpenseSettlement(
                expense_id=expense.id, payment_type="Cash", sub_type="Clearance", amount=700
            )
        )

    report = auditor.run()

    settlement = report.by_kind(KIND_EXPENSE_SETTLEMENT)
    assert [(d.expected, d.actual) for d in settlement] == [(650, 600)]
    overclearance = report.by_kind(KIND_EXPENSE_OVERCLEARANCE)
    assert [(d.expected, d.actual) for d in overclearance] == [(600, 700)]


def test_overdrawn_advance_wallet(
    ledger: LedgerService, store: LocalStore, auditor: IntegrityAuditor
) -> None:
    customer = ledger.create_customer("Asha")
    ledger.add_advance(customer.id, 100)
    with store.coordinator.transaction() as session:
        session.add(CustomerAdvance(customer_id=customer.id, entry_type="Apply", amount=150))
        session.add(CustomerAdvance(customer_id=customer.id, entry_type="Gift", amount=10))

    report = auditor.run()

    found = report.by_kind(KIND_ADVANCE_OVERDRAWN)
    assert {d.actual for d in found} == {-50, "Gift"}


def test_invalid_payment_mode_and_subtype(
    ledger: LedgerService, store: LocalStore, auditor: IntegrityAuditor
) -> None:
    customer = ledger.create_customer("Asha")
    with store.coordinator.transaction() as session:
        session.add(Payment(customer_id=customer.id, amount=10, mode="Cheque"))
        session.add(Payment(customer_id=customer.id, amount=10, mode="Cash", sub_type="Refund"))

    report = auditor.run()

    assert sorted(d.actual for d in report.by_kind(KIND_INVALID_PAYMENT_MODE)) == ["Cheque", "Refund"]


def test_order_linked_to_deleted_bill(
    ledger: LedgerService, store: LocalStore, auditor: IntegrityAuditor
) -> None:
    customer = ledger.create_customer("Asha")
    item = ledger.create_menu_item("Idli", 40)
    order = ledger.create_order(customer.id, [OrderLine(item.id, 3)])
    bill = ledger.settle_bill(customer.id, [PaymentComponent("Cash", 120)]).bill
    with store.coordinator.transaction() as session:
        session.get(Bill, bill.id).deleted_at = store.coordinator.now()

    report = auditor.run()

    found = report.by_kind(KIND_ORPHAN_ORDER_BILL)
    assert [(d.entity_id, d.actual) for d in found] == [(order.id, bill.id)]
    with store.coordinator.read() as session:
        assert session.get(KotOrder, order.id).bill_id == bill.id


def test_audit_never_writes(ledger: LedgerService, store: LocalStore, auditor: IntegrityAuditor) -> None:
    customer = ledger.create_customer("Asha")
    ledger.settle_bill(customer.id, [PaymentComponent("Credit", 300)])
    with store.coordinator.transaction() as session:
        session.get(Customer, customer.id).credit_balance = 0
    with store.coordinator.read() as session:
        before = session.get(Customer, customer.id).updated_at

    auditor.run()
    auditor.run()

    with store.coordinator.read() as session:
        stored = session.get(Customer, customer.id)
        assert stored.credit_balance == 0
        assert stored.updated_at == before


def test_report_to_dict(ledger: LedgerService, store: LocalStore, auditor: IntegrityAuditor) -> None:
    customer = ledger.create_customer("Asha")
    with store.coordinator.transaction() as session:
        session.get(Customer, customer.id).credit_balance = 5

    data = auditor.run().to_dict()

    assert data["ok"] is False
    assert data["checked_at"].endswith("Z")
    assert data["discrepancies"][0]["kind"] == KIND_CUSTOMER_CREDIT
    assert data["discrepancies"][0]["entity_id"] == customer.id


def test_opening_credit_is_backed_by_an_accrual(
    ledger: LedgerService, store: LocalStore, auditor: IntegrityAuditor
) -> None:
    customer = ledger.create_customer("Opening", opening_credit=500)
    ledger.clear_credit(customer.id, [PaymentComponent("Cash", 200)])

    assert auditor.run().ok
    with store.coordinator.read() as session:
        assert session.get(Customer, customer.id).credit_balance == 300


@pytest.mark.parametrize("model", [Bill, Payment])
def test_ledger_rows_cannot_be_tombstoned_behind_the_balances(
    ledger: LedgerService, auditor: IntegrityAuditor, model
) -> None:
    customer = ledger.create_customer("Asha")
    settlement = ledger.settle_bill(customer.id, [PaymentComponent("Credit", 300)])
    row_id = settlement.bill.id if model is Bill else settlement.payments[0].id

    with pytest.raises(LedgerError):
        ledger.tombstone(model, row_id)

    assert auditor.run().ok
