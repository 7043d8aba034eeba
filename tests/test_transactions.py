"""Tests for the transaction coordinator and change-tracking stamps."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from tests.conftest import FakeClock, make_settings
from tillsync.db.session import LocalStore, StoreClosedError
from tillsync.db.time import ONE_MILLISECOND
from tillsync.db.transactions import (
    MonotonicClock,
    NoActiveTransactionError,
    TransactionBusyError,
    TransactionError,
    require_transaction,
)
from tillsync.models import Customer, KotOrder


def _count_customers(store: LocalStore) -> int:
    with store.coordinator.read() as session:
        return int(session.execute(select(func.count(Customer.id))).scalar_one())


def test_commit_persists_rows(store: LocalStore) -> None:
    with store.coordinator.transaction() as session:
        session.add(Customer(name="Asha", credit_balance=0))
    assert _count_customers(store) == 1


def test_exception_rolls_back_everything(store: LocalStore) -> None:
    with pytest.raises(RuntimeError, match="boom"):
        with store.coordinator.transaction() as session:
            session.add(Customer(name="Asha", credit_balance=0))
            session.flush()
            session.add(Customer(name="Ravi", credit_balance=0))
            raise RuntimeError("boom")
    assert _count_customers(store) == 0


def test_run_returns_work_result(store: LocalStore) -> None:
    customer_id = store.coordinator.run(
        lambda session: session.merge(Customer(id="c1", name="Asha", credit_balance=0)).id
    )
    assert customer_id == "c1"
    assert _count_customers(store) == 1


def test_foreign_keys_are_enforced(store: LocalStore) -> None:
    with pytest.raises(IntegrityError):
        with store.coordinator.transaction() as session:
            session.add(KotOrder(kot_number=1, customer_id="missing", business_date="2024-06-01"))
    with store.coordinator.read() as session:
        assert session.execute(select(KotOrder)).first() is None


def test_new_rows_are_stamped(store: LocalStore, clock: FakeClock) -> None:
    with store.coordinator.transaction() as session:
        customer = Customer(name="Asha", credit_balance=0)
        session.add(customer)

    assert customer.created_at == clock.current
    assert customer.updated_at == customer.created_at
    assert customer.business_unit_id == "shop_1"
    assert customer.deleted_at is None


def test_updates_advance_updated_at(store: LocalStore, clock: FakeClock) -> None:
    with store.coordinator.transaction() as session:
        customer = Customer(id="c1", name="Asha", credit_balance=0)
        session.add(customer)
    created = customer.created_at

    with store.coordinator.transaction() as session:
        row = session.get(Customer, "c1")
        row.name = "Asha K"

    with store.coordinator.read() as session:
        row = session.get(Customer, "c1")
        assert row.created_at == created
        assert row.updated_at > created
        assert row.updated_at - created == ONE_MILLISECOND


def test_unmodified_rows_are_not_restamped(store: LocalStore) -> None:
    with store.coordinator.transaction() as session:
        session.add(Customer(id="c1", name="Asha", credit_balance=0))
    with store.coordinator.read() as session:
        before = session.get(Customer, "c1").updated_at

    with store.coordinator.transaction() as session:
        session.get(Customer, "c1").name = "Asha"

    with store.coordinator.read() as session:
        assert session.get(Customer, "c1").updated_at == before


def test_read_snapshot_refuses_writes(store: LocalStore) -> None:
    with pytest.raises(TransactionError):
        with store.coordinator.read() as session:
            session.add(Customer(name="Asha", credit_balance=0))
            session.flush()
    assert _count_customers(store) == 0


def test_require_transaction_rejects_read_sessions(store: LocalStore) -> None:
    with store.coordinator.read() as session:
        with pytest.raises(NoActiveTransactionError):
            require_transaction(session)
    with store.coordinator.transaction() as session:
        assert require_transaction(session) is store.coordinator


def test_override_updated_at_pins_stamp_and_orders_later_writes(store: LocalStore) -> None:
    future = store.coordinator.now() + timedelta(seconds=5)
    with store.coordinator.transaction() as session:
        customer = Customer(id="c1", name="Asha", credit_balance=0)
        session.add(customer)
        store.coordinator.override_updated_at(customer, future)

    assert customer.updated_at == future
    assert store.coordinator.now() > future


def test_override_updated_at_rejects_naive_datetimes(store: LocalStore) -> None:
    customer = Customer(name="Asha", credit_balance=0)
    with pytest.raises(ValueError):
        store.coordinator.override_updated_at(customer, datetime(2024, 6, 1, 12, 0))


def test_monotonic_clock_never_repeats() -> None:
    fixed = datetime(2024, 6, 1, tzinfo=UTC)
    clock = MonotonicClock(lambda: fixed)
    first, second, third = clock.now(), clock.now(), clock.now()
    assert first == fixed
    assert second == fixed + ONE_MILLISECOND
    assert third == fixed + 2 * ONE_MILLISECOND


def test_monotonic_clock_observe_moves_forward_only() -> None:
    fixed = datetime(2024, 6, 1, tzinfo=UTC)
    clock = MonotonicClock(lambda: fixed)
    clock.observe(fixed + timedelta(minutes=1))
    clock.observe(fixed - timedelta(minutes=1))
    assert clock.now() == fixed + timedelta(minutes=1) + ONE_MILLISECOND


def test_closed_store_raises() -> None:
    store = LocalStore(make_settings())
    with pytest.raises(StoreClosedError):
        _ = store.coordinator


def test_busy_database_retries_then_fails(tmp_path: Path) -> None:
    path = tmp_path / "busy.db"
    sleeps: list[float] = []
    config = make_settings(
        database_url=f"sqlite:///{path}",
        sqlite_busy_timeout_ms=0,
        tx_max_retries=2,
        tx_backoff_seconds=0.01,
    )
    store = LocalStore(config, sleep=sleeps.append).open()

    blocker = sqlite3.connect(path, isolation_level=None, timeout=0)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(TransactionBusyError):
            with store.coordinator.transaction() as session:
                session.add(Customer(name="Asha", credit_balance=0))
        assert sleeps == [pytest.approx(0.01), pytest.approx(0.02)]
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()

    # The lock is free again, so the same coordinator succeeds.
    with store.coordinator.transaction() as session:
        session.add(Customer(name="Asha", credit_balance=0))
    assert _count_customers(store) == 1
    store.close()
