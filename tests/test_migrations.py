"""Tests for the schema migration runner and the shipped schema history."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from pathlib import Path

import pytest
from sqlalchemy import select, text
from sqlalchemy.engine import Engine

from tests.conftest import make_settings
from tillsync.db.migrations import (
    BackfillRows,
    CreateTable,
    Migration,
    MigrationContext,
    MigrationRunner,
    SchemaMigrationError,
    run_migrations,
)
from tillsync.db.session import LocalStore, create_local_engine
from tillsync.db.transactions import TransactionCoordinator
from tillsync.db.versions import LATEST_VERSION, MIGRATIONS
from tillsync.models import Customer, ExpenseSettlement
from tillsync.models.billing import SUBTYPE_ACCRUAL, SUBTYPE_CLEARANCE
from tillsync.services.entities import SYNC_ENTITIES

CONTEXT = MigrationContext(business_unit_id="shop_1", timezone="Asia/Kolkata")

LEGACY_ROWS = (
    "INSERT INTO customers (id, name, contact, createdAt, updatedAt, creditBalance) VALUES "
    "('c1', 'Asha', '98450', '2024-03-31T20:00:00.000Z', '2024-03-31T20:00:00.000Z', 100), "
    "('c2', 'Ravi', NULL, '2024-03-30T10:00:00.000Z', '2024-03-30T10:00:00.000Z', 0)",
    "INSERT INTO menu_items (id, name, category, price, isActive, createdAt, updatedAt) VALUES "
    "('m1', 'Masala Dosa', 'Tiffin', 150, 1, '2024-03-01T00:00:00.000Z', '2024-03-01T00:00:00.000Z')",
    "INSERT INTO bills (id, billNumber, customerId, total, createdAt) VALUES "
    "('b1', 7, 'c1', 300, '2024-03-31T20:00:00.000Z')",
    "INSERT INTO kot_orders (id, kotNumber, customerId, billId, createdAt) VALUES "
    "('k1', 3, 'c1', 'b1', '2024-03-31T19:55:00.000Z')",
    "INSERT INTO kot_items (id, kotId, itemId, quantity, priceAtTime) VALUES "
    "('ki1', 'k1', 'm1', 2, 150)",
    "INSERT INTO payments (id, billId, customerId, amount, mode, subType, remarks, createdAt) VALUES "
    "('p1', 'b1', 'c1', 150, 'cash', NULL, NULL, '2024-03-31T20:00:00.000Z'), "
    "('p2', 'b1', 'c1', 150, 'credit', NULL, NULL, '2024-03-31T20:00:00.000Z'), "
    "('p3', NULL, 'c1', 50, 'credit_clear', NULL, NULL, '2024-03-31T21:00:00.000Z')",
    "INSERT INTO receipts (id, receiptNo, customerId, billId, amount, mode, remarks, createdAt) VALUES "
    "('r1', 4, 'c1', 'b1', 150, 'upi', NULL, '2024-03-31T20:00:00.000Z')",
    "INSERT INTO expenses (id, voucherNo, amount, towards, mode, remarks, createdAt) VALUES "
    "('e1', 1, 500, 'Milk vendor', 'Credit', NULL, '2024-03-31T05:00:00.000Z'), "
    "('e2', 2, 80, 'Auto fare', 'Cash', NULL, '2024-03-31T06:00:00.000Z')",
)


@pytest.fixture()
def engine() -> Iterator[Engine]:
    engine = create_local_engine(make_settings())
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def coordinator(engine: Engine) -> TransactionCoordinator:
    return TransactionCoordinator(engine, business_unit_id="shop_1", sleep=lambda _: None)


def _user_version(coordinator: TransactionCoordinator) -> int:
    with coordinator.read() as session:
        return int(session.execute(text("PRAGMA user_version")).scalar_one())


def _scalar(coordinator: TransactionCoordinator, sql: str) -> object:
    with coordinator.read() as session:
        return session.execute(text(sql)).scalar()


def _legacy_database(coordinator: TransactionCoordinator) -> None:
    MigrationRunner(coordinator, MIGRATIONS[:1], CONTEXT).run()
    with coordinator.transaction() as session:
        for statement in LEGACY_ROWS:
            session.execute(text(statement))


def test_fresh_store_reaches_latest_version(store: LocalStore) -> None:
    assert store.schema_version == LATEST_VERSION
    assert store.current_schema_version() == LATEST_VERSION


def test_rerun_is_a_noop(coordinator: TransactionCoordinator) -> None:
    assert run_migrations(coordinator, CONTEXT) == LATEST_VERSION
    runner = MigrationRunner(coordinator, MIGRATIONS, CONTEXT)
    assert runner.pending() == []
    assert runner.run() == LATEST_VERSION


def test_change_columns_are_indexed_on_every_synced_table(store: LocalStore) -> None:
    with store.coordinator.read() as session:
        names = set(
            session.execute(text("SELECT name FROM sqlite_master WHERE type = 'index'")).scalars()
        )

    for entity in SYNC_ENTITIES:
        assert f"idx_{entity.name}_updatedAt" in names
        assert f"idx_{entity.name}_deletedAt" in names


def test_runner_requires_contiguous_versions(coordinator: TransactionCoordinator) -> None:
    with pytest.raises(ValueError):
        MigrationRunner(coordinator, (MIGRATIONS[0], MIGRATIONS[2]), CONTEXT)


def test_legacy_database_is_upgraded_with_backfills(coordinator: TransactionCoordinator) -> None:
    _legacy_database(coordinator)
    assert _user_version(coordinator) == 1

    assert run_migrations(coordinator, CONTEXT) == LATEST_VERSION

    # Change tracking columns were added and backfilled.
    assert _scalar(coordinator, "SELECT shopId FROM customers WHERE id = 'c1'") == "shop_1"
    assert _scalar(coordinator, "SELECT updatedAt FROM bills WHERE id = 'b1'") == (
        "2024-03-31T20:00:00.000Z"
    )
    assert _scalar(coordinator, "SELECT createdAt FROM kot_items WHERE id = 'ki1'") == (
        "2024-03-31T19:55:00.000Z"
    )
    assert _scalar(coordinator, "SELECT COUNT(*) FROM customers WHERE deletedAt IS NOT NULL") == 0

    # 20:00 UTC on March 31st is already April 1st in India.
    assert _scalar(coordinator, "SELECT businessDate FROM bills WHERE id = 'b1'") == "2024-04-01"
    assert _scalar(coordinator, "SELECT expenseDate FROM expenses WHERE id = 'e1'") == "2024-03-31"

    # Payment modes were normalized and credit subtypes derived.
    assert _scalar(coordinator, "SELECT mode FROM payments WHERE id = 'p1'") == "Cash"
    assert _scalar(coordinator, "SELECT subType FROM payments WHERE id = 'p2'") == SUBTYPE_ACCRUAL
    assert _scalar(coordinator, "SELECT mode FROM payments WHERE id = 'p3'") == "CreditClear"
    assert _scalar(coordinator, "SELECT subType FROM payments WHERE id = 'p3'") == SUBTYPE_CLEARANCE
    assert _scalar(coordinator, "SELECT mode FROM receipts WHERE id = 'r1'") == "UPI"

    with coordinator.read() as session:
        settlements = {
            row.expense_id: row for row in session.execute(select(ExpenseSettlement)).scalars()
        }
    assert set(settlements) == {"e1", "e2"}
    assert settlements["e1"].id == "legacy-e1"
    assert settlements["e1"].sub_type == SUBTYPE_ACCRUAL
    assert settlements["e1"].amount == 500
    assert settlements["e2"].payment_type == "Cash"
    assert settlements["e2"].sub_type is None


def test_upgrade_relaxes_customer_contact(coordinator: TransactionCoordinator) -> None:
    _legacy_database(coordinator)
    run_migrations(coordinator, CONTEXT)

    with coordinator.transaction() as session:
        session.add(Customer(name="Asha's brother", contact="98450", credit_balance=0))

    assert _scalar(coordinator, "SELECT COUNT(*) FROM customers WHERE contact = '98450'") == 2
    # Rows and foreign keys survived the rebuild.
    assert _scalar(coordinator, "SELECT creditBalance FROM customers WHERE id = 'c1'") == 100
    assert _scalar(coordinator, "SELECT COUNT(*) FROM bills WHERE customerId = 'c1'") == 1


def test_failing_migration_rolls_back(coordinator: TransactionCoordinator) -> None:
    run_migrations(coordinator, CONTEXT)
    broken = Migration(
        version=LATEST_VERSION + 1,
        description="broken",
        steps=(
            CreateTable("scratch", "CREATE TABLE scratch (id TEXT PRIMARY KEY)"),
            BackfillRows("update missing table", "UPDATE no_such_table SET x = 1"),
        ),
    )

    with pytest.raises(SchemaMigrationError) as exc_info:
        run_migrations(coordinator, CONTEXT, (*MIGRATIONS, broken))

    assert exc_info.value.version == LATEST_VERSION + 1
    assert "update missing table" in str(exc_info.value)
    assert _user_version(coordinator) == LATEST_VERSION
    assert _scalar(coordinator, "SELECT COUNT(*) FROM sqlite_master WHERE name = 'scratch'") == 0


def test_newer_schema_is_refused(coordinator: TransactionCoordinator) -> None:
    run_migrations(coordinator, CONTEXT)
    with coordinator.transaction() as session:
        session.execute(text(f"PRAGMA user_version = {LATEST_VERSION + 5}"))

    with pytest.raises(SchemaMigrationError):
        run_migrations(coordinator, CONTEXT)


def test_store_stays_closed_when_migration_fails(tmp_path: Path) -> None:
    path = tmp_path / "newer.db"
    connection = sqlite3.connect(path)
    connection.execute(f"PRAGMA user_version = {LATEST_VERSION + 1}")
    connection.close()

    store = LocalStore(make_settings(database_url=f"sqlite:///{path}"), sleep=lambda _: None)
    with pytest.raises(SchemaMigrationError):
        store.open()
    assert not store.is_open


def test_file_store_survives_reopen(tmp_path: Path) -> None:
    config = make_settings(database_url=f"sqlite:///{tmp_path / 'till.db'}")
    store = LocalStore(config, sleep=lambda _: None).open()
    with store.coordinator.transaction() as session:
        session.add(Customer(name="Asha", credit_balance=0))
    store.close()

    reopened = LocalStore(config, sleep=lambda _: None).open()
    try:
        assert reopened.schema_version == LATEST_VERSION
        with reopened.coordinator.read() as session:
            names = session.execute(select(Customer.name)).scalars().all()
        assert names == ["Asha"]
    finally:
        reopened.close()
