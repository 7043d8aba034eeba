"""Tests for locally generated document numbers."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from tests.conftest import make_settings
from tillsync.db.session import LocalStore
from tillsync.db.transactions import NoActiveTransactionError
from tillsync.models import Bill, Customer
from tillsync.services.ledger import LedgerService, OrderLine

# 12:00 in India on June 1st.
NOON = datetime(2024, 6, 1, 6, 30, tzinfo=UTC)


def _next(store: LocalStore, name: str, at: datetime) -> int:
    with store.coordinator.transaction() as session:
        return store.sequences.next(session, name, at)


def test_numbers_increase_within_a_day(store: LocalStore) -> None:
    assert [_next(store, "kot", NOON) for _ in range(3)] == [1, 2, 3]


def test_kot_numbers_restart_each_business_day(store: LocalStore) -> None:
    _next(store, "kot", NOON)
    _next(store, "kot", NOON)
    # 19:00 UTC is already the next day in India.
    assert _next(store, "kot", datetime(2024, 6, 1, 19, 0, tzinfo=UTC)) == 1


def test_bill_numbers_restart_each_fiscal_year(store: LocalStore) -> None:
    march = datetime(2024, 3, 31, 12, 0, tzinfo=UTC)
    april = datetime(2024, 3, 31, 19, 0, tzinfo=UTC)
    assert _next(store, "bill", march) == 1
    assert _next(store, "bill", march) == 2
    assert _next(store, "bill", april) == 1
    assert _next(store, "bill", NOON) == 2


def test_sequences_are_independent(store: LocalStore) -> None:
    assert _next(store, "bill", NOON) == 1
    assert _next(store, "receipt", NOON) == 1
    assert _next(store, "expense", NOON) == 1
    assert _next(store, "bill", NOON) == 2


def test_period_keys(store: LocalStore) -> None:
    sequences = store.sequences
    assert sequences.period_key("kot", NOON) == "2024-06-01"
    assert sequences.period_key("bill", NOON) == "2024"
    assert sequences.period_key("receipt", datetime(2025, 3, 31, 12, 0, tzinfo=UTC)) == "2024"
    assert sequences.period_key("expense", datetime(2025, 3, 31, 19, 0, tzinfo=UTC)) == "2025"


def test_rolled_back_transaction_does_not_consume_a_number(store: LocalStore) -> None:
    with pytest.raises(RuntimeError):
        with store.coordinator.transaction() as session:
            assert store.sequences.next(session, "bill", NOON) == 1
            raise RuntimeError("sale abandoned")
    assert _next(store, "bill", NOON) == 1


def test_first_number_is_seeded_from_existing_rows(store: LocalStore) -> None:
    with store.coordinator.transaction() as session:
        session.add(Customer(id="c1", name="Asha", credit_balance=0))
        session.flush()
        session.add(Bill(bill_number=41, customer_id="c1", total=100, business_date="2024-05-20"))
        # Tombstoned rows keep their numbers.
        session.add(
            Bill(
                bill_number=42,
                customer_id="c1",
                total=100,
                business_date="2024-05-21",
                deleted_at=NOON,
            )
        )
        # Previous fiscal year does not count.
        session.add(Bill(bill_number=90, customer_id="c1", total=100, business_date="2024-03-30"))

    with store.coordinator.read() as session:
        assert store.sequences.peek(session, "bill", NOON) == 42
    assert _next(store, "bill", NOON) == 43


def test_peek_does_not_consume(store: LocalStore) -> None:
    _next(store, "receipt", NOON)
    with store.coordinator.read() as session:
        assert store.sequences.peek(session, "receipt", NOON) == 1
        assert store.sequences.peek(session, "receipt", NOON) == 1
    assert _next(store, "receipt", NOON) == 2


def test_next_requires_a_write_transaction(store: LocalStore) -> None:
    with store.coordinator.read() as session:
        with pytest.raises(NoActiveTransactionError):
            store.sequences.next(session, "kot", NOON)


def test_naive_timestamps_are_rejected(store: LocalStore) -> None:
    with store.coordinator.transaction() as session:
        with pytest.raises(ValueError):
            store.sequences.next(session, "kot", datetime(2024, 6, 1, 12, 0))


def test_unknown_sequence(store: LocalStore) -> None:
    with pytest.raises(KeyError):
        store.sequences.period_key("invoice", NOON)


def test_fiscal_year_starts_exactly_at_local_midnight(store: LocalStore) -> None:
    boundary = datetime(2024, 3, 31, 18, 30, tzinfo=UTC)
    before = boundary - timedelta(milliseconds=1)
    assert store.sequences.period_key("bill", before) == "2023"
    assert store.sequences.period_key("bill", boundary) == "2024"
    assert _next(store, "bill", before) == 1
    assert _next(store, "bill", before) == 2
    assert _next(store, "bill", boundary) == 1


def test_business_day_starts_exactly_at_local_midnight(store: LocalStore) -> None:
    midnight = datetime(2024, 6, 1, 18, 30, tzinfo=UTC)
    before = midnight - timedelta(milliseconds=1)
    assert store.sequences.period_key("kot", before) == "2024-06-01"
    assert store.sequences.period_key("kot", midnight) == "2024-06-02"
    assert _next(store, "kot", before) == 1
    assert _next(store, "kot", before) == 2
    assert _next(store, "kot", midnight) == 1


def test_concurrent_orders_get_distinct_numbers(tmp_path: Path) -> None:
    config = make_settings(
        database_url=f"sqlite:///{tmp_path / 'till.db'}",
        sqlite_busy_timeout_ms=5000,
        tx_max_retries=20,
    )
    store = LocalStore(config, sleep=lambda _: None).open()
    try:
        ledger = LedgerService(store)
        customer = ledger.create_customer("Asha")
        item = ledger.create_menu_item("Idli", 40)

        def place_orders() -> list[int]:
            return [
                ledger.create_order(customer.id, [OrderLine(item.id, 1)], at=NOON).kot_number
                for _ in range(25)
            ]

        with ThreadPoolExecutor(max_workers=4) as pool:
            batches = [pool.submit(place_orders) for _ in range(4)]
            numbers = [number for batch in batches for number in batch.result()]

        assert len(numbers) == 100
        assert sorted(numbers) == list(range(1, 101))
    finally:
        store.close()
