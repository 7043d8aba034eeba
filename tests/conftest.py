# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

os.environ.setdefault("TILLSYNC_DATABASE_URL", "sqlite://")
os.environ.setdefault("TILLSYNC_SYNC_WORKER_ENABLED", "false")

from tillsync.api.v1.dependencies import get_remote_store_dep, get_sync_engine_dep
from tillsync.core.settings import Settings
from tillsync.db.session import LocalStore, get_opened_store
from tillsync.main import app as fastapi_app
from tillsync.services.ledger import LedgerService
from tillsync.services.remote_sql import SqlRemoteStore
from tillsync.services.sync import SyncEngine

TEST_DB_URL = "sqlite://"
BUSINESS_UNIT = "shop_1"


class FakeClock:
    """Settable UTC clock for change-tracking stamps."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


def make_settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "database_url": TEST_DB_URL,
        "business_unit_id": BUSINESS_UNIT,
        "business_timezone": "Asia/Kolkata",
        "fiscal_year_start_month": 4,
        "tx_backoff_seconds": 0.0,
        "open_backoff_seconds": 0.0,
        "sync_page_size": 1000,
        "remote_url": None,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture()
def test_settings() -> Settings:
    return make_settings()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 6, 1, 6, 30, tzinfo=UTC))


@pytest.fixture()
def store(test_settings: Settings, clock: FakeClock) -> Iterator[LocalStore]:
    local = LocalStore(test_settings, clock=clock, sleep=lambda _: None).open()
    try:
        yield local
    finally:
        local.close()


@pytest.fixture()
def other_store(clock: FakeClock) -> Iterator[LocalStore]:
    """A second device of the same shop, sharing the remote with ``store``."""
    local = LocalStore(make_settings(), clock=clock, sleep=lambda _: None).open()
    try:
        yield local
    finally:
        local.close()


@pytest.fixture()
def remote_engine() -> Iterator[Engine]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def remote(remote_engine: Engine) -> SqlRemoteStore:
    return SqlRemoteStore(remote_engine)


@pytest.fixture()
def sync_engine(store: LocalStore, remote: SqlRemoteStore) -> SyncEngine:
    return SyncEngine(store, remote)


@pytest.fixture()
def other_sync_engine(other_store: LocalStore, remote: SqlRemoteStore) -> SyncEngine:
    return SyncEngine(other_store, remote)


@pytest.fixture()
def ledger(store: LocalStore) -> LedgerService:
    return LedgerService(store)


@pytest.fixture()
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture()
def client(
    app: FastAPI, store: LocalStore, remote: SqlRemoteStore, sync_engine: SyncEngine
) -> Iterator[TestClient]:
    app.dependency_overrides[get_opened_store] = lambda: store
    app.dependency_overrides[get_remote_store_dep] = lambda: remote
    app.dependency_overrides[get_sync_engine_dep] = lambda: sync_engine
    try:
        with TestClient(app, base_url="http://test") as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()
