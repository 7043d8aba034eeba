"""Local store handle.

A :class:`LocalStore` owns the SQLite engine, the transaction coordinator and
the sequence generator. It opens lazily: the first caller creates the engine
and runs the schema migrations, concurrent callers wait for that same attempt,
and a failed open leaves the store closed so the next caller tries again.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable, Generator
from datetime import datetime
from typing import Any

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from tillsync.core.settings import Settings, settings
from tillsync.db.migrations import MigrationContext, run_migrations
from tillsync.db.transactions import (
    TransactionBusyError,
    TransactionCoordinator,
    install_transaction_control,
)
from tillsync.services.sequences import LocalSequenceGenerator

# Configure logger for this module
logger = logging.getLogger(__name__)


class StoreClosedError(RuntimeError):
    """Raised when the store is used before :meth:`LocalStore.open` succeeded."""


def create_local_engine(config: Settings) -> Engine:
    """Create a SQLite engine with the store's connection PRAGMAs applied."""
    connect_args: dict[str, Any] = {
        "check_same_thread": False,
        "timeout": max(0, config.sqlite_busy_timeout_ms) / 1000,
    }
    engine_kwargs: dict[str, Any] = {"echo": config.sql_debug, "connect_args": connect_args}
    if config.is_memory_database:
        # One shared connection, otherwise every checkout sees an empty database.
        engine_kwargs["poolclass"] = StaticPool

    engine = create_engine(config.database_url, **engine_kwargs)
    install_transaction_control(engine)
    busy_timeout = max(0, int(config.sqlite_busy_timeout_ms))

    @event.listens_for(engine, "connect")
    def _apply_pragmas(dbapi_connection: Any, connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA foreign_keys = ON")
            cursor.execute(f"PRAGMA busy_timeout = {busy_timeout}")
            cursor.execute("PRAGMA journal_mode = WAL")
            cursor.execute("PRAGMA synchronous = NORMAL")
        finally:
            cursor.close()

    return engine


class LocalStore:
    """Explicitly owned handle to the local store."""

    def __init__(
        self,
        config: Settings | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize a closed store.

        Args:
            config: Settings to use; defaults to the module-level settings.
            clock: Optional UTC clock for change tracking (tests).
            sleep: Sleep function used for busy backoff (tests).
        """
        self.config = config or settings
        self._clock = clock
        self._sleep = sleep
        self._engine: Engine | None = None
        self._coordinator: TransactionCoordinator | None = None
        self._sequences: LocalSequenceGenerator | None = None
        self._schema_version: int | None = None
        self._open_lock = threading.Lock()
        self._async_open_lock: asyncio.Lock | None = None

    @property
    def is_open(self) -> bool:
        return self._coordinator is not None

    @property
    def engine(self) -> Engine:
        return self._require_open()[0]

    @property
    def coordinator(self) -> TransactionCoordinator:
        return self._require_open()[1]

    @property
    def sequences(self) -> LocalSequenceGenerator:
        return self._require_open()[2]

    @property
    def schema_version(self) -> int | None:
        return self._schema_version

    def open(self) -> LocalStore:
        """Open the store and migrate its schema; a no-op once open.

        Raises:
            SchemaMigrationError: If a migration fails. The store stays closed.
            TransactionBusyError: If the database stayed locked through every
                open attempt.
        """
        with self._open_lock:
            if self._coordinator is not None:
                return self

            engine = create_local_engine(self.config)
            coordinator = TransactionCoordinator(
                engine,
                business_unit_id=self.config.business_unit_id,
                max_retries=self.config.tx_max_retries,
                backoff_seconds=self.config.tx_backoff_seconds,
                clock=self._clock,
                sleep=self._sleep,
            )
            context = MigrationContext(
                business_unit_id=self.config.business_unit_id,
                timezone=self.config.business_timezone,
            )
            try:
                version = self._migrate_with_retry(coordinator, context)
            except BaseException:
                engine.dispose()
                raise

            self._engine = engine
            self._coordinator = coordinator
            self._sequences = LocalSequenceGenerator(
                timezone=self.config.business_timezone,
                fiscal_year_start_month=self.config.fiscal_year_start_month,
                scope=self.config.business_unit_id,
            )
            self._schema_version = version
            logger.info("Local store open at schema version %s", version)
            return self

    async def ensure_open(self) -> LocalStore:
        """Async variant of :meth:`open`; concurrent awaiters share one attempt."""
        if self._coordinator is not None:
            return self
        if self._async_open_lock is None:
            self._async_open_lock = asyncio.Lock()
        async with self._async_open_lock:
            if self._coordinator is None:
                await asyncio.to_thread(self.open)
        return self

    def close(self) -> None:
        with self._open_lock:
            if self._engine is not None:
                self._engine.dispose()
            self._engine = None
            self._coordinator = None
            self._sequences = None
            self._schema_version = None

    def current_schema_version(self) -> int:
        with self.coordinator.read() as session:
            return int(session.execute(text("PRAGMA user_version")).scalar_one())

    def _migrate_with_retry(
        self, coordinator: TransactionCoordinator, context: MigrationContext
    ) -> int:
        attempts = max(1, int(self.config.open_max_retries))
        for attempt in range(1, attempts + 1):
            try:
                return run_migrations(coordinator, context)
            except TransactionBusyError:
                if attempt >= attempts:
                    raise
                delay = self.config.open_backoff_seconds * attempt
                logger.warning(
                    "Local store locked during open, retrying (%s/%s) in %.2fs",
                    attempt,
                    attempts,
                    delay,
                )
                self._sleep(delay)
        raise TransactionBusyError("local store could not be opened")

    def _require_open(
        self,
    ) -> tuple[Engine, TransactionCoordinator, LocalSequenceGenerator]:
        engine, coordinator, sequences = self._engine, self._coordinator, self._sequences
        if engine is None or coordinator is None or sequences is None:
            raise StoreClosedError("local store is not open")
        return engine, coordinator, sequences


class _LocalStoreSingleton:
    """Process-wide store used by the API and the CLI scripts."""

    _instance: LocalStore | None = None

    @classmethod
    def get_instance(cls) -> LocalStore:
        if cls._instance is None:
            cls._instance = LocalStore()
        return cls._instance


def get_store() -> LocalStore:
    """Return the application's store handle (not necessarily open yet)."""
    return _LocalStoreSingleton.get_instance()


def get_opened_store() -> Generator[LocalStore, None, None]:
    """Yield the opened application store for dependency injection."""
    yield get_store().open()
