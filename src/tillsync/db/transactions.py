"""Transaction coordination for the local SQLite store.

Every write to the local store goes through :class:`TransactionCoordinator`.
It issues ``BEGIN IMMEDIATE`` itself (pysqlite's implicit transactions are
disabled for the engine), retries only the acquisition of the write lock when
SQLite reports the database as locked or busy, and stamps change-tracking
columns on every flushed row.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy import event
from sqlalchemy.engine import Connection, Engine, Transaction
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from tillsync.db.time import ONE_MILLISECOND, utcnow
from tillsync.models.base import SyncableMixin

# Configure logger for this module
logger = logging.getLogger(__name__)

T = TypeVar("T")

BEGIN_MODE_KEY = "tillsync.begin_mode"
SESSION_COORDINATOR_KEY = "tillsync.coordinator"
SESSION_ACTIVE_KEY = "tillsync.active"
SESSION_READ_ONLY_KEY = "tillsync.read_only"


class TransactionError(RuntimeError):
    """Base exception for local transaction failures."""


class TransactionBusyError(TransactionError):
    """Raised when the write lock could not be acquired within the retry budget."""


class NoActiveTransactionError(TransactionError):
    """Raised when an operation requires an open coordinator transaction."""


def is_busy_error(exc: BaseException) -> bool:
    """Return True if ``exc`` is SQLite reporting lock contention."""
    message = str(getattr(exc, "orig", exc)).lower()
    return "locked" in message or "busy" in message


def install_transaction_control(engine: Engine) -> None:
    """Make the engine emit our own BEGIN statements.

    pysqlite normally defers BEGIN until the first DML statement and never
    emits it for DDL. Disabling that lets migrations run DDL transactionally
    and lets the coordinator choose IMMEDIATE or DEFERRED mode.
    """

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn: Connection) -> None:
        mode = conn.info.pop(BEGIN_MODE_KEY, "IMMEDIATE")
        conn.exec_driver_sql(f"BEGIN {mode}")


def require_transaction(session: Session) -> TransactionCoordinator:
    """Return the coordinator owning ``session`` or raise if it is not a live write transaction."""
    coordinator = session.info.get(SESSION_COORDINATOR_KEY)
    if (
        coordinator is None
        or not session.info.get(SESSION_ACTIVE_KEY)
        or session.info.get(SESSION_READ_ONLY_KEY)
    ):
        raise NoActiveTransactionError("operation must run inside TransactionCoordinator.transaction()")
    return coordinator


class MonotonicClock:
    """UTC clock that never returns the same or an earlier instant twice."""

    def __init__(self, source: Callable[[], datetime] = utcnow) -> None:
        self._source = source
        self._last: datetime | None = None
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            current = self._source()
            if self._last is not None and current <= self._last:
                current = self._last + ONE_MILLISECOND
            self._last = current
            return current

    def observe(self, at: datetime) -> None:
        """Never hand out an instant at or before ``at`` from now on."""
        with self._lock:
            if self._last is None or at > self._last:
                self._last = at


class TransactionCoordinator:
    """Atomic, retry-on-contention transactions over a SQLite engine."""

    def __init__(
        self,
        engine: Engine,
        *,
        business_unit_id: str,
        max_retries: int = 3,
        backoff_seconds: float = 0.15,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the coordinator.

        Args:
            engine: Engine prepared with :func:`install_transaction_control`.
            business_unit_id: Partition key stamped on new rows that lack one.
            max_retries: Extra attempts to acquire the write lock after the first.
            backoff_seconds: Linear backoff unit; attempt ``n`` waits ``n * backoff``.
            clock: Source of UTC timestamps, wrapped to be strictly monotonic.
            sleep: Sleep function, replaceable in tests.
        """
        self._engine = engine
        self._business_unit_id = business_unit_id
        self._max_retries = max(0, int(max_retries))
        self._backoff_seconds = max(0.0, float(backoff_seconds))
        self._clock = MonotonicClock(clock or utcnow)
        self._sleep = sleep

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def business_unit_id(self) -> str:
        return self._business_unit_id

    def now(self) -> datetime:
        """Return the next change-tracking timestamp."""
        return self._clock.now()

    def observe(self, at: datetime) -> None:
        """Order every later change-tracking stamp after ``at`` (pulled or pinned rows)."""
        self._clock.observe(at)

    @contextmanager
    def transaction(self, *, foreign_keys: bool = True) -> Iterator[Session]:
        """Run a block inside one ``BEGIN IMMEDIATE`` transaction.

        The yielded session is flushed and the transaction committed when the
        block exits normally; any exception rolls everything back and is
        re-raised unchanged.

        Args:
            foreign_keys: When False, foreign key enforcement is switched off
                for this connection around the transaction (table rebuilds).

        Raises:
            TransactionBusyError: If the write lock stays unavailable.
        """
        connection, transaction = self._begin("IMMEDIATE", foreign_keys=foreign_keys)
        session = self._open_session(connection, read_only=False)
        try:
            yield session
            session.flush()
        except BaseException:
            self._finish(session, connection, transaction, commit=False, foreign_keys=foreign_keys)
            raise
        self._finish(session, connection, transaction, commit=True, foreign_keys=foreign_keys)

    def run(self, work: Callable[[Session], T]) -> T:
        """Execute ``work(session)`` inside :meth:`transaction` and return its result."""
        with self.transaction() as session:
            return work(session)

    @contextmanager
    def read(self) -> Iterator[Session]:
        """Yield a consistent read-only snapshot (``BEGIN DEFERRED``, always rolled back)."""
        connection, transaction = self._begin("DEFERRED", foreign_keys=True)
        session = self._open_session(connection, read_only=True)
        try:
            yield session
        finally:
            self._finish(session, connection, transaction, commit=False, foreign_keys=True)

    def override_updated_at(self, row: SyncableMixin, at: datetime) -> None:
        """Pin ``updated_at`` for the next flush of ``row``.

        Only diagnostics and tests use this, to simulate an edit made "in the
        future" relative to another replica. Later stamps from this
        coordinator are ordered after ``at``.
        """
        if at.tzinfo is None:
            raise ValueError("override timestamp must be timezone-aware")
        row._updated_at_override = at
        row.updated_at = at
        self.observe(at)

    def _begin(self, mode: str, *, foreign_keys: bool) -> tuple[Connection, Transaction]:
        attempt = 0
        while True:
            connection = self._engine.connect()
            if not foreign_keys:
                _set_foreign_keys(connection, enabled=False)
            connection.info[BEGIN_MODE_KEY] = mode
            try:
                return connection, connection.begin()
            except OperationalError as exc:
                connection.info.pop(BEGIN_MODE_KEY, None)
                if not foreign_keys:
                    _set_foreign_keys(connection, enabled=True)
                connection.close()
                if not is_busy_error(exc):
                    raise
                if attempt >= self._max_retries:
                    raise TransactionBusyError(
                        f"could not begin {mode} transaction after {attempt + 1} attempts: {exc.orig}"
                    ) from exc
                attempt += 1
                delay = self._backoff_seconds * attempt
                logger.warning(
                    "Local store busy, retrying BEGIN %s (attempt %s/%s) in %.2fs",
                    mode,
                    attempt,
                    self._max_retries,
                    delay,
                )
                self._sleep(delay)

    def _open_session(self, connection: Connection, *, read_only: bool) -> Session:
        session = Session(bind=connection, autoflush=True, expire_on_commit=False)
        session.info[SESSION_COORDINATOR_KEY] = self
        session.info[SESSION_ACTIVE_KEY] = True
        session.info[SESSION_READ_ONLY_KEY] = read_only
        event.listen(session, "before_flush", self._stamp_changes)
        return session

    def _finish(
        self,
        session: Session,
        connection: Connection,
        transaction: Transaction,
        *,
        commit: bool,
        foreign_keys: bool,
    ) -> None:
        session.info[SESSION_ACTIVE_KEY] = False
        try:
            if commit:
                transaction.commit()
            else:
                transaction.rollback()
        finally:
            session.close()
            if not foreign_keys:
                _set_foreign_keys(connection, enabled=True)
            connection.close()

    def _stamp_changes(self, session: Session, flush_context: Any, instances: Any) -> None:
        if session.info.get(SESSION_READ_ONLY_KEY):
            raise TransactionError("read-only snapshot cannot write")

        for row in session.new:
            if not isinstance(row, SyncableMixin):
                continue
            stamp = self._stamp_for(row)
            if row.created_at is None:
                row.created_at = stamp
            row.updated_at = stamp
            if not row.business_unit_id:
                row.business_unit_id = self._business_unit_id

        for row in session.dirty:
            if isinstance(row, SyncableMixin) and session.is_modified(row, include_collections=False):
                row.updated_at = self._stamp_for(row)

    def _stamp_for(self, row: SyncableMixin) -> datetime:
        override = row._updated_at_override
        if override is not None:
            row._updated_at_override = None
            return override
        return self.now()


def _set_foreign_keys(connection: Connection, *, enabled: bool) -> None:
    # Must run outside any transaction, so bypass SQLAlchemy's autobegin.
    value = "ON" if enabled else "OFF"
    connection.connection.driver_connection.execute(f"PRAGMA foreign_keys = {value}")
