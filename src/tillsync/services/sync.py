"""Checkpointed synchronization between the local store and the remote store.

Tables are processed one at a time in foreign-key order. For each table the
engine first pushes local rows changed since ``lastPushAt`` and then pulls
remote rows with ``updated_at >= lastPullAt``. Both directions are whole-row
overwrites keyed by ``id``; there is no field-level merge, so when two
replicas edit the same row between syncs, the replica that syncs last wins.

Network calls never run inside a local transaction. A pulled page and the
checkpoint it advances are written in the same transaction.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tillsync.db.session import LocalStore, get_store
from tillsync.db.time import to_iso, utcnow
from tillsync.db.transactions import TransactionError
from tillsync.models import SyncCheckpoint
from tillsync.services.entities import SYNC_ENTITIES, MappingError, SyncableEntity, get_entity
from tillsync.services.remote import RemoteStore, RemoteStoreError, get_remote_store
from tillsync.services.sync_log import attach_sync_log

# Configure logger for this module
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Checkpoint:
    """Snapshot of one table's sync high-water marks."""

    table: str
    last_push_at: datetime | None = None
    last_pull_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "last_push_at": to_iso(self.last_push_at) if self.last_push_at else None,
            "last_pull_at": to_iso(self.last_pull_at) if self.last_pull_at else None,
        }


@dataclass
class TableSyncResult:
    """Outcome of one table's push and pull."""

    table: str
    pushed: int = 0
    pulled: int = 0
    checkpoint: Checkpoint | None = None
    error: str | None = None
    exception: BaseException | None = field(default=None, repr=False, compare=False)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "pushed": self.pushed,
            "pulled": self.pulled,
            "error": self.error,
            "checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
        }


@dataclass
class SyncReport:
    """Outcome of a :meth:`SyncEngine.sync_all` cycle."""

    started_at: datetime
    finished_at: datetime | None = None
    tables: list[TableSyncResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.tables)

    @property
    def failed_table(self) -> str | None:
        for result in self.tables:
            if not result.ok:
                return result.table
        return None

    @property
    def pushed(self) -> int:
        return sum(result.pushed for result in self.tables)

    @property
    def pulled(self) -> int:
        return sum(result.pulled for result in self.tables)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "cancelled": self.cancelled,
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at) if self.finished_at else None,
            "pushed": self.pushed,
            "pulled": self.pulled,
            "failed_table": self.failed_table,
            "tables": [result.to_dict() for result in self.tables],
        }


class SyncError(RuntimeError):
    """Raised by ``sync_all(raise_on_error=True)`` when a table failed."""

    def __init__(self, table: str, message: str, report: SyncReport) -> None:
        super().__init__(f"sync of {table} failed: {message}")
        self.table = table
        self.report = report


class SyncEngine:
    """Push-then-pull synchronization over the registered entities."""

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteStore,
        *,
        entities: Sequence[SyncableEntity] = SYNC_ENTITIES,
        page_size: int | None = None,
    ) -> None:
        self._store = store
        self._remote = remote
        self._entities = tuple(entities)
        self._page_size = max(1, int(page_size or store.config.sync_page_size))
        self._lock = asyncio.Lock()
        self._last_report: SyncReport | None = None
        attach_sync_log()

    @property
    def remote(self) -> RemoteStore:
        return self._remote

    @property
    def entities(self) -> tuple[SyncableEntity, ...]:
        return self._entities

    @property
    def last_report(self) -> SyncReport | None:
        return self._last_report

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def sync_all(
        self,
        *,
        cancel: asyncio.Event | None = None,
        raise_on_error: bool = False,
    ) -> SyncReport:
        """Synchronize every table in dependency order.

        Stops at the first failing table, since later tables may reference
        rows it did not deliver. Completed tables keep their progress.

        Args:
            cancel: When set, the cycle stops before starting the next table.
            raise_on_error: Raise :class:`SyncError` instead of only reporting.

        Returns:
            Per-table counts, checkpoints and errors.
        """
        await self._store.ensure_open()
        async with self._lock:
            report = SyncReport(started_at=utcnow())
            logger.info("Sync started for %s tables", len(self._entities))
            for entity in self._entities:
                if cancel is not None and cancel.is_set():
                    report.cancelled = True
                    logger.info("Sync cancelled before %s", entity.name)
                    break
                result = await self._sync_entity(entity)
                report.tables.append(result)
                if not result.ok:
                    break
            report.finished_at = utcnow()
            self._last_report = report

        if report.ok:
            logger.info(
                "Sync finished: pushed %s, pulled %s row(s)", report.pushed, report.pulled
            )
        else:
            logger.warning("Sync stopped at %s", report.failed_table)
            if raise_on_error:
                failed = report.tables[-1]
                raise SyncError(failed.table, failed.error or "unknown error", report) from failed.exception
        return report

    async def sync_table(self, table: str | SyncableEntity) -> TableSyncResult:
        """Push then pull a single table."""
        entity = table if isinstance(table, SyncableEntity) else get_entity(table)
        await self._store.ensure_open()
        async with self._lock:
            return await self._sync_entity(entity)

    async def push_table(self, table: str | SyncableEntity) -> int:
        """Push one table's local changes; returns the number of rows sent."""
        entity = table if isinstance(table, SyncableEntity) else get_entity(table)
        await self._store.ensure_open()
        async with self._lock:
            return await self._push(entity)

    async def pull_table(self, table: str | SyncableEntity) -> int:
        """Pull one table's remote changes; returns the number of rows applied."""
        entity = table if isinstance(table, SyncableEntity) else get_entity(table)
        await self._store.ensure_open()
        async with self._lock:
            return await self._pull(entity)

    def get_checkpoint(self, table: str | SyncableEntity) -> Checkpoint:
        entity = table if isinstance(table, SyncableEntity) else get_entity(table)
        with self._store.coordinator.read() as session:
            row = session.get(SyncCheckpoint, entity.checkpoint_key)
            if row is None:
                return Checkpoint(entity.name)
            return Checkpoint(entity.name, row.last_push_at, row.last_pull_at)

    def checkpoints(self) -> list[Checkpoint]:
        with self._store.coordinator.read() as session:
            rows = {row.table_name: row for row in session.execute(select(SyncCheckpoint)).scalars()}
        checkpoints = []
        for entity in self._entities:
            row = rows.get(entity.checkpoint_key)
            if row is None:
                checkpoints.append(Checkpoint(entity.name))
            else:
                checkpoints.append(Checkpoint(entity.name, row.last_push_at, row.last_pull_at))
        return checkpoints

    def reset_pull_checkpoint(self, table: str | None = None) -> None:
        """Forget what was pulled so the next sync re-reads remote rows from the start."""
        self._reset(table, pull=True)

    def reset_push_checkpoint(self, table: str | None = None) -> None:
        """Forget what was pushed so the next sync re-sends every local row."""
        self._reset(table, pull=False)

    def last_sync_at(self) -> datetime | None:
        """Return the newest checkpoint across tables (pull preferred over push)."""
        stamps = [
            checkpoint.last_pull_at or checkpoint.last_push_at
            for checkpoint in self.checkpoints()
        ]
        present = [stamp for stamp in stamps if stamp is not None]
        return max(present) if present else None

    async def _sync_entity(self, entity: SyncableEntity) -> TableSyncResult:
        result = TableSyncResult(entity.name)
        try:
            result.pushed = await self._push(entity)
            result.pulled = await self._pull(entity)
        except (RemoteStoreError, MappingError, SQLAlchemyError, TransactionError) as exc:
            result.error = f"{type(exc).__name__}: {exc}"
            result.exception = exc
            logger.warning("Sync of %s failed: %s", entity.name, exc)
        result.checkpoint = await asyncio.to_thread(self.get_checkpoint, entity)
        return result

    async def _push(self, entity: SyncableEntity) -> int:
        rows, newest = await asyncio.to_thread(self._collect_changes, entity)
        if not rows or newest is None:
            return 0
        await self._remote.upsert(entity.wire_table, rows)
        await asyncio.to_thread(self._advance_push, entity.checkpoint_key, newest)
        logger.info("Pushed %s %s row(s) up to %s", len(rows), entity.name, to_iso(newest))
        return len(rows)

    async def _pull(self, entity: SyncableEntity) -> int:
        """Read remote changes page by page on the ``(updated_at, id)`` key.

        The first page starts at ``updated_at >= lastPullAt``; later pages
        continue after the last row seen, so rows sharing one ``updated_at``
        are never refetched within a cycle. The checkpoint itself only
        records the newest ``updated_at``.
        """
        since = (await asyncio.to_thread(self.get_checkpoint, entity)).last_pull_at
        after_id: str | None = None
        unit = self._store.config.business_unit_id
        total = 0
        while True:
            rows = await self._remote.fetch_since(
                entity.wire_table,
                since,
                limit=self._page_size,
                business_unit_id=unit,
                after_id=after_id,
            )
            cursor = await asyncio.to_thread(self._apply_page, entity, rows)
            total += len(rows)
            if len(rows) < self._page_size or cursor is None:
                break
            if after_id is not None and cursor <= (since, after_id):
                raise RemoteStoreError(
                    f"{entity.wire_table}: page did not advance past {to_iso(cursor[0])}/{cursor[1]}"
                )
            since, after_id = cursor
        if total:
            logger.info("Pulled %s %s row(s)", total, entity.name)
        return total

    def _collect_changes(
        self, entity: SyncableEntity
    ) -> tuple[list[dict[str, Any]], datetime | None]:
        model: Any = entity.model
        with self._store.coordinator.read() as session:
            since = self._peek_checkpoint(session, entity.checkpoint_key).last_push_at
            query = select(model)
            if since is not None:
                query = query.where(or_(model.updated_at > since, model.deleted_at > since))
            rows = session.execute(query.order_by(model.updated_at, model.id)).scalars().all()
            encoded = [entity.encode(row) for row in rows]
            newest = max((row.updated_at for row in rows), default=None)
        return encoded, newest

    def _advance_push(self, table: str, newest: datetime) -> None:
        with self._store.coordinator.transaction() as session:
            checkpoint = self._checkpoint_row(session, table)
            if checkpoint.last_push_at is None or newest > checkpoint.last_push_at:
                checkpoint.last_push_at = newest

    def _apply_page(
        self, entity: SyncableEntity, rows: Sequence[Mapping[str, Any]]
    ) -> tuple[datetime, str] | None:
        """Apply one pulled page and return its ``(updated_at, id)`` cursor."""
        unit = self._store.config.business_unit_id
        decoded = [entity.decode(row, default_business_unit=unit) for row in rows]
        if not decoded:
            return None
        with self._store.coordinator.transaction() as session:
            checkpoint = self._checkpoint_row(session, entity.checkpoint_key)
            self._upsert_rows(session, entity, decoded)
            newest = entity.max_updated_at(decoded)
            if newest is not None:
                self._store.coordinator.observe(newest)
            if newest is not None and (
                checkpoint.last_pull_at is None or newest > checkpoint.last_pull_at
            ):
                checkpoint.last_pull_at = newest
            self._absorb_pulled_rows(session, entity, checkpoint, decoded, newest)
        last = decoded[-1]
        return last[entity.column_key("updated_at")], last[entity.column_key("id")]

    @staticmethod
    def _upsert_rows(
        session: Session, entity: SyncableEntity, values: list[dict[str, Any]]
    ) -> None:
        # Core statement: bypasses the change tracker so remote timestamps are kept.
        table = entity.table
        statement = sqlite_insert(table)
        statement = statement.on_conflict_do_update(
            index_elements=[table.c[entity.column_key("id")]],
            set_={
                column.key: statement.excluded[column.key]
                for column in table.columns
                if not column.primary_key
            },
        )
        session.execute(statement, values)

    @staticmethod
    def _absorb_pulled_rows(
        session: Session,
        entity: SyncableEntity,
        checkpoint: SyncCheckpoint,
        values: list[dict[str, Any]],
        newest: datetime | None,
    ) -> None:
        """Advance ``lastPushAt`` over rows that are local only because they were pulled.

        If every local row changed since ``lastPushAt`` is one of the rows just
        applied, those rows already exist remotely in this exact state, and
        the next push would only echo them back.
        """
        since = checkpoint.last_push_at
        if newest is None or (since is not None and newest <= since):
            return
        model: Any = entity.model
        applied = {row[entity.column_key("id")] for row in values}
        query = select(model.id)
        if since is not None:
            query = query.where(or_(model.updated_at > since, model.deleted_at > since))
        for row_id in session.execute(query).scalars():
            if row_id not in applied:
                return
        checkpoint.last_push_at = newest

    @staticmethod
    def _checkpoint_row(session: Session, table: str) -> SyncCheckpoint:
        row = session.get(SyncCheckpoint, table)
        if row is None:
            row = SyncCheckpoint(table_name=table)
            session.add(row)
        return row

    @staticmethod
    def _peek_checkpoint(session: Session, table: str) -> Checkpoint:
        row = session.get(SyncCheckpoint, table)
        if row is None:
            return Checkpoint(table)
        return Checkpoint(table, row.last_push_at, row.last_pull_at)

    def _reset(self, table: str | None, *, pull: bool) -> None:
        entities = [get_entity(table)] if table else list(self._entities)
        names = [entity.checkpoint_key for entity in entities]
        with self._store.coordinator.transaction() as session:
            for name in names:
                checkpoint = self._checkpoint_row(session, name)
                if pull:
                    checkpoint.last_pull_at = None
                else:
                    checkpoint.last_push_at = None
        logger.info(
            "Reset %s checkpoint for %s", "pull" if pull else "push", table or "all tables"
        )


class _SyncEngineSingleton:
    """Process-wide engine over the application store and remote."""

    _instance: SyncEngine | None = None

    @classmethod
    def get_instance(cls) -> SyncEngine:
        if cls._instance is None:
            cls._instance = SyncEngine(get_store(), get_remote_store())
        return cls._instance


def get_sync_engine() -> SyncEngine:
    """Return the application's sync engine."""
    return _SyncEngineSingleton.get_instance()
