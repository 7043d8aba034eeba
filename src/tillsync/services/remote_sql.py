"""Remote store backed by a SQLAlchemy engine.

Used for self-hosted remotes (PostgreSQL) and as a real second database in
tests. Tables use the wire shape: snake_case columns and ``shop_id`` as the
partition key. ``updated_at`` is stored exactly as the client sent it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    and_,
    or_,
    select,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from tillsync.db.time import UTCDateTime, to_iso
from tillsync.services.entities import SYNC_ENTITIES, FieldKind, SyncableEntity
from tillsync.services.remote import RemoteRejectedError, RemoteStoreError, WireRow

_COLUMN_TYPES = {
    FieldKind.TEXT: Text,
    FieldKind.INTEGER: Integer,
    FieldKind.BOOLEAN: Boolean,
    FieldKind.TIMESTAMP: UTCDateTime,
}


def build_remote_metadata(entities: Sequence[SyncableEntity] = SYNC_ENTITIES) -> MetaData:
    """Return wire-shaped table definitions for ``entities``."""
    metadata = MetaData()
    for entity in entities:
        columns = [
            Column(field.wire, _COLUMN_TYPES[field.kind](), primary_key=field.wire == "id")
            for field in entity.fields
        ]
        Table(
            entity.wire_table,
            metadata,
            *columns,
            Index(f"ix_{entity.wire_table}_updated_at", "updated_at"),
        )
    return metadata


class SqlRemoteStore:
    """:class:`~tillsync.services.remote.RemoteStore` over a relational database."""

    def __init__(
        self,
        engine: Engine,
        *,
        entities: Sequence[SyncableEntity] = SYNC_ENTITIES,
        create_tables: bool = True,
    ) -> None:
        self.engine = engine
        self.metadata = build_remote_metadata(entities)
        if create_tables:
            self.metadata.create_all(engine)

    async def upsert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> None:
        if rows:
            await asyncio.to_thread(self._upsert, table, rows)

    async def fetch_since(
        self,
        table: str,
        since: datetime | None,
        *,
        limit: int,
        business_unit_id: str,
        after_id: str | None = None,
    ) -> list[WireRow]:
        return await asyncio.to_thread(
            self._fetch_since, table, since, limit, business_unit_id, after_id
        )

    async def fetch_by_ids(self, table: str, ids: Sequence[str]) -> list[WireRow]:
        if not ids:
            return []
        return await asyncio.to_thread(self._fetch_by_ids, table, list(ids))

    async def close(self) -> None:
        return None

    def get_row(self, table: str, row_id: str) -> WireRow | None:
        """Synchronous lookup used by tooling and tests."""
        rows = self._fetch_by_ids(table, [row_id])
        return rows[0] if rows else None

    def _table(self, name: str) -> Table:
        try:
            return self.metadata.tables[name]
        except KeyError:
            raise RemoteRejectedError(404, f"unknown table {name}") from None

    def _upsert(self, table_name: str, rows: Sequence[Mapping[str, Any]]) -> None:
        table = self._table(table_name)
        names = {column.name for column in table.columns}
        values = []
        for row in rows:
            unknown = set(row) - names
            if unknown:
                raise RemoteRejectedError(400, f"{table_name}: unknown columns {sorted(unknown)}")
            values.append({name: row.get(name) for name in names})

        dialect = self.engine.dialect.name
        if dialect == "postgresql":
            statement = postgresql.insert(table)
        elif dialect == "sqlite":
            statement = sqlite.insert(table)
        else:
            raise RemoteStoreError(f"unsupported remote dialect {dialect}")
        statement = statement.on_conflict_do_update(
            index_elements=["id"],
            set_={name: statement.excluded[name] for name in names if name != "id"},
        )
        try:
            with self.engine.begin() as connection:
                connection.execute(statement, values)
        except IntegrityError as exc:
            raise RemoteRejectedError(409, str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            raise RemoteStoreError(f"{table_name}: upsert failed: {exc}") from exc

    def _fetch_since(
        self,
        table_name: str,
        since: datetime | None,
        limit: int,
        business_unit_id: str,
        after_id: str | None = None,
    ) -> list[WireRow]:
        table = self._table(table_name)
        query = select(table).where(
            or_(table.c.shop_id == business_unit_id, table.c.shop_id.is_(None))
        )
        if since is not None and after_id is not None:
            query = query.where(
                or_(
                    table.c.updated_at > since,
                    and_(table.c.updated_at == since, table.c.id > after_id),
                )
            )
        elif since is not None:
            query = query.where(table.c.updated_at >= since)
        query = query.order_by(table.c.updated_at, table.c.id).limit(limit)
        return self._select(query, table_name)

    def _fetch_by_ids(self, table_name: str, ids: list[str]) -> list[WireRow]:
        table = self._table(table_name)
        return self._select(select(table).where(table.c.id.in_(ids)), table_name)

    def _select(self, query: Any, table_name: str) -> list[WireRow]:
        try:
            with self.engine.connect() as connection:
                result = connection.execute(query).mappings().all()
        except SQLAlchemyError as exc:
            raise RemoteStoreError(f"{table_name}: query failed: {exc}") from exc
        return [
            {key: to_iso(value) if isinstance(value, datetime) else value for key, value in row.items()}
            for row in result
        ]
