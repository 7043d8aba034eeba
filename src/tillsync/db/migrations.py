"""Forward-only schema migrations for the local store.

The schema version lives in SQLite's ``PRAGMA user_version``. Each pending
migration runs inside its own coordinator transaction together with the
version bump, so a failure leaves both the schema and the version exactly as
they were. Every step checks whether its change already exists before acting,
which makes re-running a migration after a transient lock error safe.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from tillsync.core.calendar import business_date
from tillsync.db.time import parse_iso
from tillsync.db.transactions import TransactionBusyError, TransactionCoordinator

# Configure logger for this module
logger = logging.getLogger(__name__)


class SchemaMigrationError(RuntimeError):
    """Raised when a migration fails; the store must not be used afterwards."""

    def __init__(self, version: int, description: str, reason: str) -> None:
        super().__init__(f"schema migration {version} ({description}) failed: {reason}")
        self.version = version
        self.description = description


@dataclass(frozen=True)
class MigrationContext:
    """Deployment values that backfills may depend on."""

    business_unit_id: str
    timezone: str

    def params(self) -> dict[str, Any]:
        return {"business_unit_id": self.business_unit_id}


class MigrationStep(Protocol):
    """A single idempotent structural or data change."""

    requires_foreign_keys_off: bool

    def apply(self, connection: Connection, context: MigrationContext) -> None: ...

    def describe(self) -> str: ...


def _quote(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def has_table(connection: Connection, table: str) -> bool:
    return inspect(connection).has_table(table)


def has_column(connection: Connection, table: str, column: str) -> bool:
    return any(col["name"] == column for col in inspect(connection).get_columns(table))


def has_index(connection: Connection, name: str) -> bool:
    row = connection.execute(
        text("SELECT 1 FROM sqlite_master WHERE type = 'index' AND name = :name"),
        {"name": name},
    ).first()
    return row is not None


def has_unique_constraint(connection: Connection, table: str, column: str) -> bool:
    """Return True if a UNIQUE constraint (not a CREATE INDEX) covers ``column``."""
    for index_row in connection.exec_driver_sql(f"PRAGMA index_list({_quote(table)})").all():
        # seq, name, unique, origin, partial
        if not index_row[2] or index_row[3] != "u":
            continue
        info = connection.exec_driver_sql(f"PRAGMA index_info({_quote(index_row[1])})").all()
        if column in {info_row[2] for info_row in info}:
            return True
    return False


@dataclass(frozen=True)
class AddColumn:
    """``ALTER TABLE ADD COLUMN`` with a default, optionally followed by a backfill."""

    table: str
    column: str
    ddl: str
    backfill: str | None = None
    requires_foreign_keys_off: bool = False

    def apply(self, connection: Connection, context: MigrationContext) -> None:
        if has_column(connection, self.table, self.column):
            return
        connection.exec_driver_sql(
            f"ALTER TABLE {_quote(self.table)} ADD COLUMN {_quote(self.column)} {self.ddl}"
        )
        if self.backfill:
            connection.execute(text(self.backfill), context.params())

    def describe(self) -> str:
        return f"add column {self.table}.{self.column}"


@dataclass(frozen=True)
class CreateTable:
    table: str
    ddl: str
    requires_foreign_keys_off: bool = False

    def apply(self, connection: Connection, context: MigrationContext) -> None:
        if has_table(connection, self.table):
            return
        connection.exec_driver_sql(self.ddl)

    def describe(self) -> str:
        return f"create table {self.table}"


@dataclass(frozen=True)
class CreateIndex:
    name: str
    table: str
    columns: tuple[str, ...]
    unique: bool = False
    requires_foreign_keys_off: bool = False

    def apply(self, connection: Connection, context: MigrationContext) -> None:
        if has_index(connection, self.name):
            return
        unique = "UNIQUE " if self.unique else ""
        columns = ", ".join(_quote(column) for column in self.columns)
        connection.exec_driver_sql(
            f"CREATE {unique}INDEX {_quote(self.name)} ON {_quote(self.table)} ({columns})"
        )

    def describe(self) -> str:
        return f"create index {self.name}"


@dataclass(frozen=True)
class BackfillColumn:
    """Fill NULL values of ``column`` from a SQL expression over the same row."""

    table: str
    column: str
    expression: str
    requires_foreign_keys_off: bool = False

    def apply(self, connection: Connection, context: MigrationContext) -> None:
        connection.execute(
            text(
                f"UPDATE {_quote(self.table)} SET {_quote(self.column)} = ({self.expression}) "
                f"WHERE {_quote(self.column)} IS NULL"
            ),
            context.params(),
        )

    def describe(self) -> str:
        return f"backfill {self.table}.{self.column}"


@dataclass(frozen=True)
class BackfillRows:
    """Arbitrary data backfill; the SQL itself must skip rows it already produced."""

    description: str
    sql: str
    requires_foreign_keys_off: bool = False

    def apply(self, connection: Connection, context: MigrationContext) -> None:
        connection.execute(text(self.sql), context.params())

    def describe(self) -> str:
        return self.description


@dataclass(frozen=True)
class BackfillDerived:
    """Fill NULL values of ``column`` with a value computed in Python per row.

    Used where SQLite cannot express the derivation, such as converting a UTC
    timestamp into a date in the business timezone.
    """

    table: str
    column: str
    sources: tuple[str, ...]
    derive: Callable[[Mapping[str, Any], MigrationContext], Any]
    requires_foreign_keys_off: bool = False

    def apply(self, connection: Connection, context: MigrationContext) -> None:
        selected = ", ".join(_quote(source) for source in ("id", *self.sources))
        rows = connection.exec_driver_sql(
            f"SELECT {selected} FROM {_quote(self.table)} WHERE {_quote(self.column)} IS NULL"
        ).mappings().all()
        updates = []
        for row in rows:
            value = self.derive(row, context)
            if value is not None:
                updates.append({"row_id": row["id"], "value": value})
        if updates:
            connection.execute(
                text(
                    f"UPDATE {_quote(self.table)} SET {_quote(self.column)} = :value "
                    "WHERE id = :row_id"
                ),
                updates,
            )

    def describe(self) -> str:
        return f"derive {self.table}.{self.column}"


@dataclass(frozen=True)
class RebuildTable:
    """Recreate a table to change constraints SQLite cannot ALTER.

    Triggers and indexes on the table are dropped, rows are copied into a
    replacement created from ``create_sql`` (a template with ``{name}``), the
    original is dropped and the replacement renamed. ``indexes`` are then
    recreated. Runs with foreign keys disabled; the runner verifies
    ``PRAGMA foreign_key_check`` before committing.
    """

    table: str
    create_sql: str
    columns: tuple[str, ...]
    needs_rebuild: Callable[[Connection], bool]
    indexes: tuple[CreateIndex, ...] = ()
    requires_foreign_keys_off: bool = True

    def apply(self, connection: Connection, context: MigrationContext) -> None:
        if not has_table(connection, self.table) or not self.needs_rebuild(connection):
            return

        replacement = f"{self.table}__rebuild"
        triggers = connection.execute(
            text("SELECT name FROM sqlite_master WHERE type = 'trigger' AND tbl_name = :table"),
            {"table": self.table},
        ).scalars().all()
        for trigger in triggers:
            connection.exec_driver_sql(f"DROP TRIGGER IF EXISTS {_quote(trigger)}")
        for index in inspect(connection).get_indexes(self.table):
            connection.exec_driver_sql(f"DROP INDEX IF EXISTS {_quote(index['name'])}")

        columns = ", ".join(_quote(column) for column in self.columns)
        connection.exec_driver_sql(f"DROP TABLE IF EXISTS {_quote(replacement)}")
        connection.exec_driver_sql(self.create_sql.format(name=_quote(replacement)))
        connection.exec_driver_sql(
            f"INSERT INTO {_quote(replacement)} ({columns}) "
            f"SELECT {columns} FROM {_quote(self.table)}"
        )
        connection.exec_driver_sql(f"DROP TABLE {_quote(self.table)}")
        connection.exec_driver_sql(
            f"ALTER TABLE {_quote(replacement)} RENAME TO {_quote(self.table)}"
        )
        for index in self.indexes:
            index.apply(connection, context)

    def describe(self) -> str:
        return f"rebuild table {self.table}"


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    steps: tuple[MigrationStep, ...] = field(default_factory=tuple)

    @property
    def requires_foreign_keys_off(self) -> bool:
        return any(step.requires_foreign_keys_off for step in self.steps)


def derive_business_date(source: str) -> Callable[[Mapping[str, Any], MigrationContext], Any]:
    """Build a derivation mapping a UTC timestamp column to a local business date."""

    def _derive(row: Mapping[str, Any], context: MigrationContext) -> str | None:
        raw = row[source]
        if not raw:
            return None
        return business_date(parse_iso(raw), context.timezone)

    return _derive


class MigrationRunner:
    """Apply pending migrations in ascending version order."""

    def __init__(
        self,
        coordinator: TransactionCoordinator,
        migrations: Sequence[Migration],
        context: MigrationContext,
    ) -> None:
        versions = [migration.version for migration in migrations]
        if versions != list(range(1, len(versions) + 1)):
            raise ValueError(f"migration versions must be contiguous from 1, got {versions}")
        self._coordinator = coordinator
        self._migrations = tuple(migrations)
        self._context = context

    @property
    def latest_version(self) -> int:
        return self._migrations[-1].version if self._migrations else 0

    def current_version(self) -> int:
        with self._coordinator.read() as session:
            return int(session.execute(text("PRAGMA user_version")).scalar_one())

    def pending(self) -> list[Migration]:
        current = self.current_version()
        return [migration for migration in self._migrations if migration.version > current]

    def run(self) -> int:
        """Bring the schema up to date and return the resulting version.

        Raises:
            SchemaMigrationError: If any step fails, or the database was
                written by a newer schema than this code knows.
            TransactionBusyError: If the write lock could not be acquired.
        """
        current = self.current_version()
        if current > self.latest_version:
            raise SchemaMigrationError(
                current,
                "unknown",
                f"database schema is newer than supported version {self.latest_version}",
            )

        for migration in self._migrations:
            if migration.version <= current:
                continue
            self._apply(migration)
            current = migration.version
        return current

    def _apply(self, migration: Migration) -> None:
        foreign_keys = not migration.requires_foreign_keys_off
        logger.info("Applying schema migration %s: %s", migration.version, migration.description)
        step_name = "begin"
        try:
            with self._coordinator.transaction(foreign_keys=foreign_keys) as session:
                connection = session.connection()
                for step in migration.steps:
                    step_name = step.describe()
                    step.apply(connection, self._context)
                if not foreign_keys:
                    step_name = "foreign key check"
                    _check_foreign_keys(connection)
                connection.exec_driver_sql(f"PRAGMA user_version = {int(migration.version)}")
        except TransactionBusyError:
            raise
        except (SQLAlchemyError, ValueError, KeyError, TypeError) as exc:
            logger.error(
                "Schema migration %s failed at step '%s'", migration.version, step_name, exc_info=True
            )
            raise SchemaMigrationError(
                migration.version, migration.description, f"{step_name}: {exc}"
            ) from exc


def _check_foreign_keys(connection: Connection) -> None:
    violations = connection.exec_driver_sql("PRAGMA foreign_key_check").all()
    if violations:
        tables = sorted({str(row[0]) for row in violations})
        raise ValueError(f"foreign key violations after rebuild in {', '.join(tables)}")


def run_migrations(
    coordinator: TransactionCoordinator,
    context: MigrationContext,
    migrations: Iterable[Migration] | None = None,
) -> int:
    """Convenience wrapper used by the store and the CLI."""
    from tillsync.db.versions import MIGRATIONS

    runner = MigrationRunner(coordinator, tuple(migrations or MIGRATIONS), context)
    return runner.run()
