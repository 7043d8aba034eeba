"""Typed local <-> wire mapping for every synchronized table.

Each :class:`SyncableEntity` declares, per ORM attribute, the remote column
name and value kind. The registry is validated when this module is imported:
an ORM column without a wire field, a wire field without an ORM column, or a
table listed before one of its foreign-key parents raises
:class:`MappingError`, so a new column can never be silently left out of sync.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import Table
from sqlalchemy.orm import Mapper

from tillsync.db.time import parse_iso, to_iso
from tillsync.models import (
    Bill,
    Customer,
    CustomerAdvance,
    Expense,
    ExpenseSettlement,
    KotItem,
    KotOrder,
    MenuItem,
    Payment,
    Receipt,
    SplitPayment,
    SyncableMixin,
)


class MappingError(ValueError):
    """Raised for an incomplete field map or a wire row that cannot be decoded."""


class FieldKind(Enum):
    TEXT = "text"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    TIMESTAMP = "timestamp"


@dataclass(frozen=True)
class WireField:
    """One column: ORM attribute name, remote column name and value kind."""

    attr: str
    wire: str
    kind: FieldKind = FieldKind.TEXT
    required: bool = False


COMMON_FIELDS: tuple[WireField, ...] = (
    WireField("id", "id", FieldKind.TEXT, required=True),
    WireField("business_unit_id", "shop_id", FieldKind.TEXT),
    WireField("created_at", "created_at", FieldKind.TIMESTAMP, required=True),
    WireField("updated_at", "updated_at", FieldKind.TIMESTAMP, required=True),
    WireField("deleted_at", "deleted_at", FieldKind.TIMESTAMP),
)


def _encode_value(field: WireField, value: Any) -> Any:
    if value is None:
        return None
    if field.kind is FieldKind.TIMESTAMP:
        return to_iso(value)
    if field.kind is FieldKind.BOOLEAN:
        return bool(value)
    if field.kind is FieldKind.INTEGER:
        return int(value)
    return str(value)


def _decode_value(field: WireField, value: Any) -> Any:
    if value is None:
        return None
    if field.kind is FieldKind.TIMESTAMP:
        return parse_iso(value)
    if field.kind is FieldKind.BOOLEAN:
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "t", "yes"}
        return bool(value)
    if field.kind is FieldKind.INTEGER:
        if isinstance(value, bool):
            raise MappingError(f"{field.wire}: expected integer, got boolean")
        if isinstance(value, float) and not value.is_integer():
            raise MappingError(f"{field.wire}: amounts must be whole numbers, got {value}")
        return int(value)
    return str(value)


class SyncableEntity:
    """Encode/decode rows of one table and name its checkpoint."""

    def __init__(
        self,
        model: type[SyncableMixin],
        fields: tuple[WireField, ...],
        *,
        wire_table: str | None = None,
    ) -> None:
        self.model = model
        self.table: Table = model.__table__  # type: ignore[attr-defined]
        self.name: str = self.table.name
        self.wire_table = wire_table or self.name
        self.fields: tuple[WireField, ...] = COMMON_FIELDS + fields
        mapper: Mapper[Any] = model.__mapper__  # type: ignore[attr-defined]
        self._column_keys = self._resolve_columns(mapper)

    @property
    def checkpoint_key(self) -> str:
        return self.name

    def column_key(self, attr: str) -> str:
        """Return the local column key backing ORM attribute ``attr``."""
        return self._column_keys[attr]

    def encode(self, row: SyncableMixin) -> dict[str, Any]:
        """Translate an ORM row into its wire dictionary."""
        return {field.wire: _encode_value(field, getattr(row, field.attr)) for field in self.fields}

    def decode(self, wire: Mapping[str, Any], *, default_business_unit: str) -> dict[str, Any]:
        """Translate a wire row into column values keyed by local column key.

        A null or missing partition key means the row belongs to
        ``default_business_unit``.

        Raises:
            MappingError: If a required field is missing or a value has the wrong kind.
        """
        values: dict[str, Any] = {}
        for field in self.fields:
            if field.wire not in wire:
                if field.required:
                    raise MappingError(f"{self.wire_table}: wire row lacks '{field.wire}'")
                raw = None
            else:
                raw = wire[field.wire]
            if field.required and raw is None:
                raise MappingError(f"{self.wire_table}: '{field.wire}' must not be null")
            values[self._column_keys[field.attr]] = _decode_value(field, raw)

        unit_key = self._column_keys["business_unit_id"]
        if not values.get(unit_key):
            values[unit_key] = default_business_unit
        return values

    def max_updated_at(self, values: list[Mapping[str, Any]]) -> datetime | None:
        """Return the newest ``updated_at`` among decoded rows."""
        key = self._column_keys["updated_at"]
        stamps = [row[key] for row in values if row.get(key) is not None]
        return max(stamps) if stamps else None

    def _resolve_columns(self, mapper: Mapper[Any]) -> dict[str, str]:
        mapped: dict[str, str] = {}
        for prop in mapper.column_attrs:
            mapped[prop.key] = prop.columns[0].key

        declared = [field.attr for field in self.fields]
        missing = sorted(set(mapped) - set(declared))
        if missing:
            raise MappingError(f"{self.name}: columns without a wire field: {', '.join(missing)}")
        unknown = sorted(set(declared) - set(mapped))
        if unknown:
            raise MappingError(f"{self.name}: wire fields without a column: {', '.join(unknown)}")
        wire_names = [field.wire for field in self.fields]
        if len(set(wire_names)) != len(wire_names):
            raise MappingError(f"{self.name}: duplicate wire names")
        return mapped


def _check_dependency_order(entities: tuple[SyncableEntity, ...]) -> None:
    seen: set[str] = set()
    for entity in entities:
        for foreign_key in entity.table.foreign_keys:
            parent = foreign_key.column.table.name
            if parent != entity.name and parent not in seen:
                raise MappingError(f"{entity.name} is synced before its parent table {parent}")
        seen.add(entity.name)


TEXT, INT, BOOL = FieldKind.TEXT, FieldKind.INTEGER, FieldKind.BOOLEAN

CUSTOMERS = SyncableEntity(
    Customer,
    (
        WireField("name", "name", TEXT),
        WireField("contact", "contact", TEXT),
        WireField("credit_balance", "credit_balance", INT),
    ),
)
MENU_ITEMS = SyncableEntity(
    MenuItem,
    (
        WireField("name", "name", TEXT),
        WireField("category", "category", TEXT),
        WireField("price", "price", INT),
        WireField("is_active", "is_active", BOOL),
    ),
)
BILLS = SyncableEntity(
    Bill,
    (
        WireField("bill_number", "bill_number", INT),
        WireField("customer_id", "customer_id", TEXT),
        WireField("total", "total", INT),
        WireField("business_date", "business_date", TEXT),
    ),
)
KOT_ORDERS = SyncableEntity(
    KotOrder,
    (
        WireField("kot_number", "kot_number", INT),
        WireField("customer_id", "customer_id", TEXT),
        WireField("bill_id", "bill_id", TEXT),
        WireField("business_date", "business_date", TEXT),
    ),
)
KOT_ITEMS = SyncableEntity(
    KotItem,
    (
        WireField("kot_id", "kot_id", TEXT),
        WireField("item_id", "item_id", TEXT),
        WireField("quantity", "quantity", INT),
        WireField("price_at_time", "price_at_time", INT),
    ),
)
RECEIPTS = SyncableEntity(
    Receipt,
    (
        WireField("receipt_no", "receipt_no", INT),
        WireField("customer_id", "customer_id", TEXT),
        WireField("bill_id", "bill_id", TEXT),
        WireField("amount", "amount", INT),
        WireField("mode", "mode", TEXT),
        WireField("remarks", "remarks", TEXT),
        WireField("business_date", "business_date", TEXT),
    ),
)
SPLIT_PAYMENTS = SyncableEntity(
    SplitPayment,
    (
        WireField("receipt_id", "receipt_id", TEXT),
        WireField("payment_type", "payment_type", TEXT),
        WireField("amount", "amount", INT),
    ),
)
PAYMENTS = SyncableEntity(
    Payment,
    (
        WireField("bill_id", "bill_id", TEXT),
        WireField("customer_id", "customer_id", TEXT),
        WireField("amount", "amount", INT),
        WireField("mode", "mode", TEXT),
        WireField("sub_type", "sub_type", TEXT),
        WireField("remarks", "remarks", TEXT),
    ),
)
EXPENSES = SyncableEntity(
    Expense,
    (
        WireField("voucher_no", "voucher_no", INT),
        WireField("amount", "amount", INT),
        WireField("towards", "towards", TEXT),
        WireField("mode", "mode", TEXT),
        WireField("remarks", "remarks", TEXT),
        WireField("expense_date", "expense_date", TEXT),
    ),
)
EXPENSE_SETTLEMENTS = SyncableEntity(
    ExpenseSettlement,
    (
        WireField("expense_id", "expense_id", TEXT),
        WireField("payment_type", "payment_type", TEXT),
        WireField("sub_type", "sub_type", TEXT),
        WireField("amount", "amount", INT),
        WireField("remarks", "remarks", TEXT),
    ),
)
CUSTOMER_ADVANCES = SyncableEntity(
    CustomerAdvance,
    (
        WireField("customer_id", "customer_id", TEXT),
        WireField("entry_type", "entry_type", TEXT),
        WireField("amount", "amount", INT),
        WireField("remarks", "remarks", TEXT),
    ),
)

# Parents before children.
SYNC_ENTITIES: tuple[SyncableEntity, ...] = (
    CUSTOMERS,
    MENU_ITEMS,
    BILLS,
    KOT_ORDERS,
    KOT_ITEMS,
    RECEIPTS,
    SPLIT_PAYMENTS,
    PAYMENTS,
    EXPENSES,
    EXPENSE_SETTLEMENTS,
    CUSTOMER_ADVANCES,
)
_check_dependency_order(SYNC_ENTITIES)

_BY_NAME = {entity.name: entity for entity in SYNC_ENTITIES}


def get_entity(name: str) -> SyncableEntity:
    """Return the registered entity for table ``name``.

    Raises:
        KeyError: If the table is not synchronized.
    """
    try:
        return _BY_NAME[name]
    except KeyError:
        raise KeyError(f"unknown sync table: {name}") from None


def entity_names() -> list[str]:
    return [entity.name for entity in SYNC_ENTITIES]
