"""Schema history of the local store, oldest first.

Never edit a released migration; append a new one instead.
"""

from __future__ import annotations

from sqlalchemy.engine import Connection

from tillsync.db.migrations import (
    AddColumn,
    BackfillDerived,
    BackfillRows,
    CreateIndex,
    CreateTable,
    Migration,
    MigrationStep,
    RebuildTable,
    derive_business_date,
    has_unique_constraint,
)

# Tables created by the first schema, in creation order.
LEGACY_TABLES = (
    "customers",
    "menu_items",
    "kot_orders",
    "kot_items",
    "bills",
    "payments",
    "receipts",
    "expenses",
    "split_payments",
)

_NOW_SQL = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"

BASE_SCHEMA = Migration(
    version=1,
    description="base schema",
    steps=(
        CreateTable(
            "customers",
            """
            CREATE TABLE customers (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                contact TEXT UNIQUE,
                createdAt TEXT NOT NULL,
                updatedAt TEXT NOT NULL,
                creditBalance INTEGER NOT NULL DEFAULT 0
            )
            """,
        ),
        CreateTable(
            "menu_items",
            """
            CREATE TABLE menu_items (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                category TEXT,
                price INTEGER NOT NULL,
                isActive INTEGER NOT NULL DEFAULT 1,
                createdAt TEXT NOT NULL,
                updatedAt TEXT NOT NULL
            )
            """,
        ),
        CreateTable(
            "kot_orders",
            """
            CREATE TABLE kot_orders (
                id TEXT PRIMARY KEY,
                kotNumber INTEGER NOT NULL,
                customerId TEXT NOT NULL REFERENCES customers(id),
                billId TEXT REFERENCES bills(id),
                createdAt TEXT NOT NULL
            )
            """,
        ),
        CreateTable(
            "kot_items",
            """
            CREATE TABLE kot_items (
                id TEXT PRIMARY KEY,
                kotId TEXT NOT NULL REFERENCES kot_orders(id),
                itemId TEXT NOT NULL REFERENCES menu_items(id),
                quantity INTEGER NOT NULL,
                priceAtTime INTEGER NOT NULL
            )
            """,
        ),
        CreateTable(
            "bills",
            """
            CREATE TABLE bills (
                id TEXT PRIMARY KEY,
                billNumber INTEGER NOT NULL,
                customerId TEXT NOT NULL REFERENCES customers(id),
                total INTEGER NOT NULL,
                createdAt TEXT NOT NULL
            )
            """,
        ),
        CreateTable(
            "payments",
            """
            CREATE TABLE payments (
                id TEXT PRIMARY KEY,
                billId TEXT REFERENCES bills(id),
                customerId TEXT NOT NULL REFERENCES customers(id),
                amount INTEGER NOT NULL,
                mode TEXT NOT NULL,
                subType TEXT,
                remarks TEXT,
                createdAt TEXT NOT NULL
            )
            """,
        ),
        CreateTable(
            "receipts",
            """
            CREATE TABLE receipts (
                id TEXT PRIMARY KEY,
                receiptNo INTEGER NOT NULL,
                customerId TEXT NOT NULL REFERENCES customers(id),
                billId TEXT REFERENCES bills(id),
                amount INTEGER NOT NULL,
                mode TEXT NOT NULL,
                remarks TEXT,
                createdAt TEXT NOT NULL
            )
            """,
        ),
        CreateTable(
            "expenses",
            """
            CREATE TABLE expenses (
                id TEXT PRIMARY KEY,
                voucherNo INTEGER NOT NULL,
                amount INTEGER NOT NULL,
                towards TEXT NOT NULL,
                mode TEXT NOT NULL,
                remarks TEXT,
                createdAt TEXT NOT NULL
            )
            """,
        ),
        CreateTable(
            "split_payments",
            """
            CREATE TABLE split_payments (
                id TEXT PRIMARY KEY,
                receiptId TEXT NOT NULL REFERENCES receipts(id),
                paymentType TEXT NOT NULL,
                amount INTEGER NOT NULL,
                createdAt TEXT NOT NULL
            )
            """,
        ),
        CreateIndex("idx_payments_customer", "payments", ("customerId",)),
        CreateIndex("idx_payments_bill", "payments", ("billId",)),
        CreateIndex("idx_bills_customer", "bills", ("customerId",)),
        CreateIndex("idx_bills_createdAt", "bills", ("createdAt",)),
        CreateIndex("idx_payments_createdAt", "payments", ("createdAt",)),
        CreateIndex("idx_receipts_bill", "receipts", ("billId",)),
    ),
)


def _change_tracking(table: str) -> tuple[MigrationStep, ...]:
    steps: list[MigrationStep] = []
    if table == "kot_items":
        steps.append(
            AddColumn(
                table,
                "createdAt",
                "TEXT NOT NULL DEFAULT ''",
                backfill=(
                    "UPDATE kot_items SET createdAt = COALESCE("
                    "(SELECT o.createdAt FROM kot_orders o WHERE o.id = kot_items.kotId), "
                    f"{_NOW_SQL}) WHERE createdAt = ''"
                ),
            )
        )
    steps.extend(
        (
            AddColumn(
                table,
                "updatedAt",
                "TEXT NOT NULL DEFAULT ''",
                backfill=f"UPDATE {table} SET updatedAt = createdAt WHERE updatedAt = ''",
            ),
            AddColumn(table, "deletedAt", "TEXT"),
            AddColumn(
                table,
                "shopId",
                "TEXT NOT NULL DEFAULT ''",
                backfill=f"UPDATE {table} SET shopId = :business_unit_id WHERE shopId = ''",
            ),
            CreateIndex(f"idx_{table}_updatedAt", table, ("updatedAt",)),
        )
    )
    return tuple(steps)


CHANGE_TRACKING = Migration(
    version=2,
    description="change tracking columns",
    steps=tuple(step for table in LEGACY_TABLES for step in _change_tracking(table)),
)

SYNC_BOOKKEEPING = Migration(
    version=3,
    description="sync checkpoints and local counters",
    steps=(
        CreateTable(
            "sync_state",
            """
            CREATE TABLE sync_state (
                tableName TEXT PRIMARY KEY,
                lastPushAt TEXT,
                lastPullAt TEXT
            )
            """,
        ),
        CreateTable(
            "local_counters",
            """
            CREATE TABLE local_counters (
                scope TEXT NOT NULL,
                periodKey TEXT NOT NULL,
                name TEXT NOT NULL,
                value INTEGER NOT NULL DEFAULT 0,
                updatedAt TEXT,
                PRIMARY KEY (scope, periodKey, name)
            )
            """,
        ),
    ),
)

BUSINESS_DATES = Migration(
    version=4,
    description="business dates for numbering periods",
    steps=(
        AddColumn("bills", "businessDate", "TEXT"),
        BackfillDerived("bills", "businessDate", ("createdAt",), derive_business_date("createdAt")),
        AddColumn("kot_orders", "businessDate", "TEXT"),
        BackfillDerived(
            "kot_orders", "businessDate", ("createdAt",), derive_business_date("createdAt")
        ),
        AddColumn("receipts", "businessDate", "TEXT"),
        BackfillDerived(
            "receipts", "businessDate", ("createdAt",), derive_business_date("createdAt")
        ),
        AddColumn("expenses", "expenseDate", "TEXT"),
        BackfillDerived(
            "expenses", "expenseDate", ("createdAt",), derive_business_date("createdAt")
        ),
        CreateIndex("idx_bills_businessDate", "bills", ("businessDate",)),
        CreateIndex("idx_kot_orders_businessDate", "kot_orders", ("businessDate",)),
        CreateIndex("idx_receipts_businessDate", "receipts", ("businessDate",)),
        CreateIndex("idx_expenses_expenseDate", "expenses", ("expenseDate",)),
    ),
)

_MODE_SPELLING = """
    CASE lower(mode)
        WHEN 'cash' THEN 'Cash'
        WHEN 'upi' THEN 'UPI'
        WHEN 'credit' THEN 'Credit'
        WHEN 'creditclear' THEN 'CreditClear'
        WHEN 'credit_clear' THEN 'CreditClear'
        WHEN 'split' THEN 'Split'
        WHEN 'advance' THEN 'Advance'
        ELSE mode
    END
"""
_KNOWN_MODES = "('Cash', 'UPI', 'Credit', 'CreditClear', 'Split', 'Advance')"

SETTLEMENT_LEDGERS = Migration(
    version=5,
    description="expense settlements and advance wallet",
    steps=(
        CreateTable(
            "expense_settlements",
            """
            CREATE TABLE expense_settlements (
                id TEXT PRIMARY KEY,
                expenseId TEXT NOT NULL REFERENCES expenses(id),
                paymentType TEXT NOT NULL,
                subType TEXT,
                amount INTEGER NOT NULL,
                remarks TEXT,
                shopId TEXT NOT NULL DEFAULT '',
                createdAt TEXT NOT NULL,
                updatedAt TEXT NOT NULL,
                deletedAt TEXT
            )
            """,
        ),
        CreateIndex(
            "idx_expense_settlements_expense", "expense_settlements", ("expenseId",)
        ),
        CreateIndex(
            "idx_expense_settlements_updatedAt", "expense_settlements", ("updatedAt",)
        ),
        CreateTable(
            "customer_advances",
            """
            CREATE TABLE customer_advances (
                id TEXT PRIMARY KEY,
                customerId TEXT NOT NULL REFERENCES customers(id),
                entryType TEXT NOT NULL,
                amount INTEGER NOT NULL,
                remarks TEXT,
                shopId TEXT NOT NULL DEFAULT '',
                createdAt TEXT NOT NULL,
                updatedAt TEXT NOT NULL,
                deletedAt TEXT
            )
            """,
        ),
        CreateIndex("idx_customer_advances_customer", "customer_advances", ("customerId",)),
        CreateIndex("idx_customer_advances_updatedAt", "customer_advances", ("updatedAt",)),
        # Legacy expenses carried their payment mode inline; give each one the
        # settlement row it implies. Ids are deterministic so every device
        # derives the same row.
        BackfillRows(
            "settle legacy expenses",
            """
            INSERT INTO expense_settlements
                (id, expenseId, paymentType, subType, amount, remarks,
                 shopId, createdAt, updatedAt, deletedAt)
            SELECT 'legacy-' || e.id,
                   e.id,
                   CASE WHEN e.mode IN ('Cash', 'UPI', 'Credit') THEN e.mode ELSE 'Cash' END,
                   CASE WHEN e.mode = 'Credit' THEN 'Accrual' ELSE NULL END,
                   e.amount,
                   NULL,
                   e.shopId,
                   e.createdAt,
                   e.updatedAt,
                   e.deletedAt
            FROM expenses e
            WHERE NOT EXISTS (
                SELECT 1 FROM expense_settlements s WHERE s.expenseId = e.id
            )
            """,
        ),
        BackfillRows(
            "normalize payment modes",
            f"UPDATE payments SET mode = {_MODE_SPELLING} WHERE mode NOT IN {_KNOWN_MODES}",
        ),
        BackfillRows(
            "normalize receipt modes",
            f"UPDATE receipts SET mode = {_MODE_SPELLING} WHERE mode NOT IN {_KNOWN_MODES}",
        ),
        BackfillRows(
            "payment accrual subtypes",
            "UPDATE payments SET subType = 'Accrual' WHERE mode = 'Credit' AND subType IS NULL",
        ),
        BackfillRows(
            "payment clearance subtypes",
            "UPDATE payments SET subType = 'Clearance' "
            "WHERE mode = 'CreditClear' AND subType IS NULL",
        ),
    ),
)


def _contact_is_unique(connection: Connection) -> bool:
    return has_unique_constraint(connection, "customers", "contact")


RELAX_CUSTOMER_CONTACT = Migration(
    version=6,
    description="allow duplicate customer contacts",
    steps=(
        RebuildTable(
            table="customers",
            create_sql="""
            CREATE TABLE {name} (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                contact TEXT,
                createdAt TEXT NOT NULL,
                updatedAt TEXT NOT NULL,
                creditBalance INTEGER NOT NULL DEFAULT 0,
                deletedAt TEXT,
                shopId TEXT NOT NULL DEFAULT ''
            )
            """,
            columns=(
                "id",
                "name",
                "contact",
                "createdAt",
                "updatedAt",
                "creditBalance",
                "deletedAt",
                "shopId",
            ),
            needs_rebuild=_contact_is_unique,
            indexes=(
                CreateIndex("idx_customers_updatedAt", "customers", ("updatedAt",)),
                CreateIndex("idx_customers_contact", "customers", ("contact",)),
            ),
        ),
        CreateIndex("idx_customers_contact", "customers", ("contact",)),
    ),
)

TOMBSTONE_INDEXES = Migration(
    version=7,
    description="tombstone indexes for change discovery",
    steps=tuple(
        CreateIndex(f"idx_{table}_deletedAt", table, ("deletedAt",))
        for table in (*LEGACY_TABLES, "expense_settlements", "customer_advances")
    ),
)

MIGRATIONS: tuple[Migration, ...] = (
    BASE_SCHEMA,
    CHANGE_TRACKING,
    SYNC_BOOKKEEPING,
    BUSINESS_DATES,
    SETTLEMENT_LEDGERS,
    RELAX_CUSTOMER_CONTACT,
    TOMBSTONE_INDEXES,
)

LATEST_VERSION = MIGRATIONS[-1].version
