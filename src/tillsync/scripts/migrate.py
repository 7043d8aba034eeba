# src/tillsync/scripts/migrate.py
"""Open the local store, apply pending schema migrations and print the version."""
from __future__ import annotations

import argparse
import logging
import sys

from tillsync.core.settings import Settings, settings
from tillsync.db.migrations import SchemaMigrationError
from tillsync.db.session import LocalStore
from tillsync.db.transactions import TransactionBusyError
from tillsync.db.versions import LATEST_VERSION


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Migrate the local tillsync store")
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLite URL to migrate (defaults to TILLSYNC_DATABASE_URL).",
    )
    args = parser.parse_args(argv)
    logging.basicConfig(level=settings.log_level)

    config = settings
    if args.database_url:
        config = Settings(**{**settings.model_dump(), "database_url": args.database_url})

    store = LocalStore(config)
    try:
        store.open()
    except (SchemaMigrationError, TransactionBusyError) as exc:
        print(f"[migrate] failed: {exc}", file=sys.stderr)
        return 1
    try:
        print(f"[migrate] {config.database_url} at schema version {store.schema_version} (latest {LATEST_VERSION})")
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
