# src/tillsync/db/__init__.py
"""Local SQLite store: engine, transactions, migrations and column types."""
