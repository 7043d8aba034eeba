# src/tillsync/services/__init__.py
"""Sync, ledger, audit and diagnostics services."""
