# src/tillsync/api/v1/endpoints/__init__.py
"""API endpoint modules for version 1."""

from .audit import router as audit_router
from .diagnostics import router as diagnostics_router
from .sync import router as sync_router
from .system import router as system_router

__all__ = [
    "audit_router",
    "diagnostics_router",
    "sync_router",
    "system_router",
]
