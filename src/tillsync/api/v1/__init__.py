# src/tillsync/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import (
    audit_router,
    diagnostics_router,
    sync_router,
    system_router,
)

__all__ = [
    "audit_router",
    "diagnostics_router",
    "sync_router",
    "system_router",
]
