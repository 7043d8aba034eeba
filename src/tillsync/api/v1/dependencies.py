"""Shared API dependencies for the local store, remote store and sync engine."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from tillsync.db.session import LocalStore, get_opened_store
from tillsync.services.audit import IntegrityAuditor
from tillsync.services.remote import RemoteStore, get_remote_store
from tillsync.services.sync import SyncEngine, get_sync_engine
from tillsync.services.sync_worker import SyncWorker


def get_remote_store_dep() -> RemoteStore:
    """Get the remote store for dependency injection."""
    return get_remote_store()


def get_sync_engine_dep() -> SyncEngine:
    """Get the sync engine for dependency injection."""
    return get_sync_engine()


def get_sync_worker(request: Request) -> SyncWorker | None:
    """Return the background worker started by the app, if any."""
    return getattr(request.app.state, "sync_worker", None)


# Type aliases for common dependencies
StoreDep = Annotated[LocalStore, Depends(get_opened_store)]
RemoteDep = Annotated[RemoteStore, Depends(get_remote_store_dep)]
SyncEngineDep = Annotated[SyncEngine, Depends(get_sync_engine_dep)]
SyncWorkerDep = Annotated[SyncWorker | None, Depends(get_sync_worker)]


def get_auditor(store: StoreDep) -> IntegrityAuditor:
    """Build an auditor over the opened store."""
    return IntegrityAuditor(store.coordinator)


AuditorDep = Annotated[IntegrityAuditor, Depends(get_auditor)]


def require_remote(remote: RemoteDep) -> RemoteStore:
    """Reject the request when no remote store is configured.

    Raises:
        HTTPException: 503 if the remote store is disabled
    """
    if not getattr(remote, "enabled", True):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Remote store is not configured",
        )
    return remote


EnabledRemoteDep = Annotated[RemoteStore, Depends(require_remote)]
