# src/tillsync/main.py
"""Main entry point for the tillsync diagnostics API."""

from __future__ import annotations

import asyncio

from fastapi import FastAPI

from tillsync.api.v1 import audit_router, diagnostics_router, sync_router, system_router
from tillsync.core.settings import settings
from tillsync.db.session import get_store
from tillsync.services.remote import get_remote_store
from tillsync.services.sync import get_sync_engine
from tillsync.services.sync_worker import SyncWorker

# Initialize FastAPI app
app = FastAPI(
    title="tillsync API",
    description="Local ledger and sync diagnostics for an offline-first point of sale",
    version=settings.app_version,
)

# Include API routers
app.include_router(system_router, prefix="/api/v1")
app.include_router(sync_router, prefix="/api/v1")
app.include_router(audit_router, prefix="/api/v1")
app.include_router(diagnostics_router, prefix="/api/v1")


@app.on_event("startup")
async def on_startup() -> None:
    # A schema that cannot be migrated must stop the app from serving.
    await asyncio.to_thread(get_store().open)
    if settings.remote_enabled and settings.sync_worker_enabled:
        worker = SyncWorker(get_sync_engine(), settings.sync_interval_seconds)
        await worker.start()
        app.state.sync_worker = worker
    else:
        app.state.sync_worker = None


@app.on_event("shutdown")
async def on_shutdown() -> None:
    worker: SyncWorker | None = getattr(app.state, "sync_worker", None)
    if worker:
        await worker.stop()
    if settings.remote_enabled:
        await get_remote_store().close()
    get_store().close()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "redoc": "/redoc",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("tillsync.main:app", host="127.0.0.1", port=8000, reload=settings.debug)
