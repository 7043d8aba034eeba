"""Sync status and control endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, status

from tillsync.api.v1.dependencies import StoreDep, SyncEngineDep, SyncWorkerDep
from tillsync.db.time import to_iso
from tillsync.schemas import (
    CheckpointResetRequest,
    CheckpointResponse,
    SyncLogResponse,
    SyncReportResponse,
    SyncStatusResponse,
    TableSyncResponse,
)
from tillsync.services.sync import SyncEngine
from tillsync.services.sync_log import sync_log

router = APIRouter(prefix="/sync", tags=["sync"])


def _require_enabled(engine: SyncEngine) -> None:
    if not getattr(engine.remote, "enabled", True):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Remote store is not configured",
        )


@router.get("/status", response_model=SyncStatusResponse)
def get_sync_status(
    store: StoreDep, engine: SyncEngineDep, worker: SyncWorkerDep
) -> dict[str, Any]:
    """Return checkpoints, the last cycle's report and remote metrics.

    Args:
        store: Opened local store
        engine: Sync engine
        worker: Background worker, if the app started one

    Returns:
        Sync status snapshot for diagnostics tooling
    """
    last_sync = engine.last_sync_at()
    report = engine.last_report
    get_metrics = getattr(engine.remote, "get_metrics", None)
    return {
        "remote_enabled": bool(getattr(engine.remote, "enabled", True)),
        "running": engine.is_running,
        "worker_running": bool(worker and worker.running),
        "last_sync_at": to_iso(last_sync) if last_sync else None,
        "checkpoints": [checkpoint.to_dict() for checkpoint in engine.checkpoints()],
        "last_report": report.to_dict() if report else None,
        "remote_metrics": get_metrics() if callable(get_metrics) else None,
    }


@router.post("/run", response_model=SyncReportResponse)
async def run_sync(store: StoreDep, engine: SyncEngineDep) -> dict[str, Any]:
    """Run one full sync cycle and return its report.

    Table failures are reported in the body; the request itself succeeds.
    """
    _require_enabled(engine)
    report = await engine.sync_all()
    return report.to_dict()


@router.post("/tables/{table}", response_model=TableSyncResponse)
async def run_table_sync(table: str, store: StoreDep, engine: SyncEngineDep) -> dict[str, Any]:
    """Push then pull a single table."""
    _require_enabled(engine)
    try:
        result = await engine.sync_table(table)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return result.to_dict()


@router.get("/checkpoints", response_model=list[CheckpointResponse])
def list_checkpoints(store: StoreDep, engine: SyncEngineDep) -> list[dict[str, Any]]:
    return [checkpoint.to_dict() for checkpoint in engine.checkpoints()]


@router.post("/checkpoints/reset", response_model=list[CheckpointResponse])
def reset_checkpoints(
    request: CheckpointResetRequest, store: StoreDep, engine: SyncEngineDep
) -> list[dict[str, Any]]:
    """Reset pull and/or push checkpoints so the next cycle re-reads or re-sends rows.

    Raises:
        HTTPException: 404 for a table that is not synchronized
    """
    try:
        if request.direction in ("pull", "both"):
            engine.reset_pull_checkpoint(request.table)
        if request.direction in ("push", "both"):
            engine.reset_push_checkpoint(request.table)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return [checkpoint.to_dict() for checkpoint in engine.checkpoints()]


@router.post("/trigger", status_code=status.HTTP_202_ACCEPTED)
async def trigger_worker(worker: SyncWorkerDep) -> dict[str, bool]:
    """Ask the background worker to start a cycle now."""
    if worker is None or not worker.running:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Sync worker is not running",
        )
    worker.trigger()
    return {"triggered": True}


@router.get("/log", response_model=SyncLogResponse)
async def get_sync_log() -> dict[str, list[str]]:
    return {"lines": sync_log.lines()}


@router.delete("/log", status_code=status.HTTP_204_NO_CONTENT)
async def clear_sync_log() -> None:
    sync_log.clear()
