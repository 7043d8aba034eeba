"""Scripted sync diagnostics against the configured remote store."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from tillsync.api.v1.dependencies import EnabledRemoteDep, StoreDep, SyncEngineDep
from tillsync.schemas import ScenarioResponse
from tillsync.services.diagnostics import SyncDiagnostics

router = APIRouter(prefix="/diagnostics", tags=["diagnostics"])


@router.post("/sync", response_model=list[ScenarioResponse])
async def run_sync_diagnostics(
    store: StoreDep, remote: EnabledRemoteDep, engine: SyncEngineDep
) -> list[dict[str, Any]]:
    """Run the last-writer-wins scenarios and report which passed.

    The scenarios write dedicated ``diag_customer_*`` rows locally and
    remotely.
    """
    results = await SyncDiagnostics(store, remote, engine).run_all()
    return [result.to_dict() for result in results]
