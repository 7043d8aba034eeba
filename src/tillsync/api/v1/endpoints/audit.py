"""Integrity audit endpoint."""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import APIRouter

from tillsync.api.v1.dependencies import AuditorDep
from tillsync.schemas import AuditResponse

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("", response_model=AuditResponse)
async def run_audit(auditor: AuditorDep) -> dict[str, Any]:
    """Recompute ledger invariants and list every discrepancy.

    Read-only; nothing is corrected.
    """
    report = await asyncio.to_thread(auditor.run)
    return report.to_dict()
