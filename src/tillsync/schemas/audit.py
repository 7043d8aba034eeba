# src/tillsync/schemas/audit.py
"""Integrity audit schemas."""

from typing import Any

from pydantic import BaseModel


class DiscrepancyResponse(BaseModel):
    kind: str
    entity: str
    entity_id: str
    expected: Any = None
    actual: Any = None
    detail: str = ""


class AuditResponse(BaseModel):
    """Schema for an integrity audit run returned by the API."""

    ok: bool
    checked_at: str
    counts: dict[str, int]
    discrepancies: list[DiscrepancyResponse]
