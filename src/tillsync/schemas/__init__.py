# src/tillsync/schemas/__init__.py
"""
Pydantic schemas for API request/response models.
"""

from .audit import AuditResponse, DiscrepancyResponse
from .sync import (
    CheckpointResetRequest,
    CheckpointResponse,
    ScenarioResponse,
    SyncLogResponse,
    SyncReportResponse,
    SyncStatusResponse,
    TableSyncResponse,
)

__all__ = [
    "AuditResponse", "DiscrepancyResponse",
    "CheckpointResetRequest", "CheckpointResponse",
    "ScenarioResponse", "SyncLogResponse",
    "SyncReportResponse", "SyncStatusResponse", "TableSyncResponse",
]
