# src/tillsync/schemas/sync.py
"""Sync-related Pydantic schemas."""

from typing import Any, Literal

from pydantic import BaseModel, Field


class CheckpointResponse(BaseModel):
    """High-water marks of one table, as ISO-8601 UTC strings."""

    table: str
    last_push_at: str | None = None
    last_pull_at: str | None = None


class CheckpointResetRequest(BaseModel):
    """Schema for resetting sync checkpoints."""

    table: str | None = Field(default=None, description="Table to reset; all tables when omitted")
    direction: Literal["pull", "push", "both"] = "pull"


class TableSyncResponse(BaseModel):
    table: str
    pushed: int
    pulled: int
    error: str | None = None
    checkpoint: CheckpointResponse | None = None


class SyncReportResponse(BaseModel):
    """Outcome of one sync cycle."""

    ok: bool
    cancelled: bool
    started_at: str
    finished_at: str | None
    pushed: int
    pulled: int
    failed_table: str | None
    tables: list[TableSyncResponse]


class SyncStatusResponse(BaseModel):
    remote_enabled: bool
    running: bool
    worker_running: bool
    last_sync_at: str | None
    checkpoints: list[CheckpointResponse]
    last_report: SyncReportResponse | None = None
    remote_metrics: dict[str, Any] | None = None


class SyncLogResponse(BaseModel):
    lines: list[str]


class ScenarioResponse(BaseModel):
    """Result of one diagnostic sync scenario."""

    name: str
    passed: bool
    details: str = ""
