"""System status endpoints."""

from __future__ import annotations

import time

from fastapi import APIRouter

from tillsync.api.v1.dependencies import StoreDep
from tillsync.core.settings import settings
from tillsync.db.versions import LATEST_VERSION

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/status")
def get_system_status(store: StoreDep) -> dict[str, object]:
    """Get service, schema and partition information for monitoring dashboards."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "status": "operational",
        "timestamp": int(time.time()),
        "business_unit_id": store.config.business_unit_id,
        "timezone": store.config.business_timezone,
        "schema": {
            "version": store.current_schema_version(),
            "latest": LATEST_VERSION,
        },
        "environment": "production" if not settings.debug else "development",
    }
