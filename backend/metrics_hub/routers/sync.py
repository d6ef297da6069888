"""
Sync Router — manual sync trigger and per-configuration staleness check.
Admins sync every active Google Ads configuration; other users only their own.
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from metrics_hub.auth import get_current_user
from metrics_hub.database import get_db
from metrics_hub.models import ApiConfiguration, User
from metrics_hub.services.metrics_sync_service import (
    SyncOptions, SyncResult, should_sync, sync_all_configurations,
)
from metrics_hub.utils import parse_uuid, safe_error_detail, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/apis/google-adwords", tags=["Sync"])


class SyncRequest(BaseModel):
    force_sync: bool = False
    sync_campaigns: bool = True
    sync_metrics: bool = True
    historical: bool = False
    years_back: int = Field(default=1, ge=1, le=10)


def summarize_results(results: list[SyncResult], historical: bool = False, years_back: int = 1) -> dict:
    """Aggregate per-configuration results into the trigger response."""
    summary = {
        "success": all(r.success for r in results),
        "total_campaigns": sum(r.campaigns_synced for r in results),
        "total_metrics": sum(r.metrics_records_synced for r in results),
        "configurations": len(results),
        "skipped": sum(1 for r in results if r.skipped),
        "historical": historical,
        "errors": [e for r in results for e in r.errors],
        "results": [r.model_dump(mode="json") for r in results],
        "timestamp": utcnow().isoformat(),
    }
    if historical:
        summary["years_back"] = years_back
    return summary


@router.post("/sync")
async def trigger_sync(
    payload: Optional[SyncRequest] = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    payload = payload or SyncRequest()
    logger.info(
        f"Manual sync triggered by {user.email} "
        f"(force={payload.force_sync}, historical={payload.historical}, years_back={payload.years_back})"
    )
    options = SyncOptions(
        force_sync=payload.force_sync or payload.historical,
        sync_campaigns=payload.sync_campaigns,
        sync_metrics=payload.sync_metrics,
        historical=payload.historical,
        years_back=payload.years_back,
    )
    scope = None if user.role == "admin" else user.id
    try:
        results = await sync_all_configurations(db, options, user_id=scope)
    except Exception as e:
        # Only store outages escape sync_all_configurations
        raise HTTPException(status_code=503, detail=safe_error_detail(e, "Sync unavailable: database error"))
    return summarize_results(results, payload.historical, payload.years_back)


@router.get("/sync")
async def sync_status(
    config_id: Optional[str] = Query(None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if not config_id:
        return {"message": "Use POST to trigger sync or provide config_id to check specific status"}

    cid = parse_uuid(config_id, "config_id")
    config = await db.get(ApiConfiguration, cid)
    if not config or (config.user_id != user.id and user.role != "admin"):
        raise HTTPException(status_code=404, detail="Configuration not found")

    return {"should_sync": await should_sync(db, cid), "config_id": config_id}
