"""
Google Ads Data Router — cached campaigns and metrics for the current user.
Reads refresh the cache inline when it is stale and fall back to one live
API call when the cache is empty.
"""

import logging
from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from metrics_hub.auth import get_current_user
from metrics_hub.database import get_db
from metrics_hub.models import ApiConfiguration, ApiStatus, User
from metrics_hub.routers.google_ads import get_user_config
from metrics_hub.services.metrics_cache_service import (
    get_cached_campaigns, get_cached_metrics, resolve_date_range,
)
from metrics_hub.utils import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/apis/google-adwords", tags=["Google Ads Data"])


async def _require_active_config(db: AsyncSession, user: User) -> ApiConfiguration:
    config = await get_user_config(db, user)
    if not config:
        raise HTTPException(status_code=404, detail="No Google AdWords configuration found")
    if config.status != ApiStatus.ACTIVE.value:
        raise HTTPException(
            status_code=400,
            detail="Google AdWords API not configured or connection failed. Run a connection test first.",
        )
    return config


@router.get("/campaigns")
async def list_campaigns(
    refresh: bool = Query(False, description="Force a sync before reading"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    config = await _require_active_config(db, user)
    result = await get_cached_campaigns(db, config, force_refresh=refresh)
    result["last_updated"] = utcnow().isoformat()
    return result


@router.get("/metrics")
async def get_metrics(
    time_range: str = Query("30d", description="7d, 30d, 90d or 1y"),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    refresh: bool = Query(False, description="Force a sync before reading"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    config = await _require_active_config(db, user)
    try:
        start, end = resolve_date_range(time_range, start_date, end_date)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    result = await get_cached_metrics(db, config, start, end, force_refresh=refresh)
    result["time_range"] = time_range if not (start_date or end_date) else "custom"
    result["config"] = {"status": config.status.lower(), "last_tested_at": config.last_tested_at}
    result["last_updated"] = utcnow().isoformat()
    return result
