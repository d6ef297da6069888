"""
Cron / Scheduled Jobs — entry point for an external scheduler.

There is no in-process scheduler: an external cron (QStash, a platform cron,
a plain crontab + curl) calls this endpoint, which runs the same bulk sync
as the manual trigger across every active Google Ads configuration.

Set CRON_SECRET and send it as either:
  X-Cron-Secret: <CRON_SECRET>
  Authorization: Bearer <CRON_SECRET>
"""

import logging
from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from metrics_hub.config import get_settings
from metrics_hub.database import get_db
from metrics_hub.routers.sync import summarize_results
from metrics_hub.services.metrics_sync_service import SyncOptions, sync_all_configurations
from metrics_hub.utils import safe_error_detail

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


class CronSyncRequest(BaseModel):
    force_sync: bool = False


async def _require_cron_secret(
    x_cron_secret: str | None = Header(None, alias="X-Cron-Secret"),
    authorization: str | None = Header(None),
) -> None:
    """Verify the request came from the scheduler with a valid secret."""
    secret = get_settings().cron_secret
    if not secret:
        raise HTTPException(500, "CRON_SECRET not configured")
    # Accept X-Cron-Secret header or Bearer token
    token = x_cron_secret
    if not token and authorization and authorization.startswith("Bearer "):
        token = authorization[7:]
    if token != secret:
        raise HTTPException(401, "Invalid cron secret")


@router.post("/google-ads/sync")
async def cron_google_ads_sync(
    payload: CronSyncRequest | None = None,
    _: None = Depends(_require_cron_secret),
    db: AsyncSession = Depends(get_db),
):
    """
    Scheduled Google Ads sync. Fresh configurations are skipped unless
    force_sync is set, so the schedule can run more often than the staleness window.
    """
    options = SyncOptions(force_sync=bool(payload and payload.force_sync))
    try:
        results = await sync_all_configurations(db, options)
    except Exception as e:
        raise HTTPException(503, safe_error_detail(e, "Sync unavailable: database error"))
    summary = summarize_results(results)
    logger.info(
        f"Cron Google Ads sync: {summary['configurations']} configurations, "
        f"{summary['skipped']} skipped, {summary['total_campaigns']} campaigns, "
        f"{summary['total_metrics']} metrics, {len(summary['errors'])} errors"
    )
    return summary
