"""
Metrics Cache Service — read path for Google Ads campaigns and metrics.

Serves from the local cache, refreshing it inline when stale. When the cache
is still empty after that, one uncached live call answers the request and
nothing is written back. Every response carries provenance metadata.
"""

import logging
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from metrics_hub.google_ads_client import build_client_for_config
from metrics_hub.models import ApiConfiguration, GoogleAdsCampaign, GoogleAdsMetrics
from metrics_hub.services.metrics_sync_service import (
    SyncOptions, create_from_api_config, is_store_unavailable, should_sync,
)
from metrics_hub.utils import utcnow

logger = logging.getLogger(__name__)

DATA_SOURCE_CACHE = "cache"
DATA_SOURCE_LIVE = "live_api_fallback"

TIME_RANGES = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}


def resolve_date_range(
    time_range: Optional[str] = "30d",
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    today: Optional[date] = None,
) -> tuple[date, date]:
    """Explicit dates win; otherwise map 7d / 30d / 90d / 1y to a window ending today."""
    today = today or utcnow().date()
    if start_date or end_date:
        end = end_date or today
        start = start_date or end - timedelta(days=TIME_RANGES["30d"] - 1)
    else:
        days = TIME_RANGES.get(time_range or "30d")
        if days is None:
            raise ValueError(f"Unsupported time range '{time_range}'. Use one of: {', '.join(TIME_RANGES)}")
        end = today
        start = end - timedelta(days=days - 1)
    if start > end:
        raise ValueError(f"start_date {start} is after end_date {end}")
    return start, end


def freshness_label(cache_age_minutes: Optional[int]) -> str:
    """fresh < 1 h, recent 1-3 h, stale > 3 h."""
    if cache_age_minutes is None:
        return "stale"
    if cache_age_minutes < 60:
        return "fresh"
    if cache_age_minutes <= 180:
        return "recent"
    return "stale"


def _cache_metadata(last_sync_at: Optional[datetime], sync_attempted: bool, sync_errors: list[str]) -> dict:
    age = None
    if last_sync_at is not None:
        age = max(0, int((utcnow() - last_sync_at).total_seconds() // 60))
    return {
        "data_source": DATA_SOURCE_CACHE,
        "last_sync_at": last_sync_at.isoformat() if last_sync_at else None,
        "cache_age_minutes": age,
        "freshness": freshness_label(age),
        "sync_attempted": sync_attempted,
        "sync_errors": sync_errors,
    }


def _live_metadata(sync_attempted: bool, sync_errors: list[str], live_error: Optional[str] = None) -> dict:
    metadata = {
        "data_source": DATA_SOURCE_LIVE,
        "last_sync_at": None,
        "cache_age_minutes": None,
        "freshness": "live",
        "sync_attempted": sync_attempted,
        "sync_errors": sync_errors,
    }
    if live_error:
        metadata["live_error"] = live_error
    return metadata


async def _refresh_if_needed(db: AsyncSession, config: ApiConfiguration, force_refresh: bool) -> tuple[bool, list[str]]:
    """Run a full sync inline when forced or stale. Sync failures are returned, not raised."""
    if not force_refresh and not await should_sync(db, config.id):
        return False, []

    errors: list[str] = []
    try:
        session = await create_from_api_config(db, config.id)
        if session is None:
            errors.append("Configuration is not active or its credentials cannot be used")
        else:
            result = await session.perform_full_sync(SyncOptions(force_sync=True))
            errors.extend(result.errors)
    except Exception as e:
        if is_store_unavailable(e):
            raise
        logger.error(f"Inline sync failed for config {config.id}: {e}")
        errors.append(str(e))
    return True, errors


async def _cached_campaigns(db: AsyncSession, config_id) -> list[GoogleAdsCampaign]:
    result = await db.execute(
        select(GoogleAdsCampaign)
        .where(GoogleAdsCampaign.api_config_id == config_id)
        .order_by(GoogleAdsCampaign.name)
    )
    return list(result.scalars().all())


def _campaign_to_dict(c: GoogleAdsCampaign) -> dict:
    return {
        "id": c.campaign_id,
        "name": c.name,
        "status": c.status,
        "budget": c.budget,
        "start_date": c.start_date.isoformat() if c.start_date else None,
        "end_date": c.end_date.isoformat() if c.end_date else None,
        "last_sync_at": c.last_sync_at.isoformat() if c.last_sync_at else None,
    }


def _latest_sync(campaigns: list[GoogleAdsCampaign]) -> Optional[datetime]:
    stamps = [c.last_sync_at for c in campaigns if c.last_sync_at]
    return max(stamps) if stamps else None


# ── Campaigns ─────────────────────────────────────────────────────────

async def get_cached_campaigns(db: AsyncSession, config: ApiConfiguration, force_refresh: bool = False) -> dict:
    sync_attempted, sync_errors = await _refresh_if_needed(db, config, force_refresh)

    campaigns = await _cached_campaigns(db, config.id)
    if campaigns:
        return {
            "campaigns": [_campaign_to_dict(c) for c in campaigns],
            "total": len(campaigns),
            "metadata": _cache_metadata(_latest_sync(campaigns), sync_attempted, sync_errors),
        }

    logger.info(f"Campaign cache empty for config {config.id}; falling back to live API")
    live: list[dict] = []
    live_error = None
    client = build_client_for_config(config)
    if client is None:
        live_error = "Stored credentials cannot be decrypted"
    else:
        try:
            live = await client.get_campaigns()
        except Exception as e:
            logger.error(f"Live campaign fallback failed for config {config.id}: {e}")
            live_error = str(e)

    return {
        "campaigns": [{**c, "last_sync_at": None} for c in live],
        "total": len(live),
        "metadata": _live_metadata(sync_attempted, sync_errors, live_error),
    }


# ── Metrics ───────────────────────────────────────────────────────────

def _ratio(numerator: float, denominator: float, scale: float = 1.0) -> float:
    if not denominator:
        return 0.0
    return round(numerator / denominator * scale, 2)


def _with_rates(totals: dict) -> dict:
    totals["cost"] = round(totals["cost"], 2)
    totals["ctr"] = _ratio(totals["clicks"], totals["impressions"], 100)
    totals["conversion_rate"] = _ratio(totals["conversions"], totals["clicks"], 100)
    totals["cpc"] = _ratio(totals["cost"], totals["clicks"])
    totals["cpa"] = _ratio(totals["cost"], totals["conversions"])
    return totals


def _empty_totals() -> dict:
    return {"impressions": 0, "clicks": 0, "conversions": 0.0, "cost": 0.0}


def aggregate_metrics(campaigns: list[dict], rows: list[dict]) -> dict:
    """
    Build totals, a daily performance series, and a per-campaign breakdown.
    ``campaigns`` are {id, name, status, budget}; ``rows`` are daily metrics keyed
    by the platform campaign id.
    """
    totals = _empty_totals()
    by_date: dict[str, dict] = defaultdict(_empty_totals)
    by_campaign: dict[str, dict] = defaultdict(_empty_totals)

    for row in rows:
        day = row["date"].isoformat() if isinstance(row["date"], date) else str(row["date"])
        for key in ("impressions", "clicks", "conversions", "cost"):
            value = row.get(key) or 0
            totals[key] += value
            by_date[day][key] += value
            by_campaign[str(row["campaign_id"])][key] += value

    performance_data = [
        {"date": day, **_with_rates(values)} for day, values in sorted(by_date.items())
    ]
    breakdown = []
    for c in campaigns:
        values = _with_rates(dict(by_campaign.get(str(c["id"]), _empty_totals())))
        breakdown.append({
            "id": c["id"],
            "name": c.get("name"),
            "status": c.get("status"),
            "budget": c.get("budget"),
            **values,
        })
    breakdown.sort(key=lambda item: item["cost"], reverse=True)

    return {
        "totals": _with_rates(totals),
        "performance_data": performance_data,
        "campaigns": breakdown,
    }


async def get_cached_metrics(
    db: AsyncSession,
    config: ApiConfiguration,
    start_date: date,
    end_date: date,
    force_refresh: bool = False,
) -> dict:
    sync_attempted, sync_errors = await _refresh_if_needed(db, config, force_refresh)
    date_range = {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()}

    campaigns = await _cached_campaigns(db, config.id)
    if campaigns:
        result = await db.execute(
            select(GoogleAdsMetrics, GoogleAdsCampaign.campaign_id)
            .join(GoogleAdsCampaign, GoogleAdsMetrics.campaign_id == GoogleAdsCampaign.id)
            .where(
                GoogleAdsCampaign.api_config_id == config.id,
                GoogleAdsMetrics.date >= start_date,
                GoogleAdsMetrics.date <= end_date,
            )
            .order_by(GoogleAdsMetrics.date)
        )
        rows = [
            {
                "campaign_id": platform_id,
                "date": m.date,
                "impressions": m.impressions,
                "clicks": m.clicks,
                "conversions": m.conversions,
                "cost": m.cost,
            }
            for m, platform_id in result.all()
        ]
        campaign_dicts = [
            {"id": c.campaign_id, "name": c.name, "status": c.status, "budget": c.budget}
            for c in campaigns
        ]
        return {
            "metrics": aggregate_metrics(campaign_dicts, rows),
            "date_range": date_range,
            "metadata": _cache_metadata(_latest_sync(campaigns), sync_attempted, sync_errors),
        }

    logger.info(f"Metrics cache empty for config {config.id}; falling back to live API")
    live_campaigns: list[dict] = []
    live_rows: list[dict] = []
    live_error = None
    client = build_client_for_config(config)
    if client is None:
        live_error = "Stored credentials cannot be decrypted"
    else:
        try:
            live_campaigns = await client.get_campaigns()
            live_rows = await client.get_metrics([c["id"] for c in live_campaigns], start_date, end_date)
        except Exception as e:
            logger.error(f"Live metrics fallback failed for config {config.id}: {e}")
            live_error = str(e)

    return {
        "metrics": aggregate_metrics(live_campaigns, live_rows),
        "date_range": date_range,
        "metadata": _live_metadata(sync_attempted, sync_errors, live_error),
    }
