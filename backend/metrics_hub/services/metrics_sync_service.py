"""
Metrics Sync Service — keeps the Google Ads campaign/metrics cache fresh.

Decides whether a configuration's cache is stale, pulls live data through the
Google Ads client, and upserts it into google_ads_campaigns /
google_ads_metrics. Every batch is best-effort: one bad item is isolated in
its own SAVEPOINT and reported in ``errors`` while the rest still land.
Only store unavailability is allowed to propagate.
"""

import logging
import time
import uuid
from datetime import date, datetime, timedelta
from typing import Optional
from pydantic import BaseModel, Field
from sqlalchemy import select, func
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from metrics_hub.config import get_settings
from metrics_hub.google_ads_client import (
    GoogleAdsClient, GoogleAdsRateLimitError, build_client_for_config,
)
from metrics_hub.models import (
    ApiConfiguration, ApiProvider, ApiStatus, ActivityType, ActivityStatus,
    GoogleAdsCampaign, GoogleAdsMetrics,
)
from metrics_hub.services import activity_service
from metrics_hub.utils import utcnow

logger = logging.getLogger(__name__)

PROVIDER = ApiProvider.GOOGLE_ADWORDS.value


# ── Request / result shapes ──────────────────────────────────────────

class SyncOptions(BaseModel):
    force_sync: bool = False
    sync_campaigns: bool = True
    sync_metrics: bool = True
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    historical: bool = False
    years_back: int = Field(default=1, ge=1, le=10)


class SyncBatchResult(BaseModel):
    success: bool
    count: int = 0
    errors: list[str] = []
    rate_limited: bool = False


class SyncResult(BaseModel):
    config_id: Optional[uuid.UUID] = None
    success: bool
    skipped: bool = False
    campaigns_synced: int = 0
    metrics_records_synced: int = 0
    errors: list[str] = []
    last_sync_at: Optional[datetime] = None


# ── Helpers ───────────────────────────────────────────────────────────

def is_store_unavailable(exc: BaseException) -> bool:
    """True when the database itself is gone (as opposed to one bad row)."""
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


def _parse_date(value) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:
        # Feb 29 in a non-leap target year
        return day.replace(year=day.year - years, day=28)


async def should_sync(db: AsyncSession, config_id: uuid.UUID, max_age_hours: Optional[int] = None) -> bool:
    """
    True when the configuration has never been synced, or when the most recent
    campaign last_sync_at is strictly older than max_age_hours. Never raises.
    """
    if max_age_hours is None:
        max_age_hours = get_settings().sync_max_age_hours
    try:
        result = await db.execute(
            select(func.max(GoogleAdsCampaign.last_sync_at)).where(
                GoogleAdsCampaign.api_config_id == config_id
            )
        )
        last_sync = result.scalar()
    except Exception as e:
        logger.error(f"should_sync lookup failed for config {config_id}, assuming stale: {e}")
        return True

    if last_sync is None:
        return True

    stale = utcnow() - last_sync > timedelta(hours=max_age_hours)
    logger.info(f"Config {config_id} last sync {last_sync.isoformat()}, should sync: {stale}")
    return stale


async def create_from_api_config(db: AsyncSession, config_id: uuid.UUID) -> Optional["GoogleAdsSyncSession"]:
    """
    Build a sync session for one configuration. Returns None when the
    configuration is missing, not Google Ads, not ACTIVE, or its secrets
    cannot be decrypted. Status is never changed here.
    """
    config = await db.get(ApiConfiguration, config_id)
    if not config:
        logger.info(f"Sync skipped: API configuration {config_id} not found")
        return None
    if config.provider != PROVIDER or config.status != ApiStatus.ACTIVE.value:
        logger.info(
            f"Sync skipped: configuration {config_id} is {config.provider}/{config.status}"
        )
        return None

    client = build_client_for_config(config)
    if client is None:
        return None
    return GoogleAdsSyncSession(db, config, client)


# ── Sync session ──────────────────────────────────────────────────────

class GoogleAdsSyncSession:
    """One authenticated client bound to one ApiConfiguration."""

    def __init__(self, db: AsyncSession, config: ApiConfiguration, client: GoogleAdsClient):
        self.db = db
        self.config = config
        self.config_id = config.id
        self.user_id = config.user_id
        self.client = client

    async def _record(self, **kwargs) -> None:
        await activity_service.record_activity(self.db, **kwargs)

    # ── Campaigns ─────────────────────────────────────────────────────

    async def _upsert_campaign(self, campaign: dict, synced_at: datetime) -> None:
        start_date = _parse_date(campaign.get("start_date"))
        end_date = _parse_date(campaign.get("end_date"))

        result = await self.db.execute(
            select(GoogleAdsCampaign).where(
                GoogleAdsCampaign.api_config_id == self.config_id,
                GoogleAdsCampaign.campaign_id == campaign["id"],
            )
        )
        existing = result.scalar_one_or_none()
        if existing:
            existing.name = campaign.get("name") or existing.name
            existing.status = campaign.get("status")
            existing.budget = campaign.get("budget")
            existing.start_date = start_date
            existing.end_date = end_date
            existing.last_sync_at = synced_at
        else:
            self.db.add(GoogleAdsCampaign(
                api_config_id=self.config_id,
                campaign_id=campaign["id"],
                name=campaign.get("name") or campaign["id"],
                status=campaign.get("status"),
                budget=campaign.get("budget"),
                start_date=start_date,
                end_date=end_date,
                last_sync_at=synced_at,
            ))
        await self.db.flush()

    async def sync_campaigns(self) -> SyncBatchResult:
        """
        Upsert every live campaign on (api_config_id, campaign_id).
        Campaigns missing from the live list are left in place.
        """
        errors: list[str] = []
        synced = 0
        rate_limited = False
        logger.info(f"Starting campaign sync for config {self.config_id}")

        try:
            campaigns = await self.client.get_campaigns()
        except Exception as e:
            if is_store_unavailable(e):
                raise
            rate_limited = isinstance(e, GoogleAdsRateLimitError)
            logger.error(f"Campaign fetch failed for config {self.config_id}: {e}")
            errors.append(f"Campaign sync failed: {e}")
            campaigns = []

        synced_at = utcnow()
        for campaign in campaigns:
            try:
                async with self.db.begin_nested():
                    await self._upsert_campaign(campaign, synced_at)
                synced += 1
            except Exception as e:
                if is_store_unavailable(e):
                    raise
                logger.error(f"Error syncing campaign {campaign.get('id')}: {e}")
                errors.append(f"Campaign {campaign.get('name') or campaign.get('id')}: {e}")

        await self._record(**activity_service.sync_outcome(
            self.user_id, self.config_id, PROVIDER,
            ActivityType.CAMPAIGN_SYNC, "campaigns", synced, errors,
            metadata={"rate_limited": rate_limited} if rate_limited else None,
        ))
        logger.info(f"Campaign sync for config {self.config_id}: {synced} synced, {len(errors)} errors")
        return SyncBatchResult(success=not errors, count=synced, errors=errors, rate_limited=rate_limited)

    # ── Metrics ───────────────────────────────────────────────────────

    async def _upsert_metric(self, campaign: GoogleAdsCampaign, row: dict) -> None:
        metric_date = _parse_date(row.get("date"))
        if metric_date is None:
            raise ValueError("metrics row has no date")

        result = await self.db.execute(
            select(GoogleAdsMetrics).where(
                GoogleAdsMetrics.campaign_id == campaign.id,
                GoogleAdsMetrics.date == metric_date,
            )
        )
        existing = result.scalar_one_or_none()
        values = {
            "impressions": row.get("impressions", 0),
            "clicks": row.get("clicks", 0),
            "conversions": row.get("conversions", 0.0),
            "cost": row.get("cost", 0.0),
            "ctr": row.get("ctr", 0.0),
            "average_cpc": row.get("average_cpc", 0.0),
            "conversion_rate": row.get("conversion_rate", 0.0),
        }
        if existing:
            for key, value in values.items():
                setattr(existing, key, value)
        else:
            self.db.add(GoogleAdsMetrics(campaign_id=campaign.id, date=metric_date, **values))
        await self.db.flush()

    async def sync_metrics(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> SyncBatchResult:
        """
        Fetch and upsert daily metrics for every cached campaign, one campaign
        at a time. Defaults to the trailing METRICS_LOOKBACK_DAYS window.
        """
        errors: list[str] = []
        synced = 0
        rate_limited = False

        end_date = end_date or utcnow().date()
        start_date = start_date or end_date - timedelta(days=get_settings().metrics_lookback_days)
        date_range = {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()}

        if start_date > end_date:
            errors.append(f"Invalid date range: {start_date} is after {end_date}")
            await self._record(**activity_service.sync_outcome(
                self.user_id, self.config_id, PROVIDER,
                ActivityType.METRICS_SYNC, "metrics records", 0, errors, metadata=date_range,
            ))
            return SyncBatchResult(success=False, errors=errors)

        result = await self.db.execute(
            select(GoogleAdsCampaign).where(GoogleAdsCampaign.api_config_id == self.config_id)
        )
        campaigns = list(result.scalars().all())

        if not campaigns:
            logger.info(f"No cached campaigns for config {self.config_id}; nothing to sync metrics for")
            await self._record(
                user_id=self.user_id,
                api_config_id=self.config_id,
                provider=PROVIDER,
                type=ActivityType.METRICS_SYNC.value,
                status=ActivityStatus.WARNING.value,
                title="Metrics sync skipped",
                description="No cached campaigns to sync metrics for. Run a campaign sync first.",
                metadata=date_range,
            )
            return SyncBatchResult(success=True, count=0)

        logger.info(
            f"Starting metrics sync for config {self.config_id}: "
            f"{len(campaigns)} campaigns, {start_date} to {end_date}"
        )

        for campaign in campaigns:
            if rate_limited:
                errors.append(f"Campaign {campaign.name}: skipped after rate limit")
                continue
            try:
                rows = await self.client.get_metrics([campaign.campaign_id], start_date, end_date)
            except Exception as e:
                if is_store_unavailable(e):
                    raise
                rate_limited = isinstance(e, GoogleAdsRateLimitError)
                logger.error(f"Metrics fetch failed for campaign {campaign.campaign_id}: {e}")
                errors.append(f"Campaign {campaign.name}: {e}")
                continue

            for row in rows:
                if str(row.get("campaign_id")) != campaign.campaign_id:
                    continue
                try:
                    async with self.db.begin_nested():
                        await self._upsert_metric(campaign, row)
                    synced += 1
                except Exception as e:
                    if is_store_unavailable(e):
                        raise
                    logger.error(
                        f"Error syncing metrics for campaign {campaign.campaign_id} on {row.get('date')}: {e}"
                    )
                    errors.append(f"Daily metric for campaign {campaign.campaign_id} on {row.get('date')}: {e}")

        metadata = dict(date_range)
        if rate_limited:
            metadata["rate_limited"] = True
        await self._record(**activity_service.sync_outcome(
            self.user_id, self.config_id, PROVIDER,
            ActivityType.METRICS_SYNC, "metrics records", synced, errors, metadata=metadata,
        ))
        logger.info(f"Metrics sync for config {self.config_id}: {synced} records, {len(errors)} errors")
        return SyncBatchResult(success=not errors, count=synced, errors=errors, rate_limited=rate_limited)

    # ── Orchestration ─────────────────────────────────────────────────

    async def _run(
        self,
        title: str,
        sync_campaigns: bool,
        sync_metrics: bool,
        start_date: Optional[date],
        end_date: Optional[date],
        extra: Optional[dict] = None,
    ) -> SyncResult:
        started = time.monotonic()
        errors: list[str] = []
        campaigns_synced = 0
        metrics_synced = 0
        rate_limited = False

        try:
            if sync_campaigns:
                campaign_result = await self.sync_campaigns()
                campaigns_synced = campaign_result.count
                errors.extend(campaign_result.errors)
                rate_limited = campaign_result.rate_limited
            if sync_metrics and not rate_limited:
                metrics_result = await self.sync_metrics(start_date, end_date)
                metrics_synced = metrics_result.count
                errors.extend(metrics_result.errors)
                rate_limited = metrics_result.rate_limited
        except Exception as e:
            if is_store_unavailable(e):
                raise
            logger.error(f"{title} failed for config {self.config_id}: {e}", exc_info=True)
            errors.append(str(e))
            await self._record(
                user_id=self.user_id,
                api_config_id=self.config_id,
                provider=PROVIDER,
                type=ActivityType.BACKGROUND_SYNC.value,
                status=ActivityStatus.ERROR.value,
                title=f"{title} failed",
                description=str(e),
                metadata={"error": str(e), **(extra or {})},
            )
            return SyncResult(
                config_id=self.config_id,
                success=False,
                campaigns_synced=campaigns_synced,
                metrics_records_synced=metrics_synced,
                errors=errors,
                last_sync_at=utcnow(),
            )

        if rate_limited:
            await self._record(**activity_service.rate_limit_warning(
                self.user_id, self.config_id, PROVIDER,
                "Google Ads API rate limit reached; remaining work will be picked up by the next sync.",
            ))

        await self._record(
            user_id=self.user_id,
            api_config_id=self.config_id,
            provider=PROVIDER,
            type=ActivityType.BACKGROUND_SYNC.value,
            status=(ActivityStatus.SUCCESS if not errors else ActivityStatus.WARNING).value,
            title=f"{title} completed",
            description=f"Synced {campaigns_synced} campaigns and {metrics_synced} metrics records",
            metadata={
                "campaigns_synced": campaigns_synced,
                "metrics_records_synced": metrics_synced,
                "errors": len(errors),
                "duration_ms": int((time.monotonic() - started) * 1000),
                **(extra or {}),
            },
        )
        logger.info(
            f"{title} for config {self.config_id}: {campaigns_synced} campaigns, "
            f"{metrics_synced} metrics, {len(errors)} errors"
        )
        return SyncResult(
            config_id=self.config_id,
            success=not errors,
            campaigns_synced=campaigns_synced,
            metrics_records_synced=metrics_synced,
            errors=errors,
            last_sync_at=utcnow(),
        )

    async def perform_full_sync(self, options: Optional[SyncOptions] = None) -> SyncResult:
        options = options or SyncOptions()
        return await self._run(
            "Background sync",
            options.sync_campaigns,
            options.sync_metrics,
            options.start_date,
            options.end_date,
        )

    async def sync_historical_data(self, years_back: int = 1) -> SyncResult:
        """Campaigns, then daily metrics reaching back ``years_back`` years."""
        end_date = utcnow().date()
        start_date = _years_before(end_date, years_back)
        return await self._run(
            "Historical data sync",
            True,
            True,
            start_date,
            end_date,
            extra={
                "years_back": years_back,
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
            },
        )


# ── Bulk entry point (manual trigger / cron) ─────────────────────────

async def sync_all_configurations(
    db: AsyncSession,
    options: Optional[SyncOptions] = None,
    user_id: Optional[uuid.UUID] = None,
) -> list[SyncResult]:
    """
    Sync every ACTIVE Google Ads configuration (optionally only one user's).
    Each configuration is handled independently and always yields a result.
    """
    options = options or SyncOptions()
    query = select(ApiConfiguration.id, ApiConfiguration.user_id).where(
        ApiConfiguration.provider == PROVIDER,
        ApiConfiguration.status == ApiStatus.ACTIVE.value,
    ).order_by(ApiConfiguration.created_at)
    if user_id is not None:
        query = query.where(ApiConfiguration.user_id == user_id)
    configs = list((await db.execute(query)).all())

    logger.info(f"Found {len(configs)} active Google Ads configurations to sync")
    results: list[SyncResult] = []

    for config_id, owner_id in configs:
        try:
            force = options.force_sync or options.historical
            if not force and not await should_sync(db, config_id):
                results.append(SyncResult(config_id=config_id, success=True, skipped=True))
                continue

            session = await create_from_api_config(db, config_id)
            if session is None:
                logger.warning(f"Could not create sync session for config {config_id}")
                await activity_service.record_activity(db, **activity_service.error(
                    owner_id, config_id, PROVIDER,
                    "Background sync failed", "Credentials are unusable or the configuration is not active",
                ))
                results.append(SyncResult(
                    config_id=config_id,
                    success=False,
                    errors=[f"Configuration {config_id} cannot be synced: credentials unusable"],
                ))
                continue

            if options.historical:
                result = await session.sync_historical_data(options.years_back)
            else:
                result = await session.perform_full_sync(options)
            results.append(result)
        except Exception as e:
            if is_store_unavailable(e):
                raise
            logger.error(f"Error syncing config {config_id}: {e}", exc_info=True)
            await activity_service.record_activity(db, **activity_service.error(
                owner_id, config_id, PROVIDER, "Background sync failed", str(e),
            ))
            results.append(SyncResult(
                config_id=config_id,
                success=False,
                errors=[str(e)],
                last_sync_at=utcnow(),
            ))

    return results
