"""
Tests for the Google Ads metrics sync engine: staleness policy, campaign and
metrics upserts, per-item error isolation, activity accounting, and the bulk
sync entry point.
"""

from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select, func
from sqlalchemy.exc import OperationalError

from conftest import (
    FakeAdsClient, campaign_row, days_ago, make_campaign, make_config, make_user, metric_row,
)
from metrics_hub.google_ads_client import GoogleAdsError, GoogleAdsRateLimitError
from metrics_hub.models import (
    ActivityStatus, ActivityType, ApiActivity, ApiStatus, GoogleAdsCampaign, GoogleAdsMetrics,
)
from metrics_hub.services import metrics_sync_service
from metrics_hub.services.metrics_sync_service import (
    GoogleAdsSyncSession, SyncOptions, create_from_api_config, should_sync, sync_all_configurations,
)
from metrics_hub.utils import utcnow

pytestmark = pytest.mark.anyio

SYNC_MODULE = "metrics_hub.services.metrics_sync_service"


async def _count(db, model, *where):
    return (await db.execute(select(func.count()).select_from(model).where(*where))).scalar()


async def _activities(db, config_id):
    result = await db.execute(
        select(ApiActivity).where(ApiActivity.api_config_id == config_id).order_by(ApiActivity.created_at)
    )
    return list(result.scalars().all())


# ── should_sync ───────────────────────────────────────────────────────

async def test_should_sync_true_without_cached_campaigns(db):
    user = await make_user(db)
    config = await make_config(db, user)
    assert await should_sync(db, config.id) is True


async def test_should_sync_true_when_last_sync_older_than_max_age(db):
    user = await make_user(db)
    config = await make_config(db, user)
    await make_campaign(db, config, last_sync_at=utcnow() - timedelta(hours=25))
    assert await should_sync(db, config.id, max_age_hours=24) is True


async def test_should_sync_false_when_recent(db):
    user = await make_user(db)
    config = await make_config(db, user)
    await make_campaign(db, config, last_sync_at=utcnow() - timedelta(hours=23))
    assert await should_sync(db, config.id, max_age_hours=24) is False


async def test_should_sync_exactly_at_max_age_is_not_stale(db):
    user = await make_user(db)
    config = await make_config(db, user)
    now = datetime(2026, 3, 1, 12, 0, 0)
    await make_campaign(db, config, last_sync_at=now - timedelta(hours=24))
    with patch(f"{SYNC_MODULE}.utcnow", return_value=now):
        assert await should_sync(db, config.id, max_age_hours=24) is False
    with patch(f"{SYNC_MODULE}.utcnow", return_value=now + timedelta(seconds=1)):
        assert await should_sync(db, config.id, max_age_hours=24) is True


async def test_should_sync_uses_most_recent_campaign(db):
    user = await make_user(db)
    config = await make_config(db, user)
    await make_campaign(db, config, campaign_id="1", last_sync_at=utcnow() - timedelta(days=10))
    await make_campaign(db, config, campaign_id="2", last_sync_at=utcnow() - timedelta(hours=1))
    assert await should_sync(db, config.id, max_age_hours=24) is False


async def test_should_sync_false_within_an_hour_after_successful_sync(db):
    user = await make_user(db)
    config = await make_config(db, user)
    await make_campaign(db, config, last_sync_at=utcnow() - timedelta(hours=25))
    assert await should_sync(db, config.id, max_age_hours=24) is True

    client = FakeAdsClient(campaigns=[campaign_row("111", "Brand")])
    result = await GoogleAdsSyncSession(db, config, client).sync_campaigns()
    assert result.success

    assert await should_sync(db, config.id, max_age_hours=24) is False


# ── create_from_api_config ───────────────────────────────────────────

async def test_create_from_api_config_returns_none_for_missing_or_inactive(db):
    import uuid

    user = await make_user(db)
    inactive = await make_config(db, user, status=ApiStatus.INACTIVE.value)

    assert await create_from_api_config(db, uuid.uuid4()) is None
    assert await create_from_api_config(db, inactive.id) is None


async def test_create_from_api_config_returns_none_on_undecryptable_secret(db):
    user = await make_user(db)
    config = await make_config(db, user, client_secret="gAAAAAB-not-a-valid-token")

    assert await create_from_api_config(db, config.id) is None
    await db.refresh(config)
    assert config.status == ApiStatus.ACTIVE.value


async def test_create_from_api_config_builds_session_for_active_config(db):
    user = await make_user(db)
    config = await make_config(db, user, customer_id="123-456-7890")

    session = await create_from_api_config(db, config.id)
    assert session is not None
    assert session.config_id == config.id
    assert session.user_id == user.id
    assert session.client.customer_id == "1234567890"
    assert session.client.client_secret == "client-secret"


# ── sync_campaigns ───────────────────────────────────────────────────

async def test_sync_campaigns_twice_is_idempotent_and_refreshes_last_sync(db):
    user = await make_user(db)
    config = await make_config(db, user)
    client = FakeAdsClient(campaigns=[campaign_row("111", "Brand"), campaign_row("222", "Generic")])
    session = GoogleAdsSyncSession(db, config, client)

    first = datetime(2026, 1, 1, 8, 0, 0)
    second = datetime(2026, 1, 1, 9, 0, 0)
    with patch(f"{SYNC_MODULE}.utcnow", return_value=first):
        r1 = await session.sync_campaigns()
    with patch(f"{SYNC_MODULE}.utcnow", return_value=second):
        r2 = await session.sync_campaigns()

    assert r1.count == 2 and r2.count == 2
    assert await _count(db, GoogleAdsCampaign, GoogleAdsCampaign.api_config_id == config.id) == 2
    rows = (await db.execute(select(GoogleAdsCampaign))).scalars().all()
    assert {c.last_sync_at for c in rows} == {second}


async def test_sync_campaigns_updates_denormalized_fields(db):
    user = await make_user(db)
    config = await make_config(db, user)
    await make_campaign(db, config, campaign_id="111", name="Old name", status="enabled", budget=10.0)

    client = FakeAdsClient(campaigns=[campaign_row("111", "New name", status="paused", budget=55.5)])
    await GoogleAdsSyncSession(db, config, client).sync_campaigns()

    campaign = (await db.execute(select(GoogleAdsCampaign))).scalar_one()
    assert campaign.name == "New name"
    assert campaign.status == "paused"
    assert campaign.budget == 55.5
    assert campaign.start_date.isoformat() == "2024-01-01"


async def test_sync_campaigns_never_deletes_absent_campaigns(db):
    user = await make_user(db)
    config = await make_config(db, user)
    await make_campaign(db, config, campaign_id="999", name="Archived upstream")

    client = FakeAdsClient(campaigns=[campaign_row("111", "Brand")])
    result = await GoogleAdsSyncSession(db, config, client).sync_campaigns()

    assert result.success
    ids = set((await db.execute(select(GoogleAdsCampaign.campaign_id))).scalars().all())
    assert ids == {"111", "999"}


async def test_sync_campaigns_isolates_a_bad_item(db):
    user = await make_user(db)
    config = await make_config(db, user)
    client = FakeAdsClient(campaigns=[
        campaign_row("111", "Brand"),
        campaign_row("222", "Broken", start_date="not-a-date"),
        campaign_row("333", "Generic"),
    ])

    result = await GoogleAdsSyncSession(db, config, client).sync_campaigns()

    assert result.success is False
    assert result.count == 2
    assert len(result.errors) == 1 and "Broken" in result.errors[0]
    ids = set((await db.execute(select(GoogleAdsCampaign.campaign_id))).scalars().all())
    assert ids == {"111", "333"}


async def test_sync_campaigns_turns_platform_failure_into_errors(db):
    user = await make_user(db)
    config = await make_config(db, user)
    client = FakeAdsClient(fail_campaigns=GoogleAdsError("invalid_grant"))

    result = await GoogleAdsSyncSession(db, config, client).sync_campaigns()

    assert result.success is False
    assert result.count == 0
    assert "invalid_grant" in result.errors[0]


async def test_sync_campaigns_propagates_store_unavailable(db):
    user = await make_user(db)
    config = await make_config(db, user)
    client = FakeAdsClient(fail_campaigns=OperationalError("SELECT 1", {}, Exception("connection refused")))

    with pytest.raises(OperationalError):
        await GoogleAdsSyncSession(db, config, client).sync_campaigns()


async def test_each_sync_campaigns_call_records_exactly_one_activity(db):
    user = await make_user(db)
    config = await make_config(db, user)

    ok = GoogleAdsSyncSession(db, config, FakeAdsClient(campaigns=[campaign_row("111", "Brand")]))
    await ok.sync_campaigns()
    activities = await _activities(db, config.id)
    assert len(activities) == 1
    assert activities[0].type == ActivityType.CAMPAIGN_SYNC.value
    assert activities[0].status == ActivityStatus.SUCCESS.value
    assert activities[0].details["count"] == 1

    failing = GoogleAdsSyncSession(db, config, FakeAdsClient(fail_campaigns=GoogleAdsError("boom")))
    await failing.sync_campaigns()
    activities = await _activities(db, config.id)
    assert len(activities) == 2
    assert activities[1].status == ActivityStatus.ERROR.value
    assert "boom" in activities[1].description


# ── sync_metrics ─────────────────────────────────────────────────────

async def test_sync_metrics_upserts_one_row_per_campaign_and_day(db):
    user = await make_user(db)
    config = await make_config(db, user)
    campaign = await make_campaign(db, config, campaign_id="111")
    day = days_ago(3)

    client = FakeAdsClient(metrics={"111": [metric_row("111", day, impressions=100, clicks=10)]})
    session = GoogleAdsSyncSession(db, config, client)
    first = await session.sync_metrics()

    client.metrics = {"111": [metric_row("111", day, impressions=250, clicks=30)]}
    second = await session.sync_metrics()

    assert first.count == 1 and second.count == 1
    rows = (await db.execute(select(GoogleAdsMetrics).where(GoogleAdsMetrics.campaign_id == campaign.id))).scalars().all()
    assert len(rows) == 1
    assert rows[0].impressions == 250
    assert rows[0].clicks == 30
    assert rows[0].date == day


async def test_sync_metrics_continues_after_one_campaign_fails(db):
    user = await make_user(db)
    config = await make_config(db, user)
    await make_campaign(db, config, campaign_id="111", name="Brand")
    await make_campaign(db, config, campaign_id="222", name="Broken")
    await make_campaign(db, config, campaign_id="333", name="Generic")

    client = FakeAdsClient(
        metrics={
            "111": [metric_row("111", days_ago(1)), metric_row("111", days_ago(2))],
            "333": [metric_row("333", days_ago(1))],
        },
        fail_metrics={"222": GoogleAdsError("PERMISSION_DENIED for campaign 222")},
    )
    result = await GoogleAdsSyncSession(db, config, client).sync_metrics()

    assert result.success is False
    assert result.count == 3
    assert len(result.errors) == 1
    assert "PERMISSION_DENIED" in result.errors[0]
    assert sorted(call[0][0] for call in client.metrics_calls) == ["111", "222", "333"]
    assert await _count(db, GoogleAdsMetrics) == 3


async def test_sync_metrics_defaults_to_trailing_lookback_window(db):
    user = await make_user(db)
    config = await make_config(db, user)
    await make_campaign(db, config, campaign_id="111")

    client = FakeAdsClient()
    await GoogleAdsSyncSession(db, config, client).sync_metrics()

    _, start, end = client.metrics_calls[0]
    assert end == utcnow().date()
    assert (end - start).days == 30


async def test_sync_metrics_with_empty_cache_records_warning(db):
    user = await make_user(db)
    config = await make_config(db, user)
    client = FakeAdsClient()

    result = await GoogleAdsSyncSession(db, config, client).sync_metrics()

    assert result.count == 0
    assert client.metrics_calls == []
    activities = await _activities(db, config.id)
    assert len(activities) == 1
    assert activities[0].type == ActivityType.METRICS_SYNC.value
    assert activities[0].status == ActivityStatus.WARNING.value


async def test_each_sync_metrics_call_records_exactly_one_activity(db):
    user = await make_user(db)
    config = await make_config(db, user)
    await make_campaign(db, config, campaign_id="111")
    await make_campaign(db, config, campaign_id="222")

    client = FakeAdsClient(
        metrics={"111": [metric_row("111", days_ago(1))]},
        fail_metrics={"222": GoogleAdsError("quota")},
    )
    await GoogleAdsSyncSession(db, config, client).sync_metrics()

    activities = await _activities(db, config.id)
    assert len(activities) == 1
    assert activities[0].status == ActivityStatus.WARNING.value
    assert activities[0].details["count"] == 1
    assert activities[0].details["error_count"] == 1


async def test_sync_metrics_stops_calling_api_after_rate_limit(db):
    user = await make_user(db)
    config = await make_config(db, user)
    await make_campaign(db, config, campaign_id="111", name="A")
    await make_campaign(db, config, campaign_id="222", name="B")

    client = FakeAdsClient(fail_metrics={
        "111": GoogleAdsRateLimitError("RESOURCE_EXHAUSTED", status_code=429),
        "222": GoogleAdsRateLimitError("RESOURCE_EXHAUSTED", status_code=429),
    })
    result = await GoogleAdsSyncSession(db, config, client).sync_metrics()

    assert result.rate_limited is True
    assert len(client.metrics_calls) == 1
    assert len(result.errors) == 2


# ── perform_full_sync / historical ───────────────────────────────────

async def test_perform_full_sync_runs_campaigns_then_metrics(db):
    user = await make_user(db)
    config = await make_config(db, user)
    client = FakeAdsClient(
        campaigns=[campaign_row("111", "Brand")],
        metrics={"111": [metric_row("111", days_ago(1)), metric_row("111", days_ago(2))]},
    )

    result = await GoogleAdsSyncSession(db, config, client).perform_full_sync()

    assert result.success is True
    assert result.config_id == config.id
    assert result.campaigns_synced == 1
    assert result.metrics_records_synced == 2
    types = [a.type for a in await _activities(db, config.id)]
    assert types.count(ActivityType.BACKGROUND_SYNC.value) == 1
    assert types.count(ActivityType.CAMPAIGN_SYNC.value) == 1
    assert types.count(ActivityType.METRICS_SYNC.value) == 1


async def test_perform_full_sync_respects_options(db):
    user = await make_user(db)
    config = await make_config(db, user)
    await make_campaign(db, config, campaign_id="111")
    client = FakeAdsClient(metrics={"111": [metric_row("111", days_ago(1))]})

    result = await GoogleAdsSyncSession(db, config, client).perform_full_sync(
        SyncOptions(sync_campaigns=False, start_date=days_ago(5), end_date=days_ago(1))
    )

    assert client.campaign_calls == 0
    assert client.metrics_calls[0][1:] == (days_ago(5), days_ago(1))
    assert result.metrics_records_synced == 1


async def test_perform_full_sync_summary_is_warning_on_partial_failure(db):
    user = await make_user(db)
    config = await make_config(db, user)
    client = FakeAdsClient(fail_campaigns=GoogleAdsError("unauthorized"))

    result = await GoogleAdsSyncSession(db, config, client).perform_full_sync()

    assert result.success is False
    summary = [a for a in await _activities(db, config.id) if a.type == ActivityType.BACKGROUND_SYNC.value]
    assert len(summary) == 1
    assert summary[0].status == ActivityStatus.WARNING.value


async def test_sync_historical_data_reaches_back_requested_years(db):
    user = await make_user(db)
    config = await make_config(db, user)
    client = FakeAdsClient(campaigns=[campaign_row("111", "Brand")])

    result = await GoogleAdsSyncSession(db, config, client).sync_historical_data(years_back=2)

    assert result.success is True
    _, start, end = client.metrics_calls[0]
    assert end.year - start.year == 2
    summary = [a for a in await _activities(db, config.id) if a.type == ActivityType.BACKGROUND_SYNC.value]
    assert summary[0].details["years_back"] == 2


# ── sync_all_configurations ──────────────────────────────────────────

async def test_sync_all_isolates_a_failing_configuration(db):
    users = [await make_user(db, email=f"user{i}@example.com") for i in range(3)]
    configs = [await make_config(db, u) for u in users]
    clients = {
        configs[0].id: FakeAdsClient(campaigns=[campaign_row("1", "A")]),
        configs[1].id: FakeAdsClient(fail_campaigns=GoogleAdsError("config two is broken")),
        configs[2].id: FakeAdsClient(campaigns=[campaign_row("3", "C")]),
    }

    with patch(f"{SYNC_MODULE}.build_client_for_config", side_effect=lambda c: clients[c.id]):
        results = await sync_all_configurations(db, SyncOptions(force_sync=True))

    assert len(results) == 3
    by_config = {r.config_id: r for r in results}
    assert by_config[configs[0].id].success is True
    assert by_config[configs[1].id].success is False
    assert "config two is broken" in by_config[configs[1].id].errors[0]
    assert by_config[configs[2].id].success is True


async def test_sync_all_reports_configuration_that_raises(db):
    users = [await make_user(db, email=f"user{i}@example.com") for i in range(3)]
    configs = [await make_config(db, u) for u in users]

    original = GoogleAdsSyncSession.perform_full_sync

    async def flaky(self, options=None):
        if self.config_id == configs[1].id:
            raise RuntimeError("unexpected failure")
        return await original(self, options)

    with patch(f"{SYNC_MODULE}.build_client_for_config", side_effect=lambda c: FakeAdsClient()), \
            patch.object(GoogleAdsSyncSession, "perform_full_sync", flaky):
        results = await sync_all_configurations(db, SyncOptions(force_sync=True))

    by_config = {r.config_id: r for r in results}
    assert by_config[configs[0].id].success is True
    assert by_config[configs[1].id].success is False
    assert by_config[configs[1].id].errors == ["unexpected failure"]
    assert by_config[configs[2].id].success is True


async def test_sync_all_reports_undecryptable_configuration(db):
    user_a = await make_user(db, email="a@example.com")
    user_b = await make_user(db, email="b@example.com")
    good = await make_config(db, user_a)
    bad = await make_config(db, user_b, refresh_token="gAAAAAB-garbage")

    real_builder = metrics_sync_service.build_client_for_config

    def builder(config):
        # Only the broken configuration goes through real decryption
        return real_builder(config) if config.id == bad.id else FakeAdsClient()

    with patch(f"{SYNC_MODULE}.build_client_for_config", side_effect=builder):
        results = await sync_all_configurations(db, SyncOptions(force_sync=True))

    by_config = {r.config_id: r for r in results}
    assert by_config[bad.id].success is False
    assert "credentials unusable" in by_config[bad.id].errors[0]
    assert by_config[good.id].success is True
    await db.refresh(bad)
    assert bad.status == ApiStatus.ACTIVE.value
    activities = await _activities(db, bad.id)
    assert len(activities) == 1
    assert activities[0].type == ActivityType.ERROR.value


async def test_sync_all_records_activity_for_configuration_that_raises(db):
    user = await make_user(db)
    config = await make_config(db, user)

    async def broken(self, options=None):
        raise RuntimeError("Invalid ENCRYPTION_KEY")

    with patch(f"{SYNC_MODULE}.build_client_for_config", return_value=FakeAdsClient()), \
            patch.object(GoogleAdsSyncSession, "perform_full_sync", broken):
        results = await sync_all_configurations(db, SyncOptions(force_sync=True))

    assert results[0].success is False
    activities = await _activities(db, config.id)
    assert len(activities) == 1
    assert activities[0].type == ActivityType.ERROR.value
    assert activities[0].status == ActivityStatus.ERROR.value
    assert activities[0].user_id == user.id
    assert activities[0].description == "Invalid ENCRYPTION_KEY"


async def test_sync_all_propagates_store_unavailable(db):
    user = await make_user(db)
    await make_config(db, user)

    async def store_down(self, options=None):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    with patch(f"{SYNC_MODULE}.build_client_for_config", return_value=FakeAdsClient()), \
            patch.object(GoogleAdsSyncSession, "perform_full_sync", store_down):
        with pytest.raises(OperationalError):
            await sync_all_configurations(db, SyncOptions(force_sync=True))


async def test_sync_all_skips_fresh_configurations_unless_forced(db):
    user = await make_user(db)
    config = await make_config(db, user)
    await make_campaign(db, config, last_sync_at=utcnow() - timedelta(minutes=5))
    client = FakeAdsClient(campaigns=[campaign_row("111", "Brand")])

    with patch(f"{SYNC_MODULE}.build_client_for_config", return_value=client):
        skipped = await sync_all_configurations(db, SyncOptions())
        forced = await sync_all_configurations(db, SyncOptions(force_sync=True))

    assert skipped[0].skipped is True and skipped[0].success is True
    assert forced[0].skipped is False
    assert client.campaign_calls == 1


async def test_sync_all_only_covers_active_google_ads_configurations(db):
    owner = await make_user(db, email="owner@example.com")
    other = await make_user(db, email="other@example.com")
    active = await make_config(db, owner)
    await make_config(db, other, status=ApiStatus.INACTIVE.value)

    with patch(f"{SYNC_MODULE}.build_client_for_config", return_value=FakeAdsClient()):
        results = await sync_all_configurations(db, SyncOptions(force_sync=True))

    assert [r.config_id for r in results] == [active.id]


async def test_sync_all_can_be_scoped_to_one_user(db):
    owner = await make_user(db, email="owner@example.com")
    other = await make_user(db, email="other@example.com")
    mine = await make_config(db, owner)
    await make_config(db, other)

    with patch(f"{SYNC_MODULE}.build_client_for_config", return_value=FakeAdsClient()):
        results = await sync_all_configurations(db, SyncOptions(force_sync=True), user_id=owner.id)

    assert [r.config_id for r in results] == [mine.id]


async def test_sync_all_historical_uses_years_back(db):
    user = await make_user(db)
    await make_config(db, user)
    client = FakeAdsClient(campaigns=[campaign_row("111", "Brand")])

    with patch(f"{SYNC_MODULE}.build_client_for_config", return_value=client):
        results = await sync_all_configurations(db, SyncOptions(historical=True, years_back=3))

    assert results[0].success is True
    _, start, end = client.metrics_calls[0]
    assert end.year - start.year == 3
