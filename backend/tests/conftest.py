"""
Shared fixtures: an in-memory SQLite database (aiosqlite) standing in for
Postgres, factories for users/configurations/cache rows, and a fake Google
Ads client.

Environment variables are set before any metrics_hub module is imported so
the engine and settings pick them up.
"""

import os

os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ENCRYPTION_KEY"] = "p8H1PjJ1mUlmXr5tAxBxTi2yQm0nZ8W3b0oWq0q8v1I="
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["FIRST_ADMIN_EMAIL"] = ""
os.environ["FIRST_ADMIN_PASSWORD"] = ""

from datetime import date, timedelta  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import event  # noqa: E402

from metrics_hub.crypto import encrypt_value  # noqa: E402
from metrics_hub.database import Base, async_session, engine  # noqa: E402
from metrics_hub.models import (  # noqa: E402
    ApiConfiguration, ApiProvider, ApiStatus, GoogleAdsCampaign, GoogleAdsMetrics, User,
)
from metrics_hub.services.auth_service import create_access_token  # noqa: E402
from metrics_hub.utils import utcnow  # noqa: E402


# pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN itself.
@event.listens_for(engine.sync_engine, "connect")
def _sqlite_on_connect(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@event.listens_for(engine.sync_engine, "begin")
def _sqlite_on_begin(conn):
    conn.exec_driver_sql("BEGIN")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def schema(anyio_backend):
    """Fresh in-memory schema per test."""
    import metrics_hub.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture
async def db(schema):
    async with async_session() as session:
        yield session


# ── Factories ────────────────────────────────────────────────────────

async def make_user(db, email="owner@example.com", role="user", password_hash="not-a-real-hash") -> User:
    user = User(email=email, password_hash=password_hash, name=email.split("@")[0], role=role)
    db.add(user)
    await db.flush()
    return user


async def make_config(db, user, status=ApiStatus.ACTIVE.value, name="Google AdWords API", **overrides) -> ApiConfiguration:
    values = {
        "user_id": user.id,
        "name": name,
        "provider": ApiProvider.GOOGLE_ADWORDS.value,
        "client_id": "client-id-1234",
        "client_secret": encrypt_value("client-secret"),
        "developer_token": encrypt_value("dev-token"),
        "refresh_token": encrypt_value("refresh-token"),
        "customer_id": "1234567890",
        "status": status,
    }
    values.update(overrides)
    config = ApiConfiguration(**values)
    db.add(config)
    await db.flush()
    return config


async def make_campaign(db, config, campaign_id="111", name="Brand", last_sync_at=None, **overrides) -> GoogleAdsCampaign:
    campaign = GoogleAdsCampaign(
        api_config_id=config.id,
        campaign_id=campaign_id,
        name=name,
        status=overrides.pop("status", "enabled"),
        budget=overrides.pop("budget", 100.0),
        last_sync_at=last_sync_at if last_sync_at is not None else utcnow(),
        **overrides,
    )
    db.add(campaign)
    await db.flush()
    return campaign


async def make_metric(db, campaign, day, **values) -> GoogleAdsMetrics:
    row = GoogleAdsMetrics(
        campaign_id=campaign.id,
        date=day,
        impressions=values.get("impressions", 1000),
        clicks=values.get("clicks", 50),
        conversions=values.get("conversions", 5.0),
        cost=values.get("cost", 25.0),
        ctr=values.get("ctr", 0.05),
        average_cpc=values.get("average_cpc", 0.5),
        conversion_rate=values.get("conversion_rate", 10.0),
    )
    db.add(row)
    await db.flush()
    return row


def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(str(user.id), user.email, user.role)}"}


# ── Fake Google Ads client ───────────────────────────────────────────

def campaign_row(campaign_id, name, status="enabled", budget=100.0, start_date="2024-01-01", end_date=None) -> dict:
    return {
        "id": campaign_id,
        "name": name,
        "status": status,
        "budget": budget,
        "start_date": start_date,
        "end_date": end_date,
    }


def metric_row(campaign_id, day, impressions=1000, clicks=50, conversions=5.0, cost=25.0) -> dict:
    return {
        "campaign_id": campaign_id,
        "date": day.isoformat() if isinstance(day, date) else day,
        "impressions": impressions,
        "clicks": clicks,
        "conversions": conversions,
        "cost": cost,
        "ctr": round(clicks / impressions, 4) if impressions else 0.0,
        "average_cpc": round(cost / clicks, 2) if clicks else 0.0,
        "conversion_rate": round(conversions / clicks * 100, 2) if clicks else 0.0,
    }


class FakeAdsClient:
    """Stands in for GoogleAdsClient; records every call it receives."""

    def __init__(self, campaigns=None, metrics=None, fail_campaigns=None, fail_metrics=None, connection=None):
        self.campaigns = campaigns or []
        self.metrics = metrics or {}
        self.fail_campaigns = fail_campaigns
        self.fail_metrics = fail_metrics or {}
        self.connection = connection or {"success": True, "details": "Connected", "data": {"customer_id": "1234567890"}}
        self.campaign_calls = 0
        self.metrics_calls = []
        self.token_expires_at = None

    async def get_campaigns(self):
        self.campaign_calls += 1
        if self.fail_campaigns:
            raise self.fail_campaigns
        return [dict(c) for c in self.campaigns]

    async def get_metrics(self, campaign_ids, start_date, end_date):
        self.metrics_calls.append((list(campaign_ids), start_date, end_date))
        rows = []
        for cid in campaign_ids:
            if cid in self.fail_metrics:
                raise self.fail_metrics[cid]
            rows.extend(dict(r) for r in self.metrics.get(cid, []))
        return rows

    async def test_connection(self):
        return self.connection


def days_ago(n: int) -> date:
    return utcnow().date() - timedelta(days=n)
