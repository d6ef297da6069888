"""
Ads Metrics Hub — Database Models
API configurations, the Google Ads campaign/metrics cache, and the
append-only API activity log.
"""

import uuid
import enum
from datetime import date as calendar_date, datetime, timezone
from sqlalchemy import (
    String, Text, Float, Integer, BigInteger, Boolean, Date, DateTime,
    JSON, ForeignKey, Index, UniqueConstraint, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from metrics_hub.database import Base


def _utcnow() -> datetime:
    """Naive UTC now — matches DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class ApiProvider(str, enum.Enum):
    GOOGLE_ADWORDS = "GOOGLE_ADWORDS"
    GOOGLE_ANALYTICS = "GOOGLE_ANALYTICS"


class ApiStatus(str, enum.Enum):
    INACTIVE = "INACTIVE"
    ACTIVE = "ACTIVE"
    ERROR = "ERROR"


class ActivityType(str, enum.Enum):
    CONNECTION_TEST = "CONNECTION_TEST"
    DATA_SYNC = "DATA_SYNC"
    CAMPAIGN_FETCH = "CAMPAIGN_FETCH"
    CAMPAIGN_SYNC = "CAMPAIGN_SYNC"
    METRICS_SYNC = "METRICS_SYNC"
    BACKGROUND_SYNC = "BACKGROUND_SYNC"
    RATE_LIMIT_WARNING = "RATE_LIMIT_WARNING"
    ERROR = "ERROR"


class ActivityStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    WARNING = "WARNING"


# ══════════════════════════════════════════════════════════════════════
#  USERS — App users for login & access control
# ══════════════════════════════════════════════════════════════════════

class User(Base):
    """App user for login and access control."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(50), default="user")  # admin, user
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_login_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    api_configurations: Mapped[list["ApiConfiguration"]] = relationship(
        "ApiConfiguration", back_populates="user", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_users_role", "role"),
    )


# ══════════════════════════════════════════════════════════════════════
#  API CONFIGURATIONS — One per user per provider
# ══════════════════════════════════════════════════════════════════════

class ApiConfiguration(Base):
    """
    Stored OAuth credentials for an external ads/analytics provider.
    client_secret, developer_token and refresh_token are Fernet-encrypted.
    Status moves INACTIVE -> ACTIVE | ERROR only through the connection test.
    """
    __tablename__ = "api_configurations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    client_id: Mapped[str] = mapped_column(String(512), nullable=False)
    client_secret: Mapped[str] = mapped_column(Text, nullable=False)
    developer_token: Mapped[str] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=True)
    customer_id: Mapped[str] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=ApiStatus.INACTIVE.value)
    token_expiry: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    last_tested_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="api_configurations")
    campaigns: Mapped[list["GoogleAdsCampaign"]] = relationship(
        "GoogleAdsCampaign", back_populates="api_config", cascade="all, delete-orphan", passive_deletes=True
    )
    activities: Mapped[list["ApiActivity"]] = relationship(
        "ApiActivity", back_populates="api_config", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_api_config_user_provider"),
        Index("ix_api_configurations_provider_status", "provider", "status"),
    )


# ══════════════════════════════════════════════════════════════════════
#  GOOGLE ADS CAMPAIGNS — Cached campaign list
# ══════════════════════════════════════════════════════════════════════

class GoogleAdsCampaign(Base):
    """Cached Google Ads campaign. Upserted by sync, never deleted by it."""
    __tablename__ = "google_ads_campaigns"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    api_config_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("api_configurations.id", ondelete="CASCADE"), nullable=False
    )
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)  # platform id
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=True)  # enabled / paused / ...
    budget: Mapped[float] = mapped_column(Float, nullable=True)
    start_date: Mapped[calendar_date] = mapped_column(Date, nullable=True)
    end_date: Mapped[calendar_date] = mapped_column(Date, nullable=True)
    last_sync_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    api_config: Mapped["ApiConfiguration"] = relationship("ApiConfiguration", back_populates="campaigns")
    metrics: Mapped[list["GoogleAdsMetrics"]] = relationship(
        "GoogleAdsMetrics", back_populates="campaign", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint("api_config_id", "campaign_id", name="uq_google_ads_campaign_per_config"),
        Index("ix_google_ads_campaigns_api_config_id", "api_config_id"),
        Index("ix_google_ads_campaigns_last_sync_at", "last_sync_at"),
    )


# ══════════════════════════════════════════════════════════════════════
#  GOOGLE ADS METRICS — One row per campaign per day
# ══════════════════════════════════════════════════════════════════════

class GoogleAdsMetrics(Base):
    """
    Daily performance for one cached campaign. Rows are idempotently upserted
    on (campaign_id, date) so re-syncing an overlapping window never duplicates.
    """
    __tablename__ = "google_ads_metrics"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("google_ads_campaigns.id", ondelete="CASCADE"), nullable=False
    )
    date: Mapped[calendar_date] = mapped_column(Date, nullable=False)

    # Performance metrics
    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    conversions: Mapped[float] = mapped_column(Float, default=0.0)
    cost: Mapped[float] = mapped_column(Float, default=0.0)
    ctr: Mapped[float] = mapped_column(Float, default=0.0)
    average_cpc: Mapped[float] = mapped_column(Float, default=0.0)
    conversion_rate: Mapped[float] = mapped_column(Float, default=0.0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    campaign: Mapped["GoogleAdsCampaign"] = relationship("GoogleAdsCampaign", back_populates="metrics")

    __table_args__ = (
        UniqueConstraint("campaign_id", "date", name="uq_google_ads_metrics_campaign_date"),
        Index("ix_google_ads_metrics_date", "date"),
    )


# ══════════════════════════════════════════════════════════════════════
#  API ACTIVITY — Append-only audit trail for external API work
# ══════════════════════════════════════════════════════════════════════

class ApiActivity(Base):
    """Logs every connection test, sync, and API failure per configuration."""
    __tablename__ = "api_activities"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    api_config_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("api_configurations.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    details: Mapped[dict] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    api_config: Mapped["ApiConfiguration"] = relationship("ApiConfiguration", back_populates="activities")

    __table_args__ = (
        Index("ix_api_activities_user_created", "user_id", "created_at"),
        Index("ix_api_activities_api_config_id", "api_config_id"),
        Index("ix_api_activities_type", "type"),
        Index("ix_api_activities_status", "status"),
    )
