"""Initial schema: users, api_configurations, Google Ads cache, api_activities.

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    insp = sa.inspect(conn)
    existing = set(insp.get_table_names())

    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("email", sa.String(255), nullable=False),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("name", sa.String(255), nullable=True),
            sa.Column("role", sa.String(50), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            sa.Column("last_login_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )
        op.create_index("ix_users_role", "users", ["role"], unique=False)

    if "api_configurations" not in existing:
        op.create_table(
            "api_configurations",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("user_id", sa.Uuid(), nullable=False),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("provider", sa.String(50), nullable=False),
            sa.Column("client_id", sa.String(512), nullable=False),
            sa.Column("client_secret", sa.Text(), nullable=False),
            sa.Column("developer_token", sa.Text(), nullable=True),
            sa.Column("refresh_token", sa.Text(), nullable=True),
            sa.Column("customer_id", sa.String(50), nullable=True),
            sa.Column("status", sa.String(20), nullable=True),
            sa.Column("token_expiry", sa.DateTime(), nullable=True),
            sa.Column("last_tested_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "provider", name="uq_api_config_user_provider"),
        )
        op.create_index(
            "ix_api_configurations_provider_status", "api_configurations", ["provider", "status"], unique=False
        )

    if "google_ads_campaigns" not in existing:
        op.create_table(
            "google_ads_campaigns",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("api_config_id", sa.Uuid(), nullable=False),
            sa.Column("campaign_id", sa.String(64), nullable=False),
            sa.Column("name", sa.String(512), nullable=False),
            sa.Column("status", sa.String(50), nullable=True),
            sa.Column("budget", sa.Float(), nullable=True),
            sa.Column("start_date", sa.Date(), nullable=True),
            sa.Column("end_date", sa.Date(), nullable=True),
            sa.Column("last_sync_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["api_config_id"], ["api_configurations.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("api_config_id", "campaign_id", name="uq_google_ads_campaign_per_config"),
        )
        op.create_index(
            "ix_google_ads_campaigns_api_config_id", "google_ads_campaigns", ["api_config_id"], unique=False
        )
        op.create_index(
            "ix_google_ads_campaigns_last_sync_at", "google_ads_campaigns", ["last_sync_at"], unique=False
        )

    if "google_ads_metrics" not in existing:
        op.create_table(
            "google_ads_metrics",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("campaign_id", sa.Uuid(), nullable=False),
            sa.Column("date", sa.Date(), nullable=False),
            sa.Column("impressions", sa.BigInteger(), nullable=True),
            sa.Column("clicks", sa.Integer(), nullable=True),
            sa.Column("conversions", sa.Float(), nullable=True),
            sa.Column("cost", sa.Float(), nullable=True),
            sa.Column("ctr", sa.Float(), nullable=True),
            sa.Column("average_cpc", sa.Float(), nullable=True),
            sa.Column("conversion_rate", sa.Float(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["campaign_id"], ["google_ads_campaigns.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("campaign_id", "date", name="uq_google_ads_metrics_campaign_date"),
        )
        op.create_index("ix_google_ads_metrics_date", "google_ads_metrics", ["date"], unique=False)

    if "api_activities" not in existing:
        op.create_table(
            "api_activities",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("user_id", sa.Uuid(), nullable=False),
            sa.Column("api_config_id", sa.Uuid(), nullable=False),
            sa.Column("provider", sa.String(50), nullable=False),
            sa.Column("type", sa.String(50), nullable=False),
            sa.Column("status", sa.String(20), nullable=False),
            sa.Column("title", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["api_config_id"], ["api_configurations.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_api_activities_user_created", "api_activities", ["user_id", "created_at"], unique=False)
        op.create_index("ix_api_activities_api_config_id", "api_activities", ["api_config_id"], unique=False)
        op.create_index("ix_api_activities_type", "api_activities", ["type"], unique=False)
        op.create_index("ix_api_activities_status", "api_activities", ["status"], unique=False)


def downgrade() -> None:
    op.drop_table("api_activities")
    op.drop_table("google_ads_metrics")
    op.drop_table("google_ads_campaigns")
    op.drop_table("api_configurations")
    op.drop_table("users")
