"""
Google Ads Configuration Router — store, inspect, delete and test the
current user's Google Ads API credentials.
Secrets are encrypted before they reach the database and never returned.
"""

import logging
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from metrics_hub.auth import get_current_user
from metrics_hub.crypto import encrypt_value
from metrics_hub.database import get_db
from metrics_hub.google_ads_client import build_client_for_config
from metrics_hub.models import ApiConfiguration, ApiProvider, ApiStatus, User
from metrics_hub.services import activity_service
from metrics_hub.utils import mask_secret, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/apis/google-adwords", tags=["Google Ads"])

PROVIDER = ApiProvider.GOOGLE_ADWORDS.value


# ── Schemas ──────────────────────────────────────────────────────────
class GoogleAdsConfigCreate(BaseModel):
    name: str = "Google AdWords API"
    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    developer_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    customer_id: str = Field(min_length=1)


class ConfigResponse(BaseModel):
    id: Optional[str] = None
    configured: bool
    status: str
    name: Optional[str] = None
    client_id: Optional[str] = None
    customer_id: Optional[str] = None
    has_client_secret: bool = False
    has_developer_token: bool = False
    has_refresh_token: bool = False
    token_expiry: Optional[datetime] = None
    last_tested_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ── Helpers ───────────────────────────────────────────────────────────
async def get_user_config(db: AsyncSession, user: User) -> Optional[ApiConfiguration]:
    result = await db.execute(
        select(ApiConfiguration).where(
            ApiConfiguration.user_id == user.id,
            ApiConfiguration.provider == PROVIDER,
        )
    )
    return result.scalar_one_or_none()


def _config_to_response(config: ApiConfiguration) -> ConfigResponse:
    """Masked view of a configuration: identifiers show their last 4 chars, secrets only as flags."""
    return ConfigResponse(
        id=str(config.id),
        configured=True,
        status=config.status.lower(),
        name=config.name,
        client_id=mask_secret(config.client_id),
        customer_id=mask_secret(config.customer_id),
        has_client_secret=bool(config.client_secret),
        has_developer_token=bool(config.developer_token),
        has_refresh_token=bool(config.refresh_token),
        token_expiry=config.token_expiry,
        last_tested_at=config.last_tested_at,
        created_at=config.created_at,
        updated_at=config.updated_at,
    )


# ── Endpoints ────────────────────────────────────────────────────────
@router.get("", response_model=ConfigResponse)
async def get_config(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    config = await get_user_config(db, user)
    if not config:
        return ConfigResponse(configured=False, status="not_configured")
    return _config_to_response(config)


@router.post("", response_model=ConfigResponse, status_code=201)
async def save_config(
    payload: GoogleAdsConfigCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Create or overwrite the user's configuration. Always resets status to INACTIVE."""
    config = await get_user_config(db, user)
    values = {
        "name": payload.name,
        "client_id": payload.client_id.strip(),
        "client_secret": encrypt_value(payload.client_secret),
        "developer_token": encrypt_value(payload.developer_token),
        "refresh_token": encrypt_value(payload.refresh_token),
        "customer_id": payload.customer_id.replace("-", "").strip(),
        "status": ApiStatus.INACTIVE.value,
    }
    if config:
        for key, value in values.items():
            setattr(config, key, value)
        config.token_expiry = None
        config.updated_at = utcnow()
        logger.info(f"Updated Google Ads configuration {config.id} for {user.email}")
    else:
        config = ApiConfiguration(user_id=user.id, provider=PROVIDER, **values)
        db.add(config)
        logger.info(f"Created Google Ads configuration for {user.email}")

    await db.flush()
    await db.refresh(config)
    return _config_to_response(config)


@router.delete("")
async def delete_config(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    """Delete the configuration with its cached campaigns, metrics and activity."""
    config = await get_user_config(db, user)
    if config:
        await db.delete(config)
        await db.flush()
        logger.info(f"Deleted Google Ads configuration for {user.email}")
    return {"success": True}


@router.post("/test-connection")
async def test_connection(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    """Live credential check. Moves the configuration to ACTIVE or ERROR."""
    config = await get_user_config(db, user)
    if not config:
        raise HTTPException(status_code=404, detail="No Google AdWords configuration found")

    client = build_client_for_config(config)
    if client is None:
        result = {
            "success": False,
            "details": "Stored credentials cannot be decrypted. Please re-enter them.",
        }
    else:
        result = await client.test_connection()

    config.status = (ApiStatus.ACTIVE if result["success"] else ApiStatus.ERROR).value
    config.last_tested_at = utcnow()
    if client is not None and client.token_expires_at:
        config.token_expiry = client.token_expires_at
    await db.flush()

    await activity_service.record_activity(db, **activity_service.connection_test(
        user.id, config.id, PROVIDER, result["success"], result["details"],
    ))

    logger.info(f"Google Ads connection test for {user.email}: {'ok' if result['success'] else 'failed'}")
    return {
        "success": result["success"],
        "message": "Connection successful" if result["success"] else "Connection failed",
        "details": result["details"],
        "data": result.get("data"),
        "status": config.status.lower(),
    }
