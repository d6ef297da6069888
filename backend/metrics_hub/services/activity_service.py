"""
Activity Service — append-only audit trail of external API work.
Recording never breaks the caller: a failed insert is logged and dropped.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from metrics_hub.models import ApiActivity, ActivityType, ActivityStatus
from metrics_hub.utils import utcnow

logger = logging.getLogger(__name__)


async def record_activity(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    api_config_id: uuid.UUID,
    provider: str,
    type: str,
    status: str,
    title: str,
    description: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> Optional[ApiActivity]:
    """Insert one activity row inside a SAVEPOINT. Returns None if the write failed."""
    try:
        async with db.begin_nested():
            activity = ApiActivity(
                user_id=user_id,
                api_config_id=api_config_id,
                provider=provider,
                type=type,
                status=status,
                title=title,
                description=description,
                details=metadata,
            )
            db.add(activity)
            await db.flush()
        return activity
    except Exception as e:
        logger.error(f"Failed to log API activity '{title}': {e}")
        return None


# ── Builders for common activity shapes ──────────────────────────────

def connection_test(user_id, api_config_id, provider: str, success: bool, details: Optional[str] = None) -> dict:
    return {
        "user_id": user_id,
        "api_config_id": api_config_id,
        "provider": provider,
        "type": ActivityType.CONNECTION_TEST.value,
        "status": (ActivityStatus.SUCCESS if success else ActivityStatus.ERROR).value,
        "title": "Connection test successful" if success else "Connection test failed",
        "description": details,
    }


def sync_outcome(
    user_id,
    api_config_id,
    provider: str,
    activity_type: ActivityType,
    item_label: str,
    count: int,
    errors: list[str],
    metadata: Optional[dict] = None,
) -> dict:
    """
    Summary row for one sync step. SUCCESS when every item landed, WARNING when
    some failed, ERROR when nothing was synced and errors were reported.
    """
    label = item_label.capitalize()
    if not errors:
        status = ActivityStatus.SUCCESS
        title = f"{label} sync completed"
        description = f"Successfully synced {count} {item_label}"
    elif count > 0:
        status = ActivityStatus.WARNING
        title = f"{label} sync completed with errors"
        description = f"Synced {count} {item_label}; {len(errors)} failed"
    else:
        status = ActivityStatus.ERROR
        title = f"{label} sync failed"
        description = errors[0]

    details = {"count": count, "error_count": len(errors)}
    if errors:
        details["errors"] = errors[:20]
    if metadata:
        details.update(metadata)

    return {
        "user_id": user_id,
        "api_config_id": api_config_id,
        "provider": provider,
        "type": activity_type.value,
        "status": status.value,
        "title": title,
        "description": description,
        "metadata": details,
    }


def rate_limit_warning(user_id, api_config_id, provider: str, details: str) -> dict:
    return {
        "user_id": user_id,
        "api_config_id": api_config_id,
        "provider": provider,
        "type": ActivityType.RATE_LIMIT_WARNING.value,
        "status": ActivityStatus.WARNING.value,
        "title": "Rate limit warning",
        "description": details,
    }


def error(user_id, api_config_id, provider: str, title: str, details: str) -> dict:
    return {
        "user_id": user_id,
        "api_config_id": api_config_id,
        "provider": provider,
        "type": ActivityType.ERROR.value,
        "status": ActivityStatus.ERROR.value,
        "title": title,
        "description": details,
    }


# ── Reads ─────────────────────────────────────────────────────────────

async def get_recent_activity(
    db: AsyncSession,
    user_id: uuid.UUID,
    provider: Optional[str] = None,
    limit: int = 10,
) -> list[ApiActivity]:
    query = (
        select(ApiActivity)
        .options(selectinload(ApiActivity.api_config))
        .where(ApiActivity.user_id == user_id)
        .order_by(ApiActivity.created_at.desc())
        .limit(limit)
    )
    if provider:
        query = query.where(ApiActivity.provider == provider)
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_activity_stats(
    db: AsyncSession,
    user_id: uuid.UUID,
    provider: Optional[str] = None,
) -> dict:
    """Counts for the last 24 hours, the last 7 days, and errors in the last 7 days."""
    now = utcnow()
    day_ago = now - timedelta(hours=24)
    week_ago = now - timedelta(days=7)

    def _count(since: datetime, status: Optional[str] = None):
        q = select(func.count(ApiActivity.id)).where(
            ApiActivity.user_id == user_id,
            ApiActivity.created_at >= since,
        )
        if provider:
            q = q.where(ApiActivity.provider == provider)
        if status:
            q = q.where(ApiActivity.status == status)
        return q

    today = (await db.execute(_count(day_ago))).scalar() or 0
    this_week = (await db.execute(_count(week_ago))).scalar() or 0
    errors = (await db.execute(_count(week_ago, ActivityStatus.ERROR.value))).scalar() or 0

    return {"today": today, "this_week": this_week, "errors": errors}


def time_ago(dt: Optional[datetime], now: Optional[datetime] = None) -> str:
    if dt is None:
        return "never"
    now = now or utcnow()
    seconds = int((now - dt).total_seconds())
    if seconds < 60:
        return "just now"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    days = hours // 24
    return f"{days} day{'s' if days != 1 else ''} ago"


def activity_to_dict(activity: ApiActivity) -> dict:
    return {
        "id": str(activity.id),
        "type": activity.type,
        "status": activity.status,
        "title": activity.title,
        "description": activity.description,
        "metadata": activity.details,
        "provider": activity.provider,
        "api_config_id": str(activity.api_config_id),
        "api_config_name": activity.api_config.name if activity.api_config else None,
        "created_at": activity.created_at.isoformat() if activity.created_at else None,
        "time_ago": time_ago(activity.created_at),
    }
