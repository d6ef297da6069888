"""
Activities Router — recent Google Ads API activity feed for the current user.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from metrics_hub.auth import get_current_user
from metrics_hub.database import get_db
from metrics_hub.models import ApiProvider, User
from metrics_hub.services.activity_service import (
    activity_to_dict, get_activity_stats, get_recent_activity,
)

router = APIRouter(prefix="/apis/google-adwords", tags=["Activities"])


@router.get("/activities")
async def list_activities(
    limit: int = Query(10, ge=1, le=100),
    stats: bool = Query(False),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    provider = ApiProvider.GOOGLE_ADWORDS.value
    activities = await get_recent_activity(db, user.id, provider, limit)
    response = {"activities": [activity_to_dict(a) for a in activities]}
    if stats:
        response["stats"] = await get_activity_stats(db, user.id, provider)
    return response
