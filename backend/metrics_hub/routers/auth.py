"""
Auth Router — Login and whoami.
"""

import logging
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from metrics_hub.auth import get_current_user
from metrics_hub.database import get_db
from metrics_hub.models import User
from metrics_hub.services.auth_service import verify_password, create_access_token
from metrics_hub.utils import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Auth"])


# ── Schemas ────────────────────────────────────────────────────────────

class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict


class WhoAmIResponse(BaseModel):
    id: str
    email: str
    name: str | None
    role: str
    is_active: bool


def _user_dict(user: User) -> dict:
    return {
        "id": str(user.id),
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "is_active": user.is_active,
    }


# ── Endpoints ───────────────────────────────────────────────────────────

@router.post("/login", response_model=TokenResponse)
async def login(payload: LoginRequest, db: AsyncSession = Depends(get_db)):
    """Login with email and password. Returns JWT."""
    result = await db.execute(select(User).where(User.email == payload.email.lower()))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not user.is_active:
        raise HTTPException(status_code=401, detail="Account is disabled")
    if not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    user.last_login_at = utcnow()
    await db.flush()

    logger.info(f"User {user.email} logged in")
    token = create_access_token(str(user.id), user.email, user.role)
    return TokenResponse(access_token=token, user=_user_dict(user))


@router.get("/whoami", response_model=WhoAmIResponse)
async def whoami(user: User = Depends(get_current_user)):
    """Return current user. Requires JWT auth."""
    return WhoAmIResponse(**_user_dict(user))
