"""
Ads Metrics Hub — FastAPI Backend
Google Ads credential management, a cached campaign/metrics store kept fresh
by on-demand and scheduled syncs, and an activity feed of every API call.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select, func

from metrics_hub.config import get_settings
from metrics_hub.database import init_db, check_db_connection
from metrics_hub.models import User
from metrics_hub.routers import activities, auth, cron, google_ads, google_ads_data, sync
from metrics_hub.services.auth_service import hash_password

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()

SERVICE_NAME = "Ads Metrics Hub"


async def _bootstrap_first_admin():
    """Create first admin if FIRST_ADMIN_EMAIL and FIRST_ADMIN_PASSWORD are set and no users exist."""
    if not settings.first_admin_email or not settings.first_admin_password:
        return
    from metrics_hub.database import async_session
    async with async_session() as db:
        r = await db.execute(select(func.count()).select_from(User))
        count = r.scalar() or 0
        if count > 0:
            return  # Users already exist
        admin = User(
            email=settings.first_admin_email.lower(),
            password_hash=hash_password(settings.first_admin_password),
            name="Admin",
            role="admin",
            is_active=True,
        )
        db.add(admin)
        await db.commit()
        logger.info(f"Bootstrap: created first admin user {admin.email}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {SERVICE_NAME}...")
    try:
        await init_db()
        await _bootstrap_first_admin()
        logger.info("Database initialized — all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title=SERVICE_NAME,
    description="Google Ads metrics sync and cache",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Auth (login public; whoami requires JWT) ──────────────────────────
app.include_router(auth.router, prefix="/api")

# ── Google Ads (every endpoint resolves the current user) ─────────────
app.include_router(google_ads.router, prefix="/api")
app.include_router(google_ads_data.router, prefix="/api")
app.include_router(sync.router, prefix="/api")
app.include_router(activities.router, prefix="/api")
app.include_router(cron.router, prefix="/api")  # No JWT — uses CRON_SECRET


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": SERVICE_NAME,
        "database": "connected" if db_ok else "disconnected",
    }
