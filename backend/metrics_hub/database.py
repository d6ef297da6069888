"""
Database configuration and session management.
Uses PostgreSQL via asyncpg with SQLAlchemy 2 async engine.
"""

import logging
import ssl
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool
from sqlalchemy import text
from sqlalchemy.engine import URL, make_url
from metrics_hub.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


def connect_args_for(url: URL) -> dict:
    """Driver connect args. SSL is on when DATABASE_SSL is set or the URL asks for sslmode=require."""
    if url.drivername.startswith("sqlite"):
        return {"check_same_thread": False}
    args = {"timeout": 30}  # Fail fast if DB unreachable
    if settings.database_ssl or url.query.get("sslmode") == "require":
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        args["ssl"] = ctx
    return args


def engine_url(url: URL) -> URL:
    # asyncpg rejects libpq's sslmode keyword; SSL travels in connect_args instead
    return url.difference_update_query(["sslmode"])


def _engine_kwargs(url: URL) -> dict:
    # SQLite (local dev / tests) has no connection pool sizing
    if url.drivername.startswith("sqlite"):
        return {"poolclass": StaticPool, "connect_args": connect_args_for(url)}
    return {
        "pool_size": 5,
        "max_overflow": 10,
        "pool_pre_ping": True,
        "connect_args": connect_args_for(url),
    }


_url = make_url(settings.database_url)
engine = create_async_engine(engine_url(_url), echo=False, **_engine_kwargs(_url))

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncSession:
    """Dependency that provides a database session with auto-commit/rollback."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db():
    """
    Create all tables defined in models.
    Uses create_all which is safe — it only creates tables that don't exist yet.
    """
    # Import models to ensure they are registered with Base.metadata
    import metrics_hub.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database initialized with {len(Base.metadata.tables)} tables: "
                    f"{', '.join(Base.metadata.tables.keys())}")


async def check_db_connection() -> bool:
    """Test database connectivity."""
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
