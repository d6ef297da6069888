"""
Alembic environment for the metrics hub schema.

Migrations run against the same DATABASE_URL and connect args as the app, so
SSL and sslmode handling stay in one place (metrics_hub.database).
"""

import asyncio
import os
from logging.config import fileConfig

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool
from alembic import context

os.environ.setdefault("ENVIRONMENT", "development")
from metrics_hub.config import get_settings
from metrics_hub.database import Base, connect_args_for, engine_url
import metrics_hub.models  # noqa: F401  (registers tables on Base.metadata)

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

config.set_main_option("sqlalchemy.url", get_settings().database_url)

target_metadata = Base.metadata


def _configure(**kwargs) -> None:
    url = make_url(config.get_main_option("sqlalchemy.url"))
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        # SQLite cannot ALTER most constraints in place
        render_as_batch=url.drivername.startswith("sqlite"),
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit the migration SQL without connecting."""
    _configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    """Apply migrations over a throwaway async engine."""
    url = make_url(config.get_main_option("sqlalchemy.url"))
    connectable = create_async_engine(
        engine_url(url),
        poolclass=NullPool,
        connect_args=connect_args_for(url),
    )
    try:
        async with connectable.connect() as connection:
            await connection.run_sync(do_run_migrations)
    finally:
        await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
