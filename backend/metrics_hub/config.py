import logging
from pydantic_settings import BaseSettings
from pydantic import model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)

# Google sunsets each Ads API version about a year after release
DEFAULT_GOOGLE_ADS_API_VERSION = "v23"


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"

    database_url: str = "postgresql+asyncpg://localhost/metrics_hub"
    database_ssl: bool = False  # TLS without certificate checks; also on when the URL has sslmode=require

    @model_validator(mode="before")
    @classmethod
    def _fix_database_url_for_asyncpg(cls, values: dict) -> dict:
        """Hosted Postgres gives postgresql:// — we need postgresql+asyncpg:// for asyncpg."""
        if not isinstance(values, dict):
            return values
        url = values.get("database_url") or ""
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            values["database_url"] = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return values

    secret_key: str = "change-me-in-production"
    first_admin_email: str = ""  # Bootstrap: create first admin if no users exist
    first_admin_password: str = ""
    cors_origins: str = "http://localhost:5173,http://localhost:3000"
    encryption_key: str = ""
    cron_secret: str = ""

    # Google Ads REST API
    google_ads_api_version: str = DEFAULT_GOOGLE_ADS_API_VERSION
    google_ads_login_customer_id: str = ""  # MCC id when accessing client accounts
    http_timeout_seconds: float = 30.0

    # Cache policy
    sync_max_age_hours: int = 24
    metrics_lookback_days: int = 30

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce that critical secrets are set when running in production."""
        if self.is_production:
            if self.secret_key == "change-me-in-production":
                raise ValueError(
                    "SECRET_KEY must be set to a secure value in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.encryption_key:
                raise ValueError(
                    "ENCRYPTION_KEY must be set in production. "
                    "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
                )
            if not self.cron_secret:
                raise ValueError("CRON_SECRET must be set in production so the scheduler endpoint is protected.")
            if not self.database_url or "localhost" in self.database_url:
                logger.warning("DATABASE_URL appears to point at localhost in production.")
        if self.sync_max_age_hours <= 0:
            raise ValueError("SYNC_MAX_AGE_HOURS must be positive.")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origin_list(self) -> list[str]:
        origins = [o.strip() for o in self.cors_origins.split(",") if o.strip()]
        return origins or ["http://localhost:5173", "http://localhost:3000"]


@lru_cache
def get_settings() -> Settings:
    return Settings()
