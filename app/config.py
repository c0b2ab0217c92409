from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from functools import lru_cache
from typing import List


SQUARE_BASE_URLS = {
    "sandbox": "https://connect.squareupsandbox.com",
    "production": "https://connect.squareup.com",
}


class Settings(BaseSettings):
    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")

    # Database - PostgreSQL for production, SQLite for development
    database_url: str = Field(
        default="sqlite:///./detail_ops.db",
        alias="DATABASE_URL"
    )

    # Security - used only to verify staff bearer tokens issued elsewhere
    secret_key: str = Field(default="dev-secret-key-at-least-32-characters-long-for-development", alias="SECRET_KEY")
    algorithm: str = "HS256"

    # CORS - Frontend URLs from environment (comma-separated)
    allowed_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173",
        alias="ALLOWED_ORIGINS"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    # ==============================================
    # Square Integration Settings (Server-Side Only!)
    # ==============================================
    square_access_token: str = Field(default="", alias="SQUARE_ACCESS_TOKEN")
    square_environment: str = Field(default="sandbox", alias="SQUARE_ENVIRONMENT")
    square_api_version: str = Field(default="2024-01-18", alias="SQUARE_API_VERSION")
    square_timeout_seconds: int = Field(default=20, alias="SQUARE_TIMEOUT_SECONDS")

    # Webhook signature key from the Square developer dashboard
    square_webhook_signature_key: str = Field(default="", alias="SQUARE_WEBHOOK_SIGNATURE_KEY")
    # Notification URL exactly as registered with Square (proxies rewrite Host)
    square_webhook_url: str = Field(default="", alias="SQUARE_WEBHOOK_URL")
    # Reject unsigned webhooks outside production too
    webhook_require_signature: bool = Field(default=False, alias="WEBHOOK_REQUIRE_SIGNATURE")
    webhook_rate_limit: str = Field(default="120/minute", alias="WEBHOOK_RATE_LIMIT")

    # Single-location deployments ignore bookings from other locations
    square_location_id: str = Field(default="", alias="SQUARE_LOCATION_ID")
    # Staff member assigned to phone bookings unless the request names one
    square_team_member_id: str = Field(default="", alias="SQUARE_TEAM_MEMBER_ID")

    # ==============================================
    # Reconciliation
    # ==============================================
    cron_secret: str = Field(default="", alias="CRON_SECRET")
    reconcile_max_pages: int = Field(default=10, alias="RECONCILE_MAX_PAGES")
    reconcile_page_size: int = Field(default=100, alias="RECONCILE_PAGE_SIZE")
    reconcile_interval_minutes: int = Field(default=15, alias="RECONCILE_INTERVAL_MINUTES")

    # Enrichment caches
    customer_cache_hours: int = Field(default=24, alias="CUSTOMER_CACHE_HOURS")
    catalog_cache_ttl_seconds: int = Field(default=3600, alias="CATALOG_CACHE_TTL_SECONDS")
    catalog_cache_capacity: int = Field(default=512, alias="CATALOG_CACHE_CAPACITY")

    # ==============================================
    # Photo storage (S3)
    # ==============================================
    aws_region: str = Field(default="us-east-1", alias="AWS_REGION")
    s3_photos_bucket: str = Field(default="", alias="S3_PHOTOS_BUCKET")
    photo_upload_expiry_seconds: int = Field(default=300, alias="PHOTO_UPLOAD_EXPIRY_SECONDS")
    photo_download_expiry_seconds: int = Field(default=3600, alias="PHOTO_DOWNLOAD_EXPIRY_SECONDS")

    @field_validator('secret_key')
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        """Validate SECRET_KEY is strong enough"""
        if not v:
            raise ValueError("SECRET_KEY is required and cannot be empty")
        if len(v) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long")
        return v

    @field_validator('square_environment')
    @classmethod
    def validate_square_environment(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in SQUARE_BASE_URLS:
            raise ValueError(f"SQUARE_ENVIRONMENT must be one of {sorted(SQUARE_BASE_URLS)}")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def strict_signatures(self) -> bool:
        """Unsigned webhooks are rejected in production or when forced"""
        return self.is_production or self.webhook_require_signature

    @property
    def square_base_url(self) -> str:
        return SQUARE_BASE_URLS[self.square_environment]

    @property
    def cors_origins(self) -> List[str]:
        """
        Parse allowed origins from comma-separated string.
        Returns a list suitable for CORSMiddleware.
        """
        origins = []
        for origin in self.allowed_origins.split(","):
            origin = origin.strip().rstrip("/")
            if origin and origin not in origins:
                origins.append(origin)

        return origins if origins else ["http://localhost:5173"]

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Initialize settings on module load
settings = get_settings()
