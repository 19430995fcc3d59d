"""Application configuration using Pydantic Settings.

This project loads configuration from environment variables.

Optionally, you may point `ENV_FILE` at a local env file (for development).
In secret-manager workflows, do not set `ENV_FILE` so injected environment
variables are the single source of truth.
"""

import os
import re
from enum import Enum

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.domain.enums import StorageBackend, StoreBackend


class AppEnvironment(str, Enum):
    """Application environment values."""

    LOCAL = "local"
    TEST = "test"
    PROD = "prod"


_MIN_TOKEN_LENGTH = 32


class Settings(BaseSettings):
    """
    Application settings with type validation.

    Configuration is loaded from environment variables, with support
    for .env files in development.
    """

    model_config = SettingsConfigDict(
        env_file=os.getenv("ENV_FILE") or None, env_prefix="", extra="ignore"
    )

    # Application
    app_env: AppEnvironment = AppEnvironment.LOCAL
    app_name: str = "hot-update-server"
    app_log_level: str = "INFO"
    app_region: str = "local"

    # Observability
    observability_enabled: bool = True
    observability_structured_logs: bool = True
    observability_request_id_header: str = "X-Request-ID"

    # OpenTelemetry Configuration
    otel_enabled: bool = True
    otel_service_name: str = "hot-update-server"
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"
    otel_exporter_otlp_headers: str | None = None
    otel_traces_sampler: str = "parent_trace_always"
    otel_traces_sampler_arg: float = 1.0

    # Bundle store
    bundle_store_backend: StoreBackend = StoreBackend.MEMORY
    # JSON list of bundle records loaded by the memory backend
    bundle_seed_file: str | None = None
    bundle_store_timeout_seconds: float = Field(default=5.0, gt=0)
    # 0 disables the read-through cache
    bundle_cache_ttl_seconds: float = Field(default=30.0, ge=0)

    # Resolution
    default_channel: str = "production"
    rollback_to_builtin_when_unrecoverable: bool = False

    # Download URL resolution
    storage_backend: StorageBackend = StorageBackend.LOCAL
    # Prefix for storage URIs that are not already http(s) URLs
    storage_public_base_url: str | None = None

    # S3-compatible storage configuration (for MinIO or AWS S3)
    s3_endpoint_url: str | None = None
    s3_bucket_name: str = "hot-update-bundles"
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None
    s3_region: str = "us-east-1"
    s3_force_path_style: bool = True
    s3_presign_expires_seconds: int = Field(default=3600, gt=0, le=604800)

    # Database - runtime app user, required for the database backend
    database_url_app: str | None = None

    # Operator token for the /bundles endpoints
    admin_token: str | None = None

    # Metrics token for protecting /metrics endpoint
    metrics_token: str | None = None

    # Health check token for protecting /health and /readyz endpoints (optional)
    health_token: str | None = None

    # Rate limiting for update checks, per device (or client IP)
    rate_limit_update_check: str = "120/minute"

    # CORS Configuration
    cors_origins: str = "http://localhost:3000,http://localhost:8081"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins string into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @field_validator("app_env", mode="before")
    @classmethod
    def validate_app_env(cls, v: str | AppEnvironment) -> AppEnvironment:
        """Validate and parse app_env to AppEnvironment enum."""
        if isinstance(v, AppEnvironment):
            return v
        try:
            return AppEnvironment(v.lower())
        except ValueError:
            raise ValueError(
                f"app_env must be one of {[e.value for e in AppEnvironment]}, got '{v}'"
            )

    @field_validator("bundle_store_backend", "storage_backend", mode="before")
    @classmethod
    def normalize_backend(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("app_region")
    @classmethod
    def validate_app_region(cls, v: str) -> str:
        """Validate app_region follows expected format."""
        if not v or not v.strip():
            raise ValueError("app_region must be set")
        region = v.strip().upper()
        if not re.match(r"^[A-Z0-9][A-Z0-9_-]{0,19}$", region):
            raise ValueError(
                "app_region must be 1-20 alphanumeric characters "
                f"(hyphens/underscores allowed), got '{v}'"
            )
        return region

    @field_validator("default_channel")
    @classmethod
    def validate_default_channel(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("default_channel must not be empty")
        return v.strip()

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """
        Validate backend requirements and production-specific settings.

        These checks prevent insecure configurations from being deployed to production.
        """
        if self.bundle_store_backend == StoreBackend.DATABASE and not self.database_url_app:
            raise ValueError("DATABASE_URL_APP must be set when BUNDLE_STORE_BACKEND=database")

        if self.app_env == AppEnvironment.PROD:
            for name in ("admin_token", "metrics_token"):
                token = getattr(self, name)
                if not token or len(token) < _MIN_TOKEN_LENGTH:
                    raise ValueError(
                        f"{name.upper()} must be set and at least "
                        f"{_MIN_TOKEN_LENGTH} characters in production"
                    )

            # Database must use PostgreSQL with SSL
            if self.bundle_store_backend == StoreBackend.DATABASE:
                url = self.database_url_app or ""
                if not url.startswith(("postgresql://", "postgresql+asyncpg://")):
                    raise ValueError("DATABASE_URL_APP must use postgresql:// scheme in production")
                if "sslmode=require" not in url and "ssl=require" not in url:
                    raise ValueError("DATABASE_URL_APP must use sslmode=require in production")

            # CORS must not allow localhost in production
            for origin in self.cors_origins_list:
                if "localhost" in origin or "127.0.0.1" in origin:
                    raise ValueError(
                        f"CORS origins must not contain localhost in production: {origin}"
                    )

        return self


settings = Settings()
