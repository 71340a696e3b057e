"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from enum import Enum
from typing import Self

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PlatformEnv(str, Enum):
    """Deployment environment label."""

    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class StorageBackend(str, Enum):
    """Where rendered PDFs are written."""

    LOCAL = "local"
    S3 = "s3"


class APISettings(BaseSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``STORYPRESS_`` (e.g. ``STORYPRESS_DATABASE_URL=...``) or through a
    ``.env`` file in the working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="STORYPRESS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    platform_env: PlatformEnv = PlatformEnv.DEV

    # Async SQLAlchemy URL (asyncpg in production, aiosqlite locally).
    database_url: str = "sqlite+aiosqlite:///.storypress/state.db"

    cors_origins: list[str] = ["http://localhost:3000"]

    # Structured JSON logging for log aggregation.
    structured_logging: bool = False

    # Shared secret for admin and internal endpoints (X-Admin-Token header).
    admin_api_token: SecretStr = SecretStr("")

    # Stripe webhooks.
    stripe_webhook_secret: SecretStr = SecretStr("")
    auto_generate_after_payment: bool = True

    # Credit pricing, in cents.
    starter_credits_cents: int = Field(default=20, gt=0)
    credit_cost_character_cents: int = Field(default=4, gt=0)
    credit_cost_final_page_cents: int = Field(default=4, gt=0)
    paid_reroll_credits_cents: int = Field(default=20, gt=0)

    # Lulu print API.
    lulu_client_key: str = ""
    lulu_client_secret: SecretStr = SecretStr("")
    lulu_api_base_url: str = "https://api.sandbox.lulu.com"
    lulu_auth_url: str = ""
    lulu_contact_email: str = ""
    lulu_pod_package_id: str = ""
    lulu_shipping_level: str = "MAIL"
    lulu_shipping_address_json: str = ""
    lulu_timeout: float = 30.0

    # Transactional email (Resend).
    resend_api_key: SecretStr = SecretStr("")
    email_from: str = ""
    email_timeout: float = 15.0

    # Object storage for rendered PDFs.
    storage_backend: StorageBackend = StorageBackend.LOCAL
    storage_local_path: str = ".storypress/files"
    storage_public_base_url: str = "http://localhost:8000/files"
    s3_bucket: str = ""
    s3_endpoint_url: str = ""
    s3_region: str = "auto"
    s3_access_key_id: str = ""
    s3_secret_access_key: SecretStr = SecretStr("")

    # Image downloads during book assembly.
    image_fetch_timeout: float = 30.0

    # Background job runner.
    job_runner_enabled: bool = True
    job_poll_interval_seconds: float = Field(default=5.0, gt=0.0)
    job_max_attempts: int = Field(default=5, ge=1)
    job_retry_base_delay: float = Field(default=30.0, gt=0.0)
    job_visibility_timeout_seconds: float = Field(default=900.0, gt=0.0)

    @model_validator(mode="after")
    def _validate_s3_settings(self) -> Self:
        """Require a bucket when the S3 backend is selected.

        A missing bucket would otherwise only surface on the first upload,
        deep inside a background job.
        """
        if self.storage_backend == StorageBackend.S3 and not self.s3_bucket:
            raise ValueError("s3_bucket is required when storage_backend='s3'")
        return self

    @property
    def resolved_lulu_auth_url(self) -> str:
        """Token endpoint, derived from the API base URL unless set explicitly."""
        if self.lulu_auth_url:
            return self.lulu_auth_url
        base = self.lulu_api_base_url.rstrip("/")
        return f"{base}/auth/realms/glasstree/protocol/openid-connect/token"


def load_api_settings() -> APISettings:
    """Construct settings from the environment / ``.env`` file."""
    return APISettings()
