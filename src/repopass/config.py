"""Canonical configuration surface for RepoPass services."""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings

from .constants import RetryDefaults


class RepoPassSettings(BaseSettings):
    """Main RepoPass configuration."""

    # Environment
    environment: Literal["dev", "sandbox", "prod"] = "dev"

    # Public site, used for checkout return URLs
    site_url: str = "http://localhost:3000"

    # Operator alerts
    admin_email: str = ""

    # GitHub
    github_api_base: str = "https://api.github.com"
    github_personal_access_token: str = ""

    # Credentials at rest
    encryption_secret: str = Field(default="", validate_default=True)

    # Database - PostgreSQL for production, in-memory when empty
    database_url: str = Field(default="", validate_default=True)

    # Stripe webhook signing secret (platform-level fallback)
    stripe_webhook_secret: str = ""

    # Optional shared tokens for providers without signed webhooks
    lemon_squeezy_webhook_token: str = ""
    gumroad_webhook_token: str = ""
    paddle_webhook_token: str = ""

    # Email (Resend)
    email_api_base: str = "https://api.resend.com"
    email_api_key: str = ""
    email_from: str = "RepoPass <noreply@repopass.dev>"

    # Collaborator grant retry policy
    grant_max_retries: int = RetryDefaults.GRANT_MAX_ATTEMPTS
    grant_base_delay: float = RetryDefaults.GRANT_BASE_DELAY

    class Config:
        env_prefix = "REPOPASS_"
        env_file = ".env"
        extra = "ignore"

    @field_validator("site_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("encryption_secret")
    @classmethod
    def validate_encryption_secret(cls, v: str, info: ValidationInfo) -> str:
        env = info.data.get("environment", "dev")
        if env != "dev" and len(v) < 32:
            raise ValueError(
                "ENCRYPTION_SECRET must be at least 32 characters outside dev. "
                "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
            )
        return v or "dev-only-encryption-secret-not-for-production"

    @field_validator("database_url", mode="before")
    @classmethod
    def fallback_database_url(cls, v: str) -> str:
        """Use DATABASE_URL when REPOPASS_DATABASE_URL is not set."""
        if not v:
            v = os.getenv("DATABASE_URL", "")
        return v

    @field_validator("grant_max_retries")
    @classmethod
    def validate_grant_max_retries(cls, v: int) -> int:
        if v < 1:
            raise ValueError("grant_max_retries must be at least 1")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "prod"


@lru_cache
def load_settings(env_file: str | None = None) -> RepoPassSettings:
    """Load RepoPassSettings once per process to keep services consistent."""
    env_path = Path(env_file) if env_file else None
    return RepoPassSettings(_env_file=env_path)
