"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Generation Gateway API"
    api_version: str = "0.1.0"
    api_description: str = "Admission control and credit settlement for generation providers"

    # "production" disables the dev credit bypass and requires real secrets
    environment: str = "development"

    # Session tokens issued by the session layer (HS256)
    session_jwt_secret: str = ""
    session_jwt_algorithm: str = "HS256"

    # Request signing
    request_signing_secret: str = ""
    signature_max_age_seconds: int = 300
    signature_replay_cache_size: int = 10000

    # Rate limiting
    rate_limit_backend: str = "memory"  # memory or redis
    redis_url: str = "redis://localhost:6379/0"
    rate_limit_window_seconds: int = 60
    global_rate_limit: int = 100
    tryon_rate_limit: int = 10
    video_rate_limit: int = 3
    model3d_rate_limit: int = 3

    # Abuse detection
    abuse_flag_score: float = 50.0
    abuse_block_score: float = 100.0
    abuse_score_window_hours: int = 24
    abuse_decay_half_life_hours: float = 6.0
    auto_block_window_minutes: int = 60
    auto_block_score: int = 90
    auto_block_event_count: int = 10
    auto_block_duration_hours: int = 24

    # Credit plans
    free_daily_credits: int = 4
    paid_monthly_credits: int = 400

    # Result cache and storage
    cache_ttl_days: int = 7
    signed_url_ttl_seconds: int = 3600
    storage_bucket: str = "tryon-results"
    storage_region: str = "us-east-1"
    storage_endpoint_url: str | None = None  # S3-compatible endpoint override
    inline_fallback_max_bytes: int = 2 * 1024 * 1024

    # Job polling
    poll_interval_seconds: float = 2.0
    poll_max_attempts: int = 60

    # Providers
    provider_timeout_seconds: float = 60.0
    fashn_api_key: str = ""
    fashn_base_url: str = "https://api.fashn.ai"
    fashn_model_name: str = "tryon-v1.6"
    fal_api_key: str = ""
    fal_base_url: str = "https://queue.fal.run"
    fal_video_model: str = "fal-ai/kling-video/v2.5-turbo/pro/image-to-video"
    replicate_api_token: str = ""
    replicate_base_url: str = "https://api.replicate.com"
    replicate_model3d_version: str = (
        "e8f6c45206993f297372f5436b90350817bd9b4a0d52d2a76df50c1c8afa2b3c"
    )

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "generation-gateway"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.rate_limit_backend not in ("memory", "redis"):
            errors.append(f"RATE_LIMIT_BACKEND must be memory or redis, got: {self.rate_limit_backend}")

        if self.is_production:
            if not self.request_signing_secret:
                errors.append("REQUEST_SIGNING_SECRET is required in production")
            if not self.session_jwt_secret:
                errors.append("SESSION_JWT_SECRET is required in production")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    @property
    def signing_secret(self) -> str:
        """Shared request-signing secret, with a fixed fallback outside production."""
        return self.request_signing_secret or "dev-only-request-signing-secret-0000"

    @property
    def jwt_secret(self) -> str:
        """Session token verification key, with a fixed fallback outside production."""
        return self.session_jwt_secret or "dev-only-session-jwt-secret-00000000"

    def rate_limit_for(self, action: str) -> int:
        """Per-identity requests allowed per window for an action."""
        limits = {
            "tryon": self.tryon_rate_limit,
            "video": self.video_rate_limit,
            "model3d": self.model3d_rate_limit,
        }
        return limits.get(action, self.tryon_rate_limit)


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
