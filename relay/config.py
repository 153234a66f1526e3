"""
Configuration management for Webhook Relay.

Uses pydantic-settings for environment variable management.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # App
    APP_NAME: str = "Webhook Relay"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    # Key-value store
    REDIS_URL: str = "redis://localhost:6379/0"
    KV_BACKEND: str = "redis"  # redis or memory
    KEY_PREFIX: str = "webhook:"

    # Record lifetimes (seconds)
    DELIVERY_TTL_SECONDS: int = 604800       # 7 days
    ATTEMPT_TTL_SECONDS: int = 2592000       # 30 days
    DEDUPE_TTL_SECONDS: int = 86400          # 24 hours
    DEAD_LETTER_TTL_SECONDS: int = 7776000   # 90 days

    # Retry policy defaults
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 2.0
    RETRY_MAX_DELAY_SECONDS: float = 30.0
    RETRY_BACKOFF_FACTOR: float = 2.0
    RETRY_JITTER: bool = True

    # Outbound delivery
    DELIVERY_TIMEOUT_SECONDS: float = 10.0
    WEBHOOK_SIGNING_SECRET: Optional[str] = None
    RETRY_SERVICE_URL: str = "http://localhost:8000"

    # Sweep
    SWEEP_INTERVAL_SECONDS: int = 30
    SWEEP_BATCH_SIZE: int = 50
    SWEEP_STALE_FAILED_SECONDS: int = 60

    # Dead letter queue
    DEAD_LETTER_SCAN_LIMIT: int = 1000

    # Security
    JWT_SECRET_KEY: str = "change-me-in-production-use-strong-secret"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRATION_MINUTES: int = 60

    # Observability
    SENTRY_DSN: Optional[str] = None


# Global settings instance
settings = Settings()
