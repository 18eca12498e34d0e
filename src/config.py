"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from pydantic import Field
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis (order locks, worker heartbeats, alert cooldowns)
    redis_url: str = "redis://localhost:6379/0"

    # Payment gateway webhooks
    gateway_provider: str = "paymongo"
    gateway_webhook_secret: str = ""
    allow_unsigned_webhooks: bool = False  # Only honoured outside production

    # Operator surface (bearer tokens issued by the auth service)
    operator_jwt_secret: str = ""

    # Processing dispatcher
    dispatcher_poll_interval_seconds: int = 5
    dispatcher_batch_size: int = 50
    dispatcher_concurrency: int = 8
    webhook_max_attempts: int = 5
    webhook_retry_delays_minutes: list[int] = Field(default_factory=lambda: [1, 5, 15, 60, 240])

    # Order state machine
    payment_failure_policy: str = "cancel"  # cancel | retry_payment

    # Per-order lock
    order_lock_ttl_seconds: int = 30
    order_lock_wait_seconds: float = 5.0

    # Abandoned-order reaper
    reaper_interval_seconds: int = 300
    abandonment_deadline_minutes: int = 30
    pickup_deadline_hours: int = 24
    reaper_batch_size: int = 100

    # Token/session hygiene
    token_hygiene_interval_seconds: int = 3600
    token_retention_hours: int = 24

    # Sentry
    sentry_dsn: str = ""

    # Alerting
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
