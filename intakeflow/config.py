"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"
    admin_api_key: str = ""

    # Database
    database_url: str = "postgresql+asyncpg://localhost:5432/intakeflow"
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis (worker wake-up notifications, heartbeats, alert cooldowns)
    redis_url: str = "redis://localhost:6379/0"

    # Inbound webhooks
    webhook_app_secret: str = ""
    webhook_verify_token: str = ""
    allow_unsigned_webhooks: bool = False

    # Messaging send API (Graph-style)
    messaging_api_base_url: str = "https://graph.instagram.com/v21.0"
    messaging_timeout_seconds: float = 10.0

    # OpenAI (primary classifier)
    openai_api_key: str = ""
    openai_base_url: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_max_tokens: int = 200
    openai_timeout_seconds: float = 10.0

    # Anthropic (fallback classifier)
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-haiku-4-5-20251001"
    anthropic_max_tokens: int = 200
    anthropic_timeout_seconds: float = 10.0

    # Intent classification
    classifier_timeout_seconds: float = 15.0
    classifier_min_confidence: float = 0.6
    classifier_history_window: int = 6

    # Job queue + worker pool
    queue_max_attempts: int = 5
    queue_backoff_base_seconds: float = 30.0
    queue_backoff_cap_seconds: float = 1800.0
    queue_backoff_jitter_ratio: float = 0.2
    queue_lease_seconds: int = 120
    queue_poll_interval_seconds: int = 5
    webhook_worker_concurrency: int = 4
    worker_shutdown_grace_seconds: float = 30.0

    # Booking
    booking_lookahead_days: int = 7
    booking_max_slots_offered: int = 6
    booking_timeout_seconds: float = 10.0
    persistence_timeout_seconds: float = 10.0  # bound on each state commit in the worker
    owner_notification_timeout_seconds: float = 5.0

    # Encryption (Fernet key for dead-letter payloads and collected fields)
    encryption_key: str = ""

    # Alerting
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts
    internal_error_alert_threshold: int = 5
    internal_error_alert_window_seconds: int = 600

    # Sentry
    sentry_dsn: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
