"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    log_level: str = "INFO"

    # Durable event store
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10
    store_timeout_seconds: float = 5.0
    store_max_attempts: int = 3
    store_backoff_base_seconds: float = 0.2
    event_retention_days: int = 90
    default_account_id: str = "unknown"

    # Redis (queue, heartbeats, alert cooldowns)
    redis_url: str = "redis://localhost:6379/0"

    # Queue
    queue_consumer_enabled: bool = True
    queue_stream: str = "mailtrail:notifications"
    queue_group: str = "mailtrail-ingest"
    queue_consumer: str = "ingest-1"
    queue_batch_size: int = 10
    queue_visibility_timeout_seconds: int = 30
    max_receive_count: int = 3

    # Ingestion
    ingest_concurrency: int = 10
    ingest_time_budget_seconds: float = 25.0

    # Webhook receivers
    webhook_urls: str = ""  # Comma-separated receiver URLs
    webhook_timeout_seconds: float = 10.0
    webhook_concurrency: int = 8
    webhook_user_agent: str = "Mailtrail-Webhook/1.0"

    # Dashboard read path
    aggregation_period_ms: int = 300_000
    archive_base_url: str = ""
    archive_timeout_seconds: float = 10.0

    # Retention sweeper
    expiry_sweep_interval_seconds: int = 3600
    expiry_sweep_batch_size: int = 1000

    # Alerting
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts

    # Sentry
    sentry_dsn: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def webhook_receivers(self) -> list[str]:
        """Configured receiver URLs, in declaration order."""
        return [url.strip() for url in self.webhook_urls.split(",") if url.strip()]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
