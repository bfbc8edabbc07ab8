from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Storytime Billing"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    # Database
    database_url: str | None = None
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5
    db_auto_create_schema: bool = False

    # Cache
    redis_url: str | None = None
    cache_backend: str = "none"  # none | memory | redis

    # Payments microservice
    payments_base_url: str | None = None
    payments_timeout_seconds: float = 10.0
    payments_jwt_secret: str | None = None
    payments_app_id: str = "storytime"
    payments_token_ttl_seconds: int = 3600
    payments_webhook_secret: str | None = None

    # Billing core
    billing_default_status: str = "active"
    billing_enforce_event_order: bool = True
    ledger_max_attempts: int = 3

    # Security
    cors_origins: list[str] = []  # Empty by default for security

    # Sentry
    sentry_dsn: str | None = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Metrics
    metrics_backend: str = "stdout"
    metrics_namespace: str = "billing"
    metrics_disable: bool = False
    metrics_sample_rate: float = 1.0
    metrics_statsd_host: str = "127.0.0.1"
    metrics_statsd_port: int = 8125
    metrics_schema_version: str = "billing.v1"

    @property
    def payments_configured(self) -> bool:
        """Return True when the payments microservice can be called."""
        return bool(self.payments_base_url and self.payments_jwt_secret)

    model_config = ConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()
