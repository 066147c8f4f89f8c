"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is malformed.
"""
from pydantic_settings import BaseSettings
from pydantic import Field
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"  # development, staging, production
    app_name: str = "billing-sentinel"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_version: str = "1.0.0"
    build_number: str = "1"
    platform: str = "server"
    log_level: str = "INFO"
    log_json: bool = True  # False for human-readable dev output
    admin_api_token: str = ""  # Required for /api/v1/audit, /incidents, /keys
    allowed_origins: str = ""  # Comma-separated CORS origins

    # Database
    database_url: str = "sqlite+aiosqlite:///./billing_sentinel.db"
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Dedup ledger
    dedup_backend: str = "memory"  # memory, redis
    dedup_capacity: int = 1000

    # Audit trail
    audit_buffer_capacity: int = 1000  # General (non-high) store
    audit_history_capacity: int = 100  # Presentation history only
    audit_remote_url: str = ""  # Base URL of remote audit collector
    audit_remote_timeout_seconds: float = 5.0

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    webhook_tolerance_seconds: int = 300

    # Webhook processing
    webhook_queue_size: int = 1000
    webhook_worker_count: int = 4
    webhook_retry_attempts: int = 3
    webhook_retry_delays: list[float] = Field(default_factory=lambda: [1.0, 5.0, 15.0])
    webhook_retry_deadline_seconds: float = 60.0

    # Domain payment API (session payments / subscriptions)
    payments_api_base_url: str = ""
    payments_api_token: str = ""
    payments_api_timeout_seconds: float = 10.0

    # Key material
    encryption_key: str = ""  # Fernet key for key store + high-assurance audit
    key_store_path: str = ".secrets/stripe_keys.json"

    # Alerting channels
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for chat-ops
    sendgrid_api_key: str = ""
    alert_from_email: str = "security@billing-sentinel.local"
    security_team_email: str = ""
    authority_contact_email: str = ""  # Compliance officer relaying to authorities
    pagerduty_routing_key: str = ""
    notification_timeout_seconds: float = 10.0

    # Sentry
    sentry_dsn: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
