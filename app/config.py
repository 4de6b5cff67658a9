from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False
    )

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8000

    # Database Configuration (key-value storage for mappings, flags and stats)
    database_url: str = "sqlite+aiosqlite:///./data/sync_connector.db"

    # Admin API authentication (HTTP Basic)
    auth_enabled: bool = True
    auth_username: str = "admin"
    auth_password: str = "changeme"

    # Logging
    log_level: str = "INFO"

    # Application Settings
    app_title: str = "Sync Connector"
    app_description: str = "Keep issues consistent between a local and a remote tracker"

    # Local tracker connection (the tracker whose events we receive)
    local_url: str = ""
    local_email: str = ""
    local_api_token: str = ""
    # Shared secret for POST /api/events/local (empty disables the check)
    local_webhook_secret: str = ""
    # Name used in synced comment headers; derived from local_url when empty
    local_org_name: str = ""

    # Tracker HTTP client
    tracker_api_timeout: float = 30.0

    # Loop prevention
    sync_flag_ttl_seconds: int = 5
    recent_creation_window_ms: int = 3000

    # Retry executor
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 30000
    retry_max_attempts: int = 3
    rate_limit_retry_delay_ms: int = 60000
    # Consecutive rate-limit cooldowns before the error surfaces
    rate_limit_max_waits: int = 5

    # Sync limits
    max_attachment_size_bytes: int = 10 * 1024 * 1024
    scheduled_sync_delay_ms: int = 500
    scheduled_sync_max_results: int = 100
    pending_link_retry_delay_ms: int = 100
    max_pending_link_attempts: int = 10
    bulk_sync_delay_ms: int = 500
    bulk_sync_max_issues: int = 5000
    # A running bulk slot not refreshed for this long is treated as abandoned
    bulk_sync_stale_seconds: int = 600

    # Statistics retention
    max_audit_log_entries: int = 50
    max_error_entries: int = 50
    api_usage_hourly_quota: int = 10000

    # Background scheduler
    scheduler_poll_seconds: int = 60
    sync_shutdown_timeout: int = 30

    # Webhook endpoint rate limit (slowapi syntax)
    webhook_rate_limit: str = "120/minute"


settings = Settings()
