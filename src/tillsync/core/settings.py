"""Application settings and configuration.

This module defines all configuration options for tillsync. Settings are
loaded from environment variables (or a ``.env`` file) with defaults suited to
a single-shop deployment.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files. Tests
    build their own instances instead of mutating the module-level one.
    """

    # Application metadata
    app_name: str = Field(default="tillsync", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Local store
    database_url: str = Field(
        default="sqlite:///./tillsync.db",
        alias="TILLSYNC_DATABASE_URL",
    )
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")
    sqlite_busy_timeout_ms: int = Field(default=5000, alias="TILLSYNC_SQLITE_BUSY_TIMEOUT_MS")
    tx_max_retries: int = Field(default=3, alias="TILLSYNC_TX_MAX_RETRIES")
    tx_backoff_seconds: float = Field(default=0.15, alias="TILLSYNC_TX_BACKOFF_SECONDS")
    open_max_retries: int = Field(default=3, alias="TILLSYNC_OPEN_MAX_RETRIES")
    open_backoff_seconds: float = Field(default=0.25, alias="TILLSYNC_OPEN_BACKOFF_SECONDS")

    # Business partitioning and calendars
    business_unit_id: str = Field(default="shop_1", alias="TILLSYNC_BUSINESS_UNIT_ID")
    business_timezone: str = Field(default="Asia/Kolkata", alias="TILLSYNC_BUSINESS_TIMEZONE")
    fiscal_year_start_month: int = Field(
        default=4,
        ge=1,
        le=12,
        alias="TILLSYNC_FISCAL_YEAR_START_MONTH",
    )

    # Remote store (PostgREST / Supabase compatible)
    remote_url: str | None = Field(default=None, alias="TILLSYNC_REMOTE_URL")
    remote_api_key: str | None = Field(default=None, alias="TILLSYNC_REMOTE_API_KEY")
    remote_timeout_seconds: float = Field(
        default=15.0,
        alias="TILLSYNC_REMOTE_TIMEOUT_SECONDS",
    )
    remote_max_retries: int = Field(default=2, alias="TILLSYNC_REMOTE_MAX_RETRIES")
    remote_upsert_chunk: int = Field(default=500, alias="TILLSYNC_REMOTE_UPSERT_CHUNK")

    # Sync engine and worker
    sync_page_size: int = Field(default=1000, alias="TILLSYNC_SYNC_PAGE_SIZE")
    sync_interval_seconds: float = Field(
        default=60.0,
        alias="TILLSYNC_SYNC_INTERVAL_SECONDS",
    )
    sync_worker_enabled: bool = Field(default=True, alias="TILLSYNC_SYNC_WORKER_ENABLED")
    sync_log_max_lines: int = Field(default=500, alias="TILLSYNC_SYNC_LOG_MAX_LINES")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def remote_enabled(self) -> bool:
        """Return True when a remote store URL is configured."""
        return bool(self.remote_url)

    @property
    def is_memory_database(self) -> bool:
        """Return True for the in-memory SQLite URL used by tests and tooling."""
        url = self.database_url
        return url in {"sqlite://", "sqlite:///:memory:"} or "mode=memory" in url


settings = Settings()
