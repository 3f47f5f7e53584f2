"""Application settings and configuration.

This module defines all configuration options for the lockdrop ledger.
Settings are loaded from environment variables with sensible defaults.
"""

from decimal import Decimal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Lockdrop", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")

    # Database configuration
    database_url: str = Field(default="sqlite:///./lockdrop.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Stake ledger
    ledger_owner: str | None = Field(default=None, alias="LOCKDROP_OWNER")
    ledger_holder_address: str = Field(
        default="lockdrop-ledger",
        alias="LOCKDROP_HOLDER_ADDRESS",
    )
    min_stake_amount: int = Field(default=1, alias="LOCKDROP_MIN_STAKE")
    staking_window_end: int | None = Field(default=None, alias="LOCKDROP_WINDOW_END")
    vault_grace_period_seconds: int = Field(
        default=30 * 24 * 3600,
        alias="LOCKDROP_VAULT_GRACE_PERIOD_SECONDS",
    )

    # Remote vault service
    vault_enabled: bool = Field(default=False, alias="LOCKDROP_VAULT_ENABLED")
    vault_base_url: str | None = Field(default=None, alias="LOCKDROP_VAULT_BASE_URL")
    vault_address: str | None = Field(default=None, alias="LOCKDROP_VAULT_ADDRESS")
    vault_shared_secret: str | None = Field(
        default=None,
        alias="LOCKDROP_VAULT_SHARED_SECRET",
    )
    vault_audience: str = Field(default="lockdrop-vault", alias="LOCKDROP_VAULT_JWT_AUD")
    vault_token_ttl_seconds: int = Field(
        default=300,
        alias="LOCKDROP_VAULT_TOKEN_TTL_SECONDS",
    )
    vault_http_timeout_seconds: float = Field(
        default=10.0,
        alias="LOCKDROP_VAULT_HTTP_TIMEOUT_SECONDS",
    )

    # Points indexer
    indexer_name: str = Field(default="points", alias="LOCKDROP_INDEXER_NAME")
    indexer_batch_size: int = Field(default=100, alias="LOCKDROP_INDEXER_BATCH_SIZE")
    indexer_poll_interval_seconds: float = Field(
        default=2.0,
        alias="LOCKDROP_INDEXER_POLL_INTERVAL_SECONDS",
    )
    indexer_max_retries: int = Field(default=5, alias="LOCKDROP_INDEXER_MAX_RETRIES")
    indexer_backoff_base_seconds: float = Field(
        default=0.5,
        alias="LOCKDROP_INDEXER_BACKOFF_BASE_SECONDS",
    )
    indexer_backoff_max_seconds: float = Field(
        default=30.0,
        alias="LOCKDROP_INDEXER_BACKOFF_MAX_SECONDS",
    )

    # Points accrual
    points_per_unit_second: Decimal = Field(
        default=Decimal("1"),
        alias="LOCKDROP_POINTS_PER_UNIT_SECOND",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def database_url_sync(self) -> str:
        """Return a sync-compatible database URL for tooling.

        Converts asyncpg URLs to psycopg for synchronous database operations
        like Alembic migrations.
        """
        url = self.effective_database_url
        if url.startswith("postgresql+asyncpg"):
            return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
        return url

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides."""
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url

    @property
    def vault_grace_deadline(self) -> int | None:
        """Return the emergency-unlock deadline derived from the window end."""
        if self.staking_window_end is None:
            return None
        return self.staking_window_end + self.vault_grace_period_seconds


settings = Settings()
