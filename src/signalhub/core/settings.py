"""Application settings and configuration.

This module defines all configuration options for the SignalHub application.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    Timing values are plain numbers handed to the signaling core by the hub;
    none of the state machines read them directly.
    """

    # Application metadata
    app_name: str = Field(default="SignalHub", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")

    # Security and authentication
    secret_key: str = Field(alias="SECRET_KEY")
    debug: bool = Field(default=False, alias="DEBUG")

    # Database configuration
    database_url: str = Field(default="sqlite:///./signalhub.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # JWT authentication settings
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(
        default=60 * 24 * 30,
        alias="ACCESS_TOKEN_EXPIRE_MINUTES",
    )

    # Call signaling timings (seconds)
    call_ring_timeout_seconds: float = Field(default=30.0, alias="CALL_RING_TIMEOUT_SECONDS")
    call_reconnect_delay_seconds: float = Field(
        default=5.0,
        alias="CALL_RECONNECT_DELAY_SECONDS",
    )
    call_reconnect_grace_seconds: float = Field(
        default=20.0,
        alias="CALL_RECONNECT_GRACE_SECONDS",
    )

    # Presence and timer behaviour
    presence_offline_delay_seconds: float = Field(
        default=5.0,
        alias="PRESENCE_OFFLINE_DELAY_SECONDS",
    )
    timer_tick_seconds: float = Field(default=1.0, alias="TIMER_TICK_SECONDS")

    # Fan-out deduplication and store-and-forward
    dedup_window_size: int = Field(default=256, alias="DEDUP_WINDOW_SIZE")
    pending_termination_max_age_seconds: float = Field(
        default=300.0,
        alias="PENDING_TERMINATION_MAX_AGE_SECONDS",
    )

    # History pagination
    history_page_size: int = Field(default=50, alias="HISTORY_PAGE_SIZE")
    history_page_max: int = Field(default=100, alias="HISTORY_PAGE_MAX")

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(
        default=["*"],
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(
        default=["*"],
        alias="CORS_ALLOW_HEADERS",
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

        Returns:
            Database URL compatible with synchronous database drivers
        """
        url = self.effective_database_url
        if url.startswith("postgresql+asyncpg"):
            return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
        return url

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides.

        Returns:
            The active database URL (test database if in testing mode, otherwise production)
        """
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url


settings = Settings()  # type: ignore[call-arg]
