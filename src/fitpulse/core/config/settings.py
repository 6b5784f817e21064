# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Application configuration settings using Pydantic Settings.

This module provides centralized configuration management for the FitPulse
telemetry service. Settings are loaded from environment variables with
sensible defaults.

The Settings class is the main entry point and aggregates all subsettings.
A cached instance is provided via get_settings() for dependency injection.

Example:
    >>> from fitpulse.core.config.settings import get_settings
    >>> settings = get_settings()
    >>> settings.scheduler.timezone
    'UTC'
"""

from functools import lru_cache
from typing import Literal, Self
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DB_PASSWORD = "fitpulse_password"


class DatabaseSettings(BaseSettings):
    """Event store database configuration.

    Attributes:
        user: PostgreSQL username.
        password: PostgreSQL password.
        host: Database host address.
        port: Database port number.
        database: Database name.
        pool_size: Connection pool size.
        max_overflow: Maximum overflow connections.
        url_override: Full connection URL taken from DATABASE_URL. When set
            it wins over the individual components.
    """

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        extra="ignore",
        populate_by_name=True,
    )

    user: str = "fitpulse"
    password: SecretStr = SecretStr(DEFAULT_DB_PASSWORD)
    host: str = "localhost"
    port: int = 5432
    database: str = "fitpulse"
    pool_size: int = 10
    max_overflow: int = 20
    url_override: str | None = Field(default=None, validation_alias="DATABASE_URL")

    @property
    def url(self) -> str:
        """Build the async database URL from components."""
        if self.url_override:
            return self.url_override
        pwd = self.password.get_secret_value()
        return f"postgresql+asyncpg://{self.user}:{pwd}@{self.host}:{self.port}/{self.database}"


class RedisSettings(BaseSettings):
    """Redis configuration for the Dramatiq broker.

    Attributes:
        host: Redis server host.
        port: Redis server port.
        password: Optional Redis password.
        database: Redis database number.
    """

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        extra="ignore",
    )

    host: str = "localhost"
    port: int = 6379
    password: SecretStr | None = None
    database: int = 0

    @property
    def url(self) -> str:
        """Build the Redis connection URL."""
        pwd = self.password.get_secret_value() if self.password else ""
        if pwd:
            return f"redis://:{pwd}@{self.host}:{self.port}/{self.database}"
        return f"redis://{self.host}:{self.port}/{self.database}"


class IngestionSettings(BaseSettings):
    """Server-side ingestion queue configuration.

    Attributes:
        batch_size: Queue length that triggers an immediate flush.
        flush_interval_seconds: Period of the background flush loop.
        write_timeout_seconds: Upper bound for one batch write.
        max_batch_size: Largest batch accepted at the HTTP boundary.
    """

    model_config = SettingsConfigDict(
        env_prefix="INGESTION_",
        extra="ignore",
    )

    batch_size: int = Field(default=10, ge=1)
    flush_interval_seconds: float = Field(default=5.0, gt=0)
    write_timeout_seconds: float = Field(default=10.0, gt=0)
    max_batch_size: int = Field(default=500, ge=1)


class SessionSettings(BaseSettings):
    """Session tracking configuration.

    Attributes:
        inactivity_timeout_minutes: Idle time after which a session is closed.
        sweep_interval_minutes: How often the inactivity sweep runs.
    """

    model_config = SettingsConfigDict(
        env_prefix="SESSION_",
        extra="ignore",
    )

    inactivity_timeout_minutes: int = Field(default=30, ge=1)
    sweep_interval_minutes: int = Field(default=15, ge=1)


class RetentionSettings(BaseSettings):
    """Retention windows for stored records.

    Attributes:
        event_days: Age at which events are evicted.
        report_days: Age at which reports are evicted.
        session_days: Age at which ended sessions are evicted.
    """

    model_config = SettingsConfigDict(
        env_prefix="RETENTION_",
        extra="ignore",
    )

    event_days: int = Field(default=730, ge=1)
    report_days: int = Field(default=365, ge=1)
    session_days: int = Field(default=180, ge=1)


class SchedulerSettings(BaseSettings):
    """Report scheduler configuration.

    Cron expressions use the classic five fields
    (minute hour day month weekday) and are evaluated in ``timezone``.

    Attributes:
        enabled: Whether recurring jobs are registered at startup.
        embedded: Whether the API process runs the jobs itself. Only
            honoured with a single API worker; otherwise run
            ``fitpulse-scheduler`` next to the API so each job runs once.
        timezone: IANA timezone name, read from TIMEZONE.
        daily_cron: Daily report cadence.
        weekly_cron: Weekly report cadence.
        monthly_cron: Monthly report cadence.
        cleanup_cron: Retention cleanup cadence.
        engagement_cron: Engagement score refresh cadence.
        weekly_user_limit: Maximum per-user weekly reports per run.
        monthly_user_limit: Maximum per-user monthly reports per run.
        engagement_window_days: Lookback used for engagement scores.
    """

    model_config = SettingsConfigDict(
        env_prefix="SCHEDULER_",
        extra="ignore",
        populate_by_name=True,
    )

    enabled: bool = True
    embedded: bool = True
    timezone: str = Field(default="UTC", validation_alias="TIMEZONE")
    daily_cron: str = "0 2 * * *"
    weekly_cron: str = "0 3 * * 1"
    monthly_cron: str = "0 4 1 * *"
    cleanup_cron: str = "0 1 * * *"
    engagement_cron: str = "0 */6 * * *"
    weekly_user_limit: int = Field(default=100, ge=0)
    monthly_user_limit: int = Field(default=200, ge=0)
    engagement_window_days: int = Field(default=30, ge=1)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        """Reject timezone names the zoneinfo database does not know."""
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {value}") from e
        return value

    @property
    def tzinfo(self) -> ZoneInfo:
        """Timezone object for cadence calculations."""
        return ZoneInfo(self.timezone)


class RealtimeSettings(BaseSettings):
    """Realtime metrics windows.

    Attributes:
        active_window_minutes: Window for "active now" users and sessions.
        daily_window_hours: Window for the 24 hour user count.
        recent_events_limit: Size of the recent events feed.
    """

    model_config = SettingsConfigDict(
        env_prefix="REALTIME_",
        extra="ignore",
    )

    active_window_minutes: int = Field(default=30, ge=1)
    daily_window_hours: int = Field(default=24, ge=1)
    recent_events_limit: int = Field(default=50, ge=1)


class RateLimitSettings(BaseSettings):
    """Rate limiting configuration.

    Attributes:
        enabled: Whether rate limits are enforced.
        requests_per_minute: Default limit per client.
        ingest_per_minute: Limit for the batch ingestion endpoint.
        storage_uri: slowapi storage backend (use the Redis URL in production).
    """

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        extra="ignore",
    )

    enabled: bool = True
    requests_per_minute: int = 60
    ingest_per_minute: int = 120
    storage_uri: str = "memory://"


class CORSSettings(BaseSettings):
    """CORS configuration for API.

    Attributes:
        origins: Comma-separated list of allowed origins.
        allow_credentials: Whether to allow credentials.
        allow_methods: Allowed HTTP methods.
        allow_headers: Allowed HTTP headers.
    """

    model_config = SettingsConfigDict(
        env_prefix="CORS_",
        extra="ignore",
    )

    origins: str = "http://localhost:3000,http://localhost:19006"
    allow_credentials: bool = True
    allow_methods: list[str] = ["*"]
    allow_headers: list[str] = ["*"]

    @property
    def origins_list(self) -> list[str]:
        """Parse origins string into a list."""
        return [origin.strip() for origin in self.origins.split(",") if origin.strip()]


class OTelSettings(BaseSettings):
    """OpenTelemetry observability configuration.

    Attributes:
        enabled: Whether OpenTelemetry is enabled.
        service_name: Name of the service for tracing.
        exporter_otlp_endpoint: OTLP exporter endpoint.
    """

    model_config = SettingsConfigDict(
        env_prefix="OTEL_",
        extra="ignore",
    )

    enabled: bool = False
    service_name: str = "fitpulse-telemetry"
    exporter_otlp_endpoint: str = Field(
        default="http://localhost:4317",
        validation_alias="OTEL_EXPORTER_OTLP_ENDPOINT",
    )


class APISettings(BaseSettings):
    """API server configuration.

    Attributes:
        host: Host to bind to.
        port: Port to listen on.
        workers: Number of worker processes.
        reload: Whether to enable auto-reload.
    """

    model_config = SettingsConfigDict(
        env_prefix="API_",
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 8000
    workers: int = 2
    reload: bool = False


class Settings(BaseSettings):
    """Main application settings.

    Aggregates all subsettings. Each subsetting reads its own env prefix.

    Attributes:
        environment: Current environment (development, staging, production).
        debug: Enable debug mode.
        log_level: Logging level.
        database: Event store database settings.
        redis: Redis settings.
        ingestion: Ingestion queue settings.
        sessions: Session tracking settings.
        retention: Retention windows.
        scheduler: Report scheduler settings.
        realtime: Realtime metrics settings.
        rate_limit: Rate limiting settings.
        cors: CORS settings.
        otel: OpenTelemetry settings.
        api: API server settings.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # Environment
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "DEBUG"

    # Subsettings - loaded with their own env prefixes
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    ingestion: IngestionSettings = Field(default_factory=IngestionSettings)
    sessions: SessionSettings = Field(default_factory=SessionSettings)
    retention: RetentionSettings = Field(default_factory=RetentionSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    cors: CORSSettings = Field(default_factory=CORSSettings)
    otel: OTelSettings = Field(default_factory=OTelSettings)
    api: APISettings = Field(default_factory=APISettings)

    @model_validator(mode="after")
    def validate_production_settings(self) -> Self:
        """Validate that production settings are properly configured.

        Raises:
            ValueError: If running in production with insecure defaults.
        """
        if self.environment == "production":
            if (
                self.database.url_override is None
                and self.database.password.get_secret_value() == DEFAULT_DB_PASSWORD
            ):
                raise ValueError(
                    "Database password must be changed from default in production. "
                    "Set DB_PASSWORD or DATABASE_URL environment variable."
                )
        return self

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call clear_settings_cache() if you need to reload settings.

    Returns:
        Cached Settings instance.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Call this if you need to reload settings from environment.
    Useful for testing or dynamic configuration updates.
    """
    get_settings.cache_clear()
