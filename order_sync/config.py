"""Configuration management for the Linnworks order sync pipeline.

Uses pydantic-settings to load configuration from environment variables
with validation and type coercion.
"""

from pathlib import Path
from typing import List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Linnworks Configuration
    linnworks_application_id: str = Field(
        ...,
        description="Linnworks developer application ID"
    )
    linnworks_application_secret: str = Field(
        ...,
        description="Linnworks developer application secret"
    )
    linnworks_installation_token: str = Field(
        ...,
        description="Installation token granted when the app was installed on the account"
    )
    linnworks_account_id: str = Field(
        default="default",
        description="Local identifier of the connected Linnworks account"
    )
    linnworks_auth_url: str = Field(
        default="https://api.linnworks.net/api",
        description="Base URL of the Linnworks authorization API"
    )
    session_ttl_minutes: int = Field(
        default=55,
        ge=1,
        le=24 * 60,
        description="Session lifetime assumed when the auth response carries no expiry"
    )

    # Open orders view
    open_orders_view_id: int = Field(
        default=4,
        description="Linnworks open orders view to page through"
    )
    open_orders_location_id: str = Field(
        default="00000000-0000-0000-0000-000000000000",
        description="Fulfilment location of the open orders view"
    )

    # Application Settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
    dry_run: bool = Field(
        default=False,
        description="If true, fetch and assemble orders without writing them"
    )
    database_path: Path = Field(
        default=Path("data/orders.db"),
        description="SQLite database file path"
    )
    log_file: Path = Field(
        default=Path("logs/sync.log"),
        description="Log file path"
    )

    # Sync scheduling
    sync_interval_minutes: int = Field(
        default=15,
        ge=1,
        description="Minimum minutes between two runs of the same sync type"
    )
    stale_after_minutes: int = Field(
        default=60,
        ge=1,
        description="An in-progress sync older than this is considered abandoned"
    )
    processed_lookback_days: int = Field(
        default=7,
        ge=1,
        le=365,
        description="Days back the window starts when the last sync did not complete"
    )
    failed_retry_batch_size: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Failed orders retried per --retry run"
    )

    # Performance Tuning
    page_size: int = Field(
        default=200,
        ge=1,
        le=500,
        description="Orders requested per page"
    )
    max_open_orders: int = Field(
        default=5000,
        ge=1,
        description="Upper bound on open orders fetched in one run"
    )
    max_processed_orders: int = Field(
        default=10000,
        ge=1,
        description="Upper bound on processed orders fetched in one run"
    )
    retry_schedule: List[float] = Field(
        default=[1.0, 3.0, 10.0],
        description="Seconds to wait before each retry of a transient failure"
    )
    max_retry_after: float = Field(
        default=60.0,
        ge=0.0,
        description="Upper bound on a server supplied Retry-After (seconds)"
    )
    request_timeout: float = Field(
        default=30.0,
        ge=1.0,
        le=300.0,
        description="Timeout for a single HTTP request (seconds)"
    )
    rate_limit_delay: float = Field(
        default=0.1,
        ge=0.0,
        le=5.0,
        description="Delay between Linnworks API calls (seconds)"
    )

    @field_validator("linnworks_auth_url")
    @classmethod
    def validate_auth_url(cls, v: str) -> str:
        """Ensure the auth URL is absolute and has no trailing slash."""
        v = v.rstrip("/")
        if not v.startswith(("https://", "http://")):
            v = f"https://{v}"
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        v = v.upper()
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v

    @field_validator("retry_schedule")
    @classmethod
    def validate_retry_schedule(cls, v: List[float]) -> List[float]:
        """Ensure every retry delay is non-negative."""
        if any(delay < 0 for delay in v):
            raise ValueError("Retry delays must be non-negative")
        return v

    @property
    def authorize_url(self) -> str:
        """Get the AuthorizeByApplication endpoint."""
        return f"{self.linnworks_auth_url}/Auth/AuthorizeByApplication"

    @property
    def has_credentials(self) -> bool:
        """Whether all three Linnworks credentials are set."""
        return all([
            self.linnworks_application_id,
            self.linnworks_application_secret,
            self.linnworks_installation_token,
        ])


def get_settings() -> Settings:
    """Get application settings singleton.

    Returns:
        Settings: Application settings loaded from environment
    """
    return Settings()
