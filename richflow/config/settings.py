"""
Configuration Management for RichFlow

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
The engine itself has very few knobs (currency defaults, metric sentinels,
replay limits) but they are read from one place so tests and deployments
can override them without touching the domain code.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseSettings):
    """Event ledger and metrics configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        extra="ignore"
    )

    default_currency_symbol: str = Field(
        default="$",
        description="Currency symbol used when a user has no preferred currency"
    )
    default_currency_name: str = Field(
        default="USD",
        description="Currency name used when a user has no preferred currency"
    )

    # Metric policies
    runway_sentinel_months: float = Field(
        default=999.0,
        gt=0,
        description="Runway reported when there is cash but no expenses"
    )
    freedom_horizon_months: int = Field(
        default=600,
        ge=1,
        description="Projections at or beyond this many months render as '> 50 Years'"
    )
    projection_window_months: int = Field(
        default=6,
        ge=1,
        description="Look-back window for the freedom date growth rate"
    )

    # Replay limits
    replay_fetch_limit: int = Field(
        default=100000,
        ge=1,
        description="Replay windows larger than this are logged as a warning"
    )
    default_page_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Default page size for event log listings"
    )


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets storage configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the Google Sheets spreadsheet to use"
    )

    # Sheet names within the spreadsheet
    events_sheet_name: str = Field(
        default="Events",
        description="Name of the sheet holding the event log"
    )
    snapshots_sheet_name: str = Field(
        default="Snapshots",
        description="Name of the sheet holding monthly checkpoints"
    )

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Minimum level for structured logs"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sub-settings are loaded lazily so the engine runs without
    # Google Sheets credentials.

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("ledger", "google_sheets", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
