"""Engine configuration using pydantic-settings.

All environment variables should be accessed through the settings object
rather than using os.getenv() directly. Services take their thresholds as
explicit constructor arguments and only fall back to these values when none
are given.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables (``STOCKRECON_*``)."""

    model_config = SettingsConfigDict(
        env_prefix="STOCKRECON_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars
    )

    # Database - relative path, override via env for other deployments
    database_url: str = "sqlite:///./data/stockrecon.db"

    # Server
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # ==========================================================================
    # Count severity thresholds
    # ==========================================================================
    caution_value_threshold: Decimal = Decimal("50")  # |variance value| below this is Caution
    caution_qty_threshold: Decimal = Decimal("10")  # |variance qty| below this is Caution

    # ==========================================================================
    # Usage variance analysis
    # ==========================================================================
    significant_variance_percent: Decimal = Decimal("10")
    analysis_window_days: int = 7
    sale_deduction_type: str = "sale_deduction"
    adjustment_transaction_type: str = "adjustment"

    # Variance history report
    history_window_days: int = 90

    @field_validator(
        "caution_value_threshold",
        "caution_qty_threshold",
        "significant_variance_percent",
    )
    @classmethod
    def validate_positive_threshold(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("Thresholds must be greater than zero")
        return v

    @field_validator("analysis_window_days", "history_window_days")
    @classmethod
    def validate_window(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Analysis windows must cover at least one day")
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
