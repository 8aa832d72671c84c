"""
Configuration management for the hedging engine.

Loads and validates configuration from YAML files using Pydantic.
"""

from datetime import time
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ForecasterConfig(BaseModel):
    """HAR-RV model terms and estimation schedule."""

    model_config = ConfigDict(frozen=True)

    include_daily: bool = Field(default=True, description="Include the daily RV lag")
    include_weekly: bool = Field(default=True, description="Include the weekly RV average")
    include_monthly: bool = Field(default=True, description="Include the monthly RV average")
    include_leverage_effect: bool = Field(
        default=False, description="Include the negative-return leverage term"
    )
    use_log_variance: bool = Field(
        default=False, description="Fit the regression in log-variance space"
    )

    daily_window: int = Field(default=1, description="Daily lookback (periods)", gt=0)
    weekly_window: int = Field(default=5, description="Weekly lookback (periods)", gt=0)
    monthly_window: int = Field(default=22, description="Monthly lookback (periods)", gt=0)

    estimation_window: int = Field(
        default=500, description="Trailing samples used for OLS", gt=0
    )
    reestimation_interval: float = Field(
        default=86400.0, description="Seconds between coefficient re-estimations", gt=0
    )
    forecast_horizon: int = Field(default=1, description="Forecast horizon (periods)", gt=0)
    min_variance: float = Field(default=1e-10, description="Variance floor", ge=0)
    ridge_penalty: float = Field(
        default=0.0, description="L2 penalty on non-intercept coefficients", ge=0
    )
    max_condition_number: float = Field(
        default=1e8, description="Condition number above which a fit is rejected", gt=1
    )
    periods_per_year: float = Field(
        default=252.0, description="Periods per year used to annualize volatility", gt=0
    )

    @model_validator(mode="after")
    def validate_windows(self) -> "ForecasterConfig":
        """Windows must be ordered daily <= weekly <= monthly."""
        if not self.daily_window <= self.weekly_window <= self.monthly_window:
            raise ValueError("Windows must satisfy daily <= weekly <= monthly")
        if not (self.include_daily or self.include_weekly or self.include_monthly):
            raise ValueError("At least one realized variance term must be enabled")
        return self


class UnderlyingHedgeConfig(BaseModel):
    """Per-underlying hedge overrides."""

    model_config = ConfigDict(frozen=True)

    hedge_instrument_id: int = Field(..., description="Default hedge contract id", gt=0)
    band: Optional[Decimal] = Field(None, description="Tolerance band B for [-B, B]", ge=0)
    lot_size: Optional[Decimal] = Field(None, description="Hedge lot size", gt=0)
    min_adjustment: Optional[Decimal] = Field(
        None, description="Smallest hedge quantity worth sending", ge=0
    )
    blackout_start: Optional[time] = Field(None, description="Blackout start (local time)")
    blackout_end: Optional[time] = Field(None, description="Blackout end (local time)")
    timezone: str = Field(default="America/New_York", description="Timezone of blackout times")


class HedgeConfig(BaseModel):
    """Delta hedging configuration."""

    model_config = ConfigDict(frozen=True)

    account_id: str = Field(default="DU0000000", description="Brokerage account", min_length=1)
    band: Decimal = Field(default=Decimal("5"), description="Default tolerance band B", ge=0)
    lot_size: Decimal = Field(default=Decimal("1"), description="Default hedge lot size", gt=0)
    min_adjustment: Decimal = Field(
        default=Decimal("1"), description="Smallest hedge quantity worth sending", ge=0
    )
    cooldown_seconds: float = Field(
        default=0.0, description="Pause after an order resolves before re-hedging", ge=0
    )
    risk_free_rate: Decimal = Field(
        default=Decimal("0.05"), description="Annual risk-free rate", ge=0, le=1
    )
    underlyings: dict[str, UnderlyingHedgeConfig] = Field(
        default_factory=dict, description="Hedged underlyings keyed by symbol"
    )

    @field_validator("underlyings")
    @classmethod
    def validate_symbols(
        cls, v: dict[str, UnderlyingHedgeConfig]
    ) -> dict[str, UnderlyingHedgeConfig]:
        """Ensure symbols are uppercase."""
        return {k.upper(): cfg for k, cfg in v.items()}

    def for_underlying(self, underlying: str) -> Optional[UnderlyingHedgeConfig]:
        return self.underlyings.get(underlying.upper())

    def band_for(self, underlying: str) -> Decimal:
        cfg = self.for_underlying(underlying)
        return cfg.band if cfg is not None and cfg.band is not None else self.band

    def lot_size_for(self, underlying: str) -> Decimal:
        cfg = self.for_underlying(underlying)
        return cfg.lot_size if cfg is not None and cfg.lot_size is not None else self.lot_size

    def min_adjustment_for(self, underlying: str) -> Decimal:
        cfg = self.for_underlying(underlying)
        if cfg is not None and cfg.min_adjustment is not None:
            return cfg.min_adjustment
        return self.min_adjustment


class OrderConfig(BaseModel):
    """Order lifecycle timing and retry policy."""

    model_config = ConfigDict(frozen=True)

    order_timeout: float = Field(
        default=30.0, description="Seconds before a submitted order is marked stale", gt=0
    )
    max_retry_attempts: int = Field(
        default=3, description="Submission attempts before giving up", ge=1, le=20
    )
    retry_base_delay: float = Field(default=0.5, description="First backoff delay (s)", ge=0)
    retry_max_delay: float = Field(default=8.0, description="Backoff cap (s)", ge=0)
    shutdown_timeout: float = Field(
        default=10.0, description="Seconds to wait for cancels on shutdown", ge=0
    )


class CalendarConfig(BaseModel):
    """
    Expiration cutoff times.

    Defaults reflect observed broker samples; validate them against the
    exchange contract specifications before trading a new product.
    """

    model_config = ConfigDict(frozen=True)

    timezone: str = Field(default="America/New_York", description="Exchange timezone")
    asset_class_cutoffs: dict[str, time] = Field(
        default_factory=lambda: {"OPT": time(16, 0), "FOP": time(16, 0), "FUT": time(16, 0)},
        description="Cutoff time per asset class code",
    )
    product_cutoffs: dict[str, time] = Field(
        default_factory=lambda: {"ES": time(16, 0), "ZN": time(13, 0)},
        description="Cutoff time per product root, overrides the asset class",
    )

    @field_validator("asset_class_cutoffs", "product_cutoffs")
    @classmethod
    def validate_keys(cls, v: dict[str, time]) -> dict[str, time]:
        """Ensure keys are uppercase."""
        return {k.upper(): t for k, t in v.items()}


class EngineConfig(BaseModel):
    """Runtime scheduling for the hedging engine."""

    model_config = ConfigDict(frozen=True)

    forecast_interval: float = Field(
        default=60.0, description="Seconds between forecast refreshes", gt=0
    )
    max_history_gap: float = Field(
        default=4 * 86400.0, description="Largest tolerated gap between return samples (s)", gt=0
    )
    resync_timeout: float = Field(
        default=30.0, description="Seconds to wait for a position resync", gt=0
    )
    max_samples: int = Field(
        default=5000, description="Return samples retained per underlying", gt=0
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(frozen=True)

    level: str = Field(default="INFO", description="Logging level")
    format: str = Field(default="json", description="Log format (json, text)")
    log_dir: Path = Field(default=Path("logs"), description="Log directory")
    console_output: bool = Field(default=True, description="Enable console logging")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Ensure valid logging level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Level must be one of {valid_levels}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Ensure valid log format."""
        valid_formats = {"json", "text"}
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Format must be one of {valid_formats}")
        return v_lower


class Config(BaseModel):
    """
    Main configuration container.

    Aggregates all sub-configurations for the hedging engine.
    """

    model_config = ConfigDict(frozen=True)

    forecaster: ForecasterConfig = Field(default_factory=ForecasterConfig)
    hedging: HedgeConfig = Field(default_factory=HedgeConfig)
    orders: OrderConfig = Field(default_factory=OrderConfig)
    calendar: CalendarConfig = Field(default_factory=CalendarConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        """
        Load configuration from YAML file.

        Args:
            path: Path to YAML configuration file

        Returns:
            Validated Config instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f)

        if data is None:
            data = {}

        return cls(**data)

    def to_yaml(self, path: Path) -> None:
        """
        Save configuration to YAML file.

        Args:
            path: Path to save YAML configuration
        """
        path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode="python")

        def convert_for_yaml(obj: Any) -> Any:
            """Convert non-serializable types for YAML."""
            if isinstance(obj, Decimal):
                return float(obj)
            elif isinstance(obj, Path):
                return str(obj)
            elif isinstance(obj, time):
                return obj.strftime("%H:%M:%S")
            elif isinstance(obj, dict):
                return {k: convert_for_yaml(v) for k, v in obj.items()}
            elif isinstance(obj, list):
                return [convert_for_yaml(item) for item in obj]
            return obj

        yaml_data = convert_for_yaml(data)

        with open(path, "w") as f:
            yaml.dump(yaml_data, f, default_flow_style=False, sort_keys=False)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file or use defaults.

    Args:
        config_path: Optional path to config file. If None, uses default.yaml

    Returns:
        Validated Config instance
    """
    if config_path is None:
        config_path = Path("config/default.yaml")

    if config_path.exists():
        return Config.from_yaml(config_path)
    else:
        return Config()
