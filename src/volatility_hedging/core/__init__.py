"""Core types, errors and configuration for the hedging engine."""

from volatility_hedging.core.types import (
    AssetClass,
    ContractMetadata,
    ForecastResult,
    HedgeTarget,
    OrderIntent,
    OrderState,
    Position,
    ReturnSample,
    OptionType,
)
from volatility_hedging.core.errors import (
    HedgingError,
    InsufficientHistory,
    InvalidOrderTransition,
    NoForecastAvailable,
    NumericalInstability,
    OrderSubmissionFailure,
    SessionDisconnected,
    StaleOrderTimeout,
)
from volatility_hedging.core.config import Config, load_config

__all__ = [
    "AssetClass",
    "ContractMetadata",
    "ForecastResult",
    "HedgeTarget",
    "OrderIntent",
    "OrderState",
    "Position",
    "ReturnSample",
    "OptionType",
    "HedgingError",
    "InsufficientHistory",
    "InvalidOrderTransition",
    "NoForecastAvailable",
    "NumericalInstability",
    "OrderSubmissionFailure",
    "SessionDisconnected",
    "StaleOrderTimeout",
    "Config",
    "load_config",
]
