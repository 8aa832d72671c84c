"""
Volatility Hedging Engine

HAR-RV volatility forecasting and delta hedging of an options book.
"""

__version__ = "0.1.0"

from volatility_hedging.core.types import (
    ForecastResult,
    HedgeTarget,
    OrderIntent,
    OrderState,
    Position,
    ReturnSample,
    OptionType,
)

__all__ = [
    "ForecastResult",
    "HedgeTarget",
    "OrderIntent",
    "OrderState",
    "Position",
    "ReturnSample",
    "OptionType",
]
