"""Volatility forecasting and option delta."""

from volatility_hedging.models.black_scholes import BlackScholesModel, time_to_expiry
from volatility_hedging.models.har_rv import (
    ForecastBoard,
    HarRvForecaster,
    VolatilityForecaster,
    create_forecaster,
)

__all__ = [
    "BlackScholesModel",
    "time_to_expiry",
    "ForecastBoard",
    "HarRvForecaster",
    "VolatilityForecaster",
    "create_forecaster",
]
