"""Return series storage and realized variance."""

from volatility_hedging.data.returns import (
    ReturnSeriesSnapshot,
    ReturnSeriesStore,
    yang_zhang_variance,
)

__all__ = [
    "ReturnSeriesSnapshot",
    "ReturnSeriesStore",
    "yang_zhang_variance",
]
