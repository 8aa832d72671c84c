"""
Delta hedging components.

Order lifecycle and the engine live in `hedging.orders` and `hedging.engine`;
they depend on the execution package and are imported from there directly.
"""

from .alerts import Alert, AlertChannel, AlertKind
from .calendar import ExpirationCalendar
from .messages import (
    ExecutionReport,
    ForecastPublished,
    PositionsSnapshot,
    PriceTick,
    ResetUnderlying,
    SessionEvent,
)
from .positions import (
    ContractMetadataProvider,
    InMemoryContractMetadataProvider,
    InMemoryPositionFeed,
    PositionBook,
    PositionFeed,
)
from .delta import DeltaCalculator
from .decision import HedgeDecisionEngine

__all__ = [
    "Alert",
    "AlertChannel",
    "AlertKind",
    "ExpirationCalendar",
    "ExecutionReport",
    "ForecastPublished",
    "PositionsSnapshot",
    "PriceTick",
    "ResetUnderlying",
    "SessionEvent",
    "ContractMetadataProvider",
    "InMemoryContractMetadataProvider",
    "InMemoryPositionFeed",
    "PositionBook",
    "PositionFeed",
    "DeltaCalculator",
    "HedgeDecisionEngine",
]
