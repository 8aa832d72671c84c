"""
Typed messages routed to the hedging engine's per-underlying workers.

Broker callbacks, timers and gateway task outcomes are all turned into one of
these before they touch hedge state.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Mapping, Optional, Union

from volatility_hedging.core.types import ForecastResult, OrderState, Position


@dataclass(frozen=True)
class PriceTick:
    """Last trade or mark of an underlying."""

    underlying: str
    timestamp: datetime
    price: float


@dataclass(frozen=True)
class PositionsSnapshot:
    """Authoritative account positions (contract id -> signed quantity)."""

    account_id: str
    quantities: Mapping[int, Decimal]
    timestamp: datetime


@dataclass(frozen=True)
class PositionsUpdated:
    """Resolved slice of a snapshot for one underlying."""

    underlying: str
    positions: tuple[Position, ...]
    sequence: int
    timestamp: datetime


@dataclass(frozen=True)
class ForecastPublished:
    result: ForecastResult


@dataclass(frozen=True)
class ExecutionReport:
    """Terminal outcome of a hedge order reported by the venue."""

    order_id: str
    state: OrderState
    timestamp: datetime
    filled_quantity: Decimal = Decimal("0")
    reason: Optional[str] = None


@dataclass(frozen=True)
class SubmissionAcknowledged:
    order_id: str
    broker_order_id: str
    timestamp: datetime
    attempts: int = 1


@dataclass(frozen=True)
class SubmissionFailed:
    order_id: str
    error: str
    timestamp: datetime
    transient: bool = False
    attempts: int = 1


@dataclass(frozen=True)
class SubmissionWithdrawn:
    """Submission abandoned before reaching the venue because the session closed."""

    order_id: str
    reason: str
    timestamp: datetime


@dataclass(frozen=True)
class OrderTimedOut:
    order_id: str
    timestamp: datetime


@dataclass(frozen=True)
class SessionEvent:
    """Broker session state change; hedging requires both flags."""

    connected: bool
    authenticated: bool
    timestamp: datetime

    @property
    def ready(self) -> bool:
        return self.connected and self.authenticated


@dataclass(frozen=True)
class ResetUnderlying:
    """Operator request to resume a paused underlying."""

    underlying: str
    timestamp: datetime
    note: str = field(default="manual reset")


EngineMessage = Union[
    PriceTick,
    PositionsSnapshot,
    PositionsUpdated,
    ForecastPublished,
    ExecutionReport,
    SubmissionAcknowledged,
    SubmissionFailed,
    SubmissionWithdrawn,
    OrderTimedOut,
    SessionEvent,
    ResetUnderlying,
]
