"""
Operator alert channel.

Every alert is logged as a structured record, kept in a bounded history and
passed to subscribers. Raising an alert never raises.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from volatility_hedging.utils.logging import get_logger

logger = get_logger(__name__)


class AlertKind(str, Enum):
    INSUFFICIENT_HISTORY = "insufficient_history"
    NUMERICAL_INSTABILITY = "numerical_instability"
    NO_FORECAST = "no_forecast"
    DELTA_FAILED = "delta_failed"
    FILL_NOT_APPLIED = "fill_not_applied"
    SUBMISSION_FAILED = "submission_failed"
    STALE_ORDER = "stale_order"
    ORDER_REJECTED = "order_rejected"
    SESSION_DISCONNECTED = "session_disconnected"
    HISTORY_GAP = "history_gap"
    RESYNC_TIMEOUT = "resync_timeout"
    SHUTDOWN_UNRESOLVED = "shutdown_unresolved"


@dataclass(frozen=True)
class Alert:
    kind: AlertKind
    message: str
    timestamp: datetime
    underlying: Optional[str] = None
    order_id: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)


AlertSubscriber = Callable[[Alert], None]


class AlertChannel:
    """Fan-out of operator alerts."""

    def __init__(self, max_history: int = 500) -> None:
        self._history: deque[Alert] = deque(maxlen=max_history)
        self._subscribers: list[AlertSubscriber] = []

    def subscribe(self, subscriber: AlertSubscriber) -> None:
        self._subscribers.append(subscriber)

    def raise_alert(
        self,
        kind: AlertKind,
        message: str,
        underlying: Optional[str] = None,
        order_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        **context: Any,
    ) -> Alert:
        alert = Alert(
            kind=kind,
            message=message,
            timestamp=timestamp or datetime.now(timezone.utc),
            underlying=underlying,
            order_id=order_id,
            context=context,
        )
        self._history.append(alert)

        fields = {"alert": kind.value, **context}
        if underlying is not None:
            fields["underlying"] = underlying
        if order_id is not None:
            fields["order_id"] = order_id
        logger.warning(f"ALERT {kind.value}: {message}", extra={"extra_fields": fields})

        for subscriber in self._subscribers:
            try:
                subscriber(alert)
            except Exception:
                logger.exception(f"Alert subscriber failed for {kind.value}")
        return alert

    def history(self, kind: Optional[AlertKind] = None) -> list[Alert]:
        if kind is None:
            return list(self._history)
        return [a for a in self._history if a.kind == kind]

    def clear(self) -> None:
        self._history.clear()
