"""
Error taxonomy for the hedging engine.

Recoverable errors degrade to "take no hedge action this cycle"; the engine
catches them, raises an alert and keeps running.
"""

from typing import Any, Optional


class HedgingError(Exception):
    """Base class for hedging engine errors."""

    recoverable = True

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class InsufficientHistory(HedgingError):
    """Not enough return samples to compute a window or fit the model."""

    def __init__(self, message: str, required: int, available: int, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.required = required
        self.available = available


class NumericalInstability(HedgingError):
    """The regression design matrix is ill-conditioned; prior coefficients are kept."""

    def __init__(self, message: str, condition_number: Optional[float] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.condition_number = condition_number


class NoForecastAvailable(HedgingError):
    """No published forecast for an underlying; the underlying is skipped."""

    def __init__(self, message: str, underlying: str, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.underlying = underlying


class OrderSubmissionFailure(HedgingError):
    """Order could not be placed. Transient failures are retried."""

    def __init__(self, message: str, transient: bool, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.transient = transient

    @property
    def permanent(self) -> bool:
        return not self.transient


class SessionDisconnected(HedgingError):
    """Broker session is down or unauthenticated; order submission is suspended."""


class StaleOrderTimeout(HedgingError):
    """A submitted order received no terminal event in time."""

    def __init__(self, message: str, order_id: str, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.order_id = order_id


class InvalidOrderTransition(HedgingError):
    """Attempted OrderIntent transition that is not forward-only."""

    recoverable = False

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        attempted_transition: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.current_state = current_state
        self.attempted_transition = attempted_transition
