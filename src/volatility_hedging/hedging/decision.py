"""
Hedge decision engine.

Turns a HedgeTarget into at most one OrderIntent per underlying. A new intent
is only created once the previous one for the same underlying has reached a
terminal state; triggers arriving in between are dropped, not queued.
"""

import uuid
from datetime import datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from volatility_hedging.core.config import HedgeConfig
from volatility_hedging.core.types import HedgeTarget, OrderIntent
from volatility_hedging.utils.logging import get_logger

logger = get_logger(__name__)


def round_to_lot(quantity: Decimal, lot_size: Decimal) -> Decimal:
    """Round to a multiple of `lot_size`, ties away from zero."""
    lots = (quantity / lot_size).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return lots * lot_size


def in_window(moment: time, start: time, end: time) -> bool:
    """Inclusive time-of-day window; `start > end` wraps midnight."""
    if start <= end:
        return start <= moment <= end
    return moment >= start or moment <= end


class HedgeDecisionEngine:
    """
    Band-triggered hedge sizing with per-underlying serialization.

    Example:
        >>> engine = HedgeDecisionEngine(config.hedging)
        >>> intent = engine.evaluate(target, now)
        >>> if intent: lifecycle.track(intent)
    """

    def __init__(
        self,
        config: HedgeConfig,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        """
        Initialize the decision engine.

        Args:
            config: Bands, lot sizes and hedge instruments
            id_factory: Order id generator, defaults to uuid4 hex
        """
        self.config = config
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._active: dict[str, OrderIntent] = {}
        self._paused: dict[str, str] = {}
        self._cooldown_until: dict[str, datetime] = {}

    def active_intent(self, underlying: str) -> Optional[OrderIntent]:
        intent = self._active.get(underlying.upper())
        if intent is not None and intent.is_terminal:
            return None
        return intent

    def is_paused(self, underlying: str) -> bool:
        return underlying.upper() in self._paused

    def pause_reason(self, underlying: str) -> Optional[str]:
        return self._paused.get(underlying.upper())

    def pause(self, underlying: str, reason: str) -> None:
        """Stop hedging an underlying until `reset` is called."""
        underlying = underlying.upper()
        self._paused[underlying] = reason
        logger.warning(f"{underlying}: hedging paused ({reason})")

    def reset(self, underlying: str) -> None:
        underlying = underlying.upper()
        if self._paused.pop(underlying, None) is not None:
            logger.info(f"{underlying}: hedging resumed")
        self._cooldown_until.pop(underlying, None)

    def in_blackout(self, underlying: str, now: datetime) -> bool:
        cfg = self.config.for_underlying(underlying)
        if cfg is None or cfg.blackout_start is None or cfg.blackout_end is None:
            return False
        local = now.astimezone(ZoneInfo(cfg.timezone)).time()
        return in_window(local, cfg.blackout_start, cfg.blackout_end)

    def hedge_quantity(self, underlying: str, net_delta: Decimal) -> Decimal:
        """Offsetting quantity for `net_delta`, in whole lots."""
        return round_to_lot(-net_delta, self.config.lot_size_for(underlying))

    def evaluate(self, target: HedgeTarget, now: datetime) -> Optional[OrderIntent]:
        """
        Decide whether to hedge.

        Args:
            target: Net delta and band of an underlying
            now: Decision time

        Returns:
            A CREATED intent, or None when no action is needed or allowed
        """
        underlying = target.underlying

        if self.is_paused(underlying):
            logger.debug(f"{underlying}: paused ({self._paused[underlying]}), skipping")
            return None

        active = self.active_intent(underlying)
        if active is not None:
            logger.debug(f"{underlying}: order {active.id} still {active.state.value}, skipping")
            return None

        cooldown_until = self._cooldown_until.get(underlying)
        if cooldown_until is not None and now < cooldown_until:
            logger.debug(f"{underlying}: cooling down until {cooldown_until}, skipping")
            return None

        if self.in_blackout(underlying, now):
            logger.debug(f"{underlying}: inside blackout window, skipping")
            return None

        if target.within_band:
            logger.debug(
                f"{underlying}: delta {target.net_delta:.3f} within +/-{target.band}, no hedge"
            )
            return None

        cfg = self.config.for_underlying(underlying)
        if cfg is None:
            logger.warning(f"{underlying}: no hedge instrument configured, cannot hedge")
            return None

        quantity = self.hedge_quantity(underlying, target.net_delta)
        if quantity == 0 or abs(quantity) < self.config.min_adjustment_for(underlying):
            logger.debug(
                f"{underlying}: hedge size {quantity} below minimum adjustment "
                f"{self.config.min_adjustment_for(underlying)}, no hedge"
            )
            return None

        intent = OrderIntent(
            id=self._id_factory(),
            underlying=underlying,
            instrument_id=cfg.hedge_instrument_id,
            quantity=quantity,
            created_at=now,
            updated_at=now,
        )
        self._active[underlying] = intent

        logger.info(
            f"{underlying}: delta {target.net_delta:.3f} outside +/-{target.band}, "
            f"hedging {intent.side.value} {abs(quantity)} of {cfg.hedge_instrument_id}"
        )
        return intent

    def resolve(self, intent: OrderIntent, now: Optional[datetime] = None) -> None:
        """Release the underlying's slot once its intent is terminal."""
        underlying = intent.underlying
        active = self._active.get(underlying)
        if active is None or active.id != intent.id or not intent.is_terminal:
            return

        del self._active[underlying]
        if self.config.cooldown_seconds > 0:
            start = now or intent.updated_at
            self._cooldown_until[underlying] = start + timedelta(
                seconds=self.config.cooldown_seconds
            )
