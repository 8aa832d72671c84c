"""
Net delta per underlying.

Net delta = sum of quantity * multiplier * per-unit delta over the live
positions of an underlying. Options use Black-Scholes with the forecast
volatility; linear instruments contribute one delta per unit.
"""

from datetime import datetime
from decimal import Decimal
from typing import Callable, Mapping, Optional, Sequence

from volatility_hedging.core.errors import HedgingError, NoForecastAvailable
from volatility_hedging.core.types import ForecastResult, HedgeTarget, Position
from volatility_hedging.models.black_scholes import BlackScholesModel, time_to_expiry
from volatility_hedging.utils.logging import get_logger

logger = get_logger(__name__)


class DeltaCalculator:
    """
    Aggregate position deltas against a volatility forecast.

    Example:
        >>> calculator = DeltaCalculator(risk_free_rate=Decimal("0.05"))
        >>> target = calculator.compute("ES", positions, Decimal("5000"), forecast, now, band)
        >>> target.within_band
    """

    def __init__(self, risk_free_rate: Decimal = Decimal("0.05")) -> None:
        self.risk_free_rate = risk_free_rate

    def unit_delta(
        self, position: Position, spot: Decimal, volatility: Decimal, now: datetime
    ) -> Decimal:
        """Delta of one unit of the position's contract."""
        if not position.is_option:
            return Decimal("1")

        T = time_to_expiry(position.expiration, now)
        return BlackScholesModel.delta(
            S=spot,
            K=position.strike,
            T=Decimal(str(T)),
            r=self.risk_free_rate,
            sigma=volatility,
            option_type=position.option_type,
        )

    def compute(
        self,
        underlying: str,
        positions: Sequence[Position],
        spot: Decimal,
        forecast: Optional[ForecastResult],
        now: datetime,
        band: Decimal,
    ) -> HedgeTarget:
        """
        Compute the net delta of an underlying.

        Args:
            underlying: Underlying symbol
            positions: Live positions of the underlying
            spot: Current underlying price
            forecast: Latest published forecast
            now: Valuation time
            band: Tolerance band carried on the target

        Returns:
            Hedge target for the decision engine

        Raises:
            NoForecastAvailable: If no forecast has been published
        """
        underlying = underlying.upper()
        if forecast is None:
            raise NoForecastAvailable(
                f"{underlying}: no volatility forecast published", underlying=underlying
            )

        volatility = Decimal(str(forecast.predicted_volatility))
        net_delta = Decimal("0")
        for position in positions:
            delta = self.unit_delta(position, Decimal(spot), volatility, now)
            net_delta += position.quantity * position.multiplier * delta

        logger.debug(
            f"{underlying}: net delta {net_delta:.4f} over {len(positions)} positions "
            f"(spot={spot}, vol={forecast.predicted_volatility:.4f})"
        )

        return HedgeTarget(underlying=underlying, net_delta=net_delta, band=band, computed_at=now)

    def compute_all(
        self,
        positions: Mapping[str, Sequence[Position]],
        spots: Mapping[str, Decimal],
        forecasts: Mapping[str, ForecastResult],
        now: datetime,
        band_for: Callable[[str], Decimal],
    ) -> tuple[dict[str, HedgeTarget], dict[str, Exception]]:
        """
        Compute targets for several underlyings.

        A failure on one underlying is recorded and never stops the others.

        Returns:
            Tuple of (targets, failures) keyed by underlying
        """
        targets: dict[str, HedgeTarget] = {}
        failures: dict[str, Exception] = {}

        for underlying, underlying_positions in positions.items():
            try:
                spot = spots.get(underlying)
                if spot is None:
                    raise ValueError(f"{underlying}: no spot price")
                targets[underlying] = self.compute(
                    underlying,
                    underlying_positions,
                    spot,
                    forecasts.get(underlying),
                    now,
                    band_for(underlying),
                )
            except (HedgingError, ValueError, ArithmeticError) as e:
                logger.warning(f"{underlying}: delta computation failed: {e}")
                failures[underlying] = e

        return targets, failures
