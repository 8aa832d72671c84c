"""
Black-Scholes delta for European options.

Implements the Black-Scholes-Merton delta with a deterministic policy at and
after expiration.
"""

import math
from datetime import datetime
from decimal import Decimal

from scipy.stats import norm

from volatility_hedging.core.types import OptionType
from volatility_hedging.utils.logging import get_logger

logger = get_logger(__name__)

# Calendar-day year basis for time to expiry
DAYS_PER_YEAR = 365.25
SECONDS_PER_YEAR = DAYS_PER_YEAR * 86400.0


def time_to_expiry(expiration: datetime, now: datetime) -> float:
    """
    Years from `now` to `expiration`, negative once expired.

    Both datetimes must be timezone-aware.
    """
    return (expiration - now).total_seconds() / SECONDS_PER_YEAR


class BlackScholesModel:
    """
    Black-Scholes option model.

    Only the delta is needed for hedging.
    """

    @staticmethod
    def _d1(
        S: float,
        K: float,
        T: float,
        r: float,
        sigma: float,
    ) -> float:
        """
        Calculate d1 parameter.

        Args:
            S: Spot price
            K: Strike price
            T: Time to expiration (years)
            r: Risk-free rate
            sigma: Volatility

        Returns:
            d1 value
        """
        if T <= 0 or sigma <= 0:
            return 0.0

        return (math.log(S / K) + (r + 0.5 * sigma**2) * T) / (sigma * math.sqrt(T))

    @staticmethod
    def expired_delta(S: float, K: float, option_type: OptionType) -> Decimal:
        """Delta at expiration: +1 ITM call, -1 ITM put, 0 OTM or at the money."""
        if option_type == OptionType.CALL:
            return Decimal("1") if S > K else Decimal("0")
        return Decimal("-1") if S < K else Decimal("0")

    @classmethod
    def delta(
        cls,
        S: Decimal,
        K: Decimal,
        T: Decimal,
        r: Decimal,
        sigma: Decimal,
        option_type: OptionType,
    ) -> Decimal:
        """
        Calculate option delta.

        Args:
            S: Spot price
            K: Strike price
            T: Time to expiration (years)
            r: Risk-free rate
            sigma: Volatility (annualized)
            option_type: CALL or PUT

        Returns:
            Delta per unit of underlying

        Example:
            >>> BlackScholesModel.delta(
            ...     S=Decimal("100"),
            ...     K=Decimal("100"),
            ...     T=Decimal("1"),
            ...     r=Decimal("0.05"),
            ...     sigma=Decimal("0.2"),
            ...     option_type=OptionType.CALL
            ... )
        """
        S_f = float(S)
        K_f = float(K)
        T_f = float(T)
        r_f = float(r)
        sigma_f = float(sigma)

        if S_f <= 0 or K_f <= 0:
            raise ValueError(f"Spot and strike must be positive (S={S_f}, K={K_f})")

        if T_f <= 0:
            return cls.expired_delta(S_f, K_f, option_type)

        if sigma_f <= 0:
            logger.warning("Volatility <= 0, using expiration delta")
            return cls.expired_delta(S_f, K_f, option_type)

        d1 = cls._d1(S_f, K_f, T_f, r_f, sigma_f)
        if option_type == OptionType.CALL:
            delta = norm.cdf(d1)
        else:
            delta = norm.cdf(d1) - 1

        return Decimal(str(float(delta)))
