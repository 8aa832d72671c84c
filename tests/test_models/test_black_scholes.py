"""
Unit tests for Black-Scholes delta.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from volatility_hedging.core.types import OptionType
from volatility_hedging.models.black_scholes import (
    DAYS_PER_YEAR,
    BlackScholesModel,
    time_to_expiry,
)


def delta(S="100", K="100", T="1", r="0.05", sigma="0.2", option_type=OptionType.CALL):
    return BlackScholesModel.delta(
        S=Decimal(S),
        K=Decimal(K),
        T=Decimal(T),
        r=Decimal(r),
        sigma=Decimal(sigma),
        option_type=option_type,
    )


@pytest.mark.unit
class TestBlackScholesDelta:
    """Tests for Black-Scholes delta."""

    def test_atm_call_delta(self):
        """d1 = (r + sigma^2/2) / sigma = 0.35 for an ATM one-year call."""
        assert float(delta()) == pytest.approx(0.63683, abs=1e-4)

    def test_put_call_parity(self):
        """Put delta equals call delta minus one."""
        call = delta(option_type=OptionType.CALL)
        put = delta(option_type=OptionType.PUT)
        assert float(put) == pytest.approx(float(call) - 1.0, abs=1e-12)

    def test_delta_bounds(self):
        for spot in ["50", "90", "100", "110", "200"]:
            assert Decimal("0") <= delta(S=spot) <= Decimal("1")
            assert Decimal("-1") <= delta(S=spot, option_type=OptionType.PUT) <= Decimal("0")

    def test_deep_itm_call_near_one(self):
        assert delta(S="200", T="0.1") > Decimal("0.99")

    def test_returns_decimal(self):
        assert isinstance(delta(), Decimal)

    def test_non_positive_spot_rejected(self):
        with pytest.raises(ValueError):
            delta(S="0")
        with pytest.raises(ValueError):
            delta(K="-1")


@pytest.mark.unit
class TestExpiredDelta:
    """Tests for the deterministic delta at and after expiration."""

    @pytest.mark.parametrize(
        "spot,option_type,expected",
        [
            ("110", OptionType.CALL, "1"),
            ("90", OptionType.CALL, "0"),
            ("100", OptionType.CALL, "0"),
            ("90", OptionType.PUT, "-1"),
            ("110", OptionType.PUT, "0"),
            ("100", OptionType.PUT, "0"),
        ],
    )
    def test_expired(self, spot, option_type, expected):
        assert delta(S=spot, T="0", option_type=option_type) == Decimal(expected)
        assert delta(S=spot, T="-0.01", option_type=option_type) == Decimal(expected)

    def test_zero_volatility_uses_expired_policy(self):
        assert delta(S="110", sigma="0") == Decimal("1")
        assert delta(S="110", sigma="0", option_type=OptionType.PUT) == Decimal("0")


@pytest.mark.unit
class TestTimeToExpiry:
    def test_calendar_day_basis(self):
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        expiration = now + timedelta(days=DAYS_PER_YEAR)
        assert time_to_expiry(expiration, now) == pytest.approx(1.0)

    def test_negative_after_expiration(self):
        now = datetime(2025, 6, 20, 21, 0, tzinfo=timezone.utc)
        assert time_to_expiry(now - timedelta(hours=1), now) < 0
