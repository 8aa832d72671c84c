"""
Expiration calendar.

Resolves the instant a contract expires: the listed expiration date combined
with a cutoff time looked up by product root, then by asset class, in the
exchange timezone. Also computes front-month futures expirations for products
with a known listing rule.
"""

from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

import pandas as pd
from pandas.tseries.holiday import (
    AbstractHolidayCalendar,
    GoodFriday,
    Holiday,
    USLaborDay,
    USMartinLutherKingJr,
    USMemorialDay,
    USPresidentsDay,
    USThanksgivingDay,
    nearest_workday,
)
from pandas.tseries.offsets import CustomBusinessDay

from volatility_hedging.core.config import CalendarConfig
from volatility_hedging.core.types import AssetClass, ContractMetadata
from volatility_hedging.utils.logging import get_logger

logger = get_logger(__name__)

QUARTER_MONTHS = (3, 6, 9, 12)


class ExchangeHolidayCalendar(AbstractHolidayCalendar):
    """NYSE-style full-day closures."""

    rules = [
        Holiday("New Year's Day", month=1, day=1, observance=nearest_workday),
        USMartinLutherKingJr,
        USPresidentsDay,
        GoodFriday,
        USMemorialDay,
        Holiday(
            "Juneteenth", month=6, day=19, start_date="2022-01-01", observance=nearest_workday
        ),
        Holiday("Independence Day", month=7, day=4, observance=nearest_workday),
        USLaborDay,
        USThanksgivingDay,
        Holiday("Christmas Day", month=12, day=25, observance=nearest_workday),
    ]


class ExpirationCalendar:
    """
    Contract expiration resolution.

    Example:
        >>> calendar = ExpirationCalendar()
        >>> calendar.front_month_expiration("ES", as_of)
        datetime(2025, 6, 20, 16, 0, tzinfo=ZoneInfo("America/New_York"))
    """

    def __init__(self, config: Optional[CalendarConfig] = None) -> None:
        self.config = config or CalendarConfig()
        self.tz = ZoneInfo(self.config.timezone)
        self._holiday_calendar = ExchangeHolidayCalendar()
        self._business_day = CustomBusinessDay(calendar=self._holiday_calendar)
        self._holidays: dict[int, frozenset[date]] = {}

    def is_holiday(self, day: date) -> bool:
        if day.year not in self._holidays:
            observed = self._holiday_calendar.holidays(
                start=pd.Timestamp(day.year, 1, 1), end=pd.Timestamp(day.year, 12, 31)
            )
            self._holidays[day.year] = frozenset(ts.date() for ts in observed)
        return day in self._holidays[day.year]

    def is_business_day(self, day: date) -> bool:
        return day.weekday() < 5 and not self.is_holiday(day)

    def cutoff_for(self, metadata: ContractMetadata) -> time:
        """Cutoff time by product root, falling back to the asset class."""
        if metadata.product and metadata.product in self.config.product_cutoffs:
            return self.config.product_cutoffs[metadata.product]
        if metadata.asset_class.value in self.config.asset_class_cutoffs:
            return self.config.asset_class_cutoffs[metadata.asset_class.value]
        raise ValueError(
            f"No expiration cutoff configured for {metadata.asset_class.value} "
            f"contract {metadata.contract_id}"
        )

    def expiration_instant(
        self, metadata: ContractMetadata, as_of: Optional[datetime] = None
    ) -> Optional[datetime]:
        """
        Resolve the expiration instant of a contract.

        Args:
            metadata: Contract description
            as_of: Reference time for front-month resolution of futures listed
                without an expiration date

        Returns:
            Timezone-aware expiration instant, or None for stock

        Raises:
            ValueError: If the contract expires but no expiration can be resolved
        """
        if metadata.asset_class == AssetClass.STOCK:
            return None

        if metadata.expiration_date is None:
            if metadata.asset_class == AssetClass.FUTURE and metadata.product and as_of is not None:
                return self.front_month_expiration(metadata.product, as_of)
            raise ValueError(f"Contract {metadata.contract_id} has no expiration date")

        listed = metadata.expiration_date
        if listed.tzinfo is not None:
            listed = listed.astimezone(self.tz)
        return datetime.combine(listed.date(), self.cutoff_for(metadata), tzinfo=self.tz)

    def third_friday(self, year: int, month: int) -> date:
        """Third Friday of a month, moved to Thursday when it is a holiday."""
        first = date(year, month, 1)
        first_friday = first + timedelta(days=(4 - first.weekday()) % 7)
        third = first_friday + timedelta(days=14)
        if self.is_holiday(third):
            third -= timedelta(days=1)
        return third

    def last_business_day(self, year: int, month: int) -> date:
        month_end = pd.Timestamp(year, month, 1) + pd.offsets.MonthEnd(0)
        return self._business_day.rollback(month_end).date()

    def front_month_expiration(self, product: str, as_of: datetime) -> datetime:
        """
        Next quarterly expiration at or after `as_of`.

        Supported products:
            ES: third Friday of the quarter month
            ZN: seven business days before the last business day of the
                quarter month

        Raises:
            ValueError: If the product has no listing rule
        """
        product = product.upper()
        if product == "ES":
            rule = self._es_expiration_date
        elif product == "ZN":
            rule = self._zn_expiration_date
        else:
            raise ValueError(f"Unsupported product: {product}")

        cutoff = self.config.product_cutoffs.get(product, time(16, 0))
        local = as_of.astimezone(self.tz) if as_of.tzinfo is not None else as_of.replace(tzinfo=self.tz)
        year = local.year
        month = next(m for m in QUARTER_MONTHS if m >= local.month)

        while True:
            expiration = datetime.combine(rule(year, month), cutoff, tzinfo=self.tz)
            if local <= expiration:
                return expiration
            month += 3
            if month > 12:
                month -= 12
                year += 1

    def _es_expiration_date(self, year: int, month: int) -> date:
        return self.third_friday(year, month)

    def _zn_expiration_date(self, year: int, month: int) -> date:
        last = pd.Timestamp(self.last_business_day(year, month))
        return (last - 7 * self._business_day).date()
