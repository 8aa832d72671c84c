"""
Rolling store of log-returns and realized variance per underlying.

Samples are append-only and deduplicated by timestamp. Windows never
interpolate: a window that cannot be filled raises InsufficientHistory.
"""

import math
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

from volatility_hedging.core.errors import InsufficientHistory
from volatility_hedging.core.types import RealizedVarianceWindow, ReturnSample
from volatility_hedging.utils.logging import get_logger

logger = get_logger(__name__)

DAILY = 1
WEEKLY = 5
MONTHLY = 22

# Yang-Zhang weighting for a single bar
YANG_ZHANG_K = 0.34 / (1.34 + 79.0 / 77.0)


def yang_zhang_variance(
    previous_close: float, open_: float, high: float, low: float, close: float
) -> float:
    """
    Single-bar Yang-Zhang realized variance.

    Combines the overnight jump, the open-to-close move and the
    Rogers-Satchell range term. Never negative.
    """
    if min(previous_close, open_, high, low, close) <= 0:
        raise ValueError("OHLC prices must be positive")
    if high < low:
        raise ValueError("High must be greater than or equal to low")

    overnight = math.log(open_ / previous_close)
    open_to_close = math.log(close / open_)
    log_high_open = math.log(high / open_)
    log_low_open = math.log(low / open_)
    rogers_satchell = log_high_open * (log_high_open - open_to_close) + log_low_open * (
        log_low_open - open_to_close
    )
    variance = (
        overnight**2
        + YANG_ZHANG_K * open_to_close**2
        + (1.0 - YANG_ZHANG_K) * rogers_satchell
    )
    return max(variance, 0.0)


@dataclass(frozen=True)
class ReturnSeriesSnapshot:
    """Immutable copy of a store, safe to hand to a worker thread."""

    underlying: str
    timestamps: tuple[datetime, ...]
    returns: np.ndarray
    variances: np.ndarray

    def __len__(self) -> int:
        return len(self.timestamps)

    @property
    def last_timestamp(self) -> Optional[datetime]:
        return self.timestamps[-1] if self.timestamps else None


class ReturnSeriesStore:
    """
    Rolling history of return samples for one underlying.

    Example:
        >>> store = ReturnSeriesStore("ES")
        >>> store.append(ReturnSample(timestamp=ts, log_return=0.01))
        True
        >>> store.windowed_variance(WEEKLY)
    """

    def __init__(self, underlying: str, max_samples: int = 5000) -> None:
        """
        Initialize an empty store.

        Args:
            underlying: Underlying symbol
            max_samples: Oldest samples beyond this count are dropped
        """
        if max_samples <= 0:
            raise ValueError("max_samples must be positive")
        self.underlying = underlying.upper()
        self.max_samples = max_samples
        self._samples: deque[ReturnSample] = deque(maxlen=max_samples)
        self._timestamps: set[datetime] = set()
        self._last_price: Optional[float] = None
        self._last_price_at: Optional[datetime] = None

    def __len__(self) -> int:
        return len(self._samples)

    @property
    def last_timestamp(self) -> Optional[datetime]:
        return self._samples[-1].timestamp if self._samples else None

    @property
    def last_price(self) -> Optional[float]:
        return self._last_price

    def append(self, sample: ReturnSample) -> bool:
        """
        Append a sample.

        Args:
            sample: Return observation

        Returns:
            False if a sample with the same timestamp already exists

        Raises:
            ValueError: If the sample is older than the latest stored sample
        """
        if sample.timestamp in self._timestamps:
            logger.debug(f"{self.underlying}: duplicate sample at {sample.timestamp} ignored")
            return False

        last = self.last_timestamp
        if last is not None and sample.timestamp < last:
            raise ValueError(
                f"{self.underlying}: sample at {sample.timestamp} is older than {last}"
            )

        if len(self._samples) == self.max_samples:
            self._timestamps.discard(self._samples[0].timestamp)
        self._samples.append(sample)
        self._timestamps.add(sample.timestamp)
        return True

    def append_price(self, timestamp: datetime, price: float) -> Optional[ReturnSample]:
        """
        Record a price and append the log-return from the previous price.

        Returns:
            The appended sample, or None for the first price or a duplicate
        """
        if price <= 0:
            raise ValueError(f"Price must be positive, got {price}")

        previous, previous_at = self._last_price, self._last_price_at
        if previous_at is not None and timestamp <= previous_at:
            return None
        self._last_price = price
        self._last_price_at = timestamp

        if previous is None:
            return None

        sample = ReturnSample(timestamp=timestamp, log_return=math.log(price / previous))
        return sample if self.append(sample) else None

    def append_bar(
        self,
        timestamp: datetime,
        open_: float,
        high: float,
        low: float,
        close: float,
    ) -> Optional[ReturnSample]:
        """
        Append a close-to-close return with Yang-Zhang realized variance.

        Returns:
            The appended sample, or None for the first bar
        """
        previous = self._last_price
        self._last_price = close
        self._last_price_at = timestamp
        if previous is None:
            return None

        sample = ReturnSample(
            timestamp=timestamp,
            log_return=math.log(close / previous),
            realized_variance=yang_zhang_variance(previous, open_, high, low, close),
        )
        return sample if self.append(sample) else None

    def windowed_variance(self, horizon: int) -> RealizedVarianceWindow:
        """
        Mean realized variance over the last `horizon` samples.

        Raises:
            InsufficientHistory: If fewer than `horizon` samples are stored
        """
        if horizon <= 0:
            raise ValueError("Horizon must be positive")
        if len(self._samples) < horizon:
            raise InsufficientHistory(
                f"{self.underlying}: {horizon}-period window needs {horizon} samples, "
                f"have {len(self._samples)}",
                required=horizon,
                available=len(self._samples),
                context={"underlying": self.underlying},
            )

        window = list(self._samples)[-horizon:]
        variance = float(np.mean([s.realized_variance for s in window]))
        return RealizedVarianceWindow(
            horizon=horizon,
            variance=max(variance, 0.0),
            sample_count=horizon,
            end=window[-1].timestamp,
        )

    def snapshot(self) -> ReturnSeriesSnapshot:
        """Copy the current history into immutable arrays."""
        samples = list(self._samples)
        returns = np.array([s.log_return for s in samples], dtype=float)
        variances = np.array([s.realized_variance for s in samples], dtype=float)
        returns.setflags(write=False)
        variances.setflags(write=False)
        return ReturnSeriesSnapshot(
            underlying=self.underlying,
            timestamps=tuple(s.timestamp for s in samples),
            returns=returns,
            variances=variances,
        )

    def find_gaps(self, max_gap: timedelta) -> list[tuple[datetime, datetime]]:
        """
        Find consecutive samples separated by more than `max_gap`.

        Returns:
            List of (previous_timestamp, next_timestamp) pairs
        """
        samples = list(self._samples)
        return [
            (a.timestamp, b.timestamp)
            for a, b in zip(samples, samples[1:])
            if b.timestamp - a.timestamp > max_gap
        ]

    @classmethod
    def from_ohlc_frame(
        cls, underlying: str, frame: pd.DataFrame, max_samples: int = 5000
    ) -> "ReturnSeriesStore":
        """
        Build a store from an OHLC DataFrame.

        Column names are matched case-insensitively; `price` is accepted as
        the close. Rows are sorted by date.
        """
        columns = {c.lower().strip(): c for c in frame.columns}
        if "close" not in columns and "price" in columns:
            columns["close"] = columns["price"]
        missing = {"date", "open", "high", "low", "close"} - set(columns)
        if missing:
            raise ValueError(f"OHLC data is missing columns: {sorted(missing)}")

        data = pd.DataFrame(
            {
                "date": pd.to_datetime(frame[columns["date"]]),
                "open": pd.to_numeric(frame[columns["open"]]),
                "high": pd.to_numeric(frame[columns["high"]]),
                "low": pd.to_numeric(frame[columns["low"]]),
                "close": pd.to_numeric(frame[columns["close"]]),
            }
        ).dropna()
        data = data.sort_values("date").drop_duplicates(subset="date", keep="first")

        store = cls(underlying, max_samples=max_samples)
        for row in data.itertuples(index=False):
            store.append_bar(
                row.date.to_pydatetime(),
                float(row.open),
                float(row.high),
                float(row.low),
                float(row.close),
            )

        if len(store) == 0:
            raise ValueError("Expected at least 2 bars to compute returns")

        logger.info(f"Loaded {len(store)} returns for {store.underlying}")
        return store

    @classmethod
    def from_ohlc_csv(
        cls, underlying: str, path: Path, max_samples: int = 5000
    ) -> "ReturnSeriesStore":
        """
        Load `Date,Open,High,Low,Close[,Volume]` history from a CSV file.

        Raises:
            FileNotFoundError: If the file doesn't exist
        """
        if not path.exists():
            raise FileNotFoundError(f"OHLC file not found: {path}")
        frame = pd.read_csv(path)
        frame.columns = [str(c).strip().strip('"') for c in frame.columns]
        return cls.from_ohlc_frame(underlying, frame, max_samples=max_samples)
