"""
HAR-RV volatility forecasting.

Heterogeneous Autoregressive model of Realized Variance (Corsi, 2009):

    RV_{t+1} = b0 + bD*RV_d + bW*RV_w + bM*RV_m [+ bL*Leverage_t]

where RV_d, RV_w and RV_m are mean realized variances over the daily, weekly
and monthly lookbacks and Leverage_t = 1(r_t < 0)*|r_t|. Each term can be
switched off. With `use_log_variance` the regression runs on log variances
and forecasts are back-transformed with the log-normal bias correction
exp(y + s^2/2).
"""

import math
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional

import numpy as np
import pandas as pd

from volatility_hedging.core.config import ForecasterConfig
from volatility_hedging.core.errors import InsufficientHistory, NumericalInstability
from volatility_hedging.core.types import FitQuality, ForecastResult, HarCoefficients
from volatility_hedging.data.returns import ReturnSeriesSnapshot
from volatility_hedging.utils.logging import get_logger

logger = get_logger(__name__)


class VolatilityForecaster(ABC):
    """Abstract base class for volatility forecasting models."""

    @abstractmethod
    def forecast(
        self,
        snapshot: ReturnSeriesSnapshot,
        horizon: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ForecastResult:
        """
        Forecast volatility from a return history.

        Args:
            snapshot: Immutable return history
            horizon: Forecast horizon (periods)
            now: Forecast timestamp

        Returns:
            Published forecast snapshot
        """
        pass


class HarRvForecaster(VolatilityForecaster):
    """
    HAR-RV regression forecaster.

    Coefficients are estimated by OLS over a trailing window and reused until
    `reestimation_interval` has elapsed. A fit on an ill-conditioned design
    matrix is rejected and the previous coefficients stay in force.
    """

    def __init__(self, config: ForecasterConfig, underlying: str = "") -> None:
        """
        Initialize the forecaster.

        Args:
            config: Model terms and estimation schedule
            underlying: Symbol the forecasts are published for
        """
        self.config = config
        self.underlying = underlying.upper()

        self._coefficients: Optional[np.ndarray] = None
        self._residual_variance: float = 0.0
        self._fit_quality: Optional[FitQuality] = None
        self._last_attempt: Optional[datetime] = None

        if config.estimation_window < self.min_fit_samples:
            raise ValueError(
                f"estimation_window {config.estimation_window} is shorter than the "
                f"{self.min_fit_samples} samples a fit needs"
            )
        logger.debug(
            f"Initialized HarRvForecaster for {self.underlying or '?'} with windows={self.windows}, "
            f"leverage={config.include_leverage_effect}, log={config.use_log_variance}"
        )

    @property
    def windows(self) -> list[int]:
        """Lookbacks of the enabled realized variance terms, in column order."""
        cfg = self.config
        windows = []
        if cfg.include_daily:
            windows.append(cfg.daily_window)
        if cfg.include_weekly:
            windows.append(cfg.weekly_window)
        if cfg.include_monthly:
            windows.append(cfg.monthly_window)
        return windows

    @property
    def feature_count(self) -> int:
        return 1 + len(self.windows) + (1 if self.config.include_leverage_effect else 0)

    @property
    def longest_window(self) -> int:
        return max(self.windows)

    @property
    def min_fit_samples(self) -> int:
        """Samples needed for at least one regression row per coefficient."""
        return self.longest_window + self.feature_count

    @property
    def is_fitted(self) -> bool:
        return self._coefficients is not None

    @property
    def coefficients(self) -> Optional[HarCoefficients]:
        if self._coefficients is None:
            return None
        return self._to_coefficients(self._coefficients)

    @property
    def fit_quality(self) -> Optional[FitQuality]:
        return self._fit_quality

    @property
    def residual_variance(self) -> float:
        return self._residual_variance

    def needs_reestimation(self, now: datetime) -> bool:
        """True before the first fit and once the re-estimation interval has elapsed."""
        if self._coefficients is None or self._last_attempt is None:
            return True
        return now - self._last_attempt >= timedelta(seconds=self.config.reestimation_interval)

    def build_design(
        self, snapshot: ReturnSeriesSnapshot
    ) -> tuple[np.ndarray, np.ndarray]:
        """
        Build the regression design matrix and targets.

        Row t holds the features known at the end of period t; its target is
        the realized variance of period t+1.

        Returns:
            Tuple of (X, y)
        """
        variances = np.asarray(snapshot.variances[-self.config.estimation_window :], dtype=float)
        returns = np.asarray(snapshot.returns[-self.config.estimation_window :], dtype=float)
        n = len(variances)
        start = self.longest_window - 1

        series = pd.Series(variances)
        columns = [np.ones(n)]
        for window in self.windows:
            columns.append(self._transform(series.rolling(window).mean().to_numpy()))
        if self.config.include_leverage_effect:
            columns.append(np.where(returns < 0, -returns, 0.0))

        X = np.column_stack(columns)[start : n - 1]
        y = self._transform(variances[start + 1 :])
        return X, y

    def fit(self, snapshot: ReturnSeriesSnapshot, now: Optional[datetime] = None) -> FitQuality:
        """
        Estimate coefficients by OLS over the trailing estimation window.

        Args:
            snapshot: Return history
            now: Fit timestamp

        Returns:
            Fit diagnostics

        Raises:
            InsufficientHistory: If the history is shorter than `min_fit_samples`
            NumericalInstability: If the design matrix is ill-conditioned; the
                previous coefficients are kept
        """
        now = now or datetime.now(timezone.utc)
        available = min(len(snapshot), self.config.estimation_window)
        if available < self.min_fit_samples:
            raise InsufficientHistory(
                f"{self.underlying}: HAR-RV fit needs {self.min_fit_samples} samples, have {available}",
                required=self.min_fit_samples,
                available=available,
                context={"underlying": self.underlying},
            )

        self._last_attempt = now
        X, y = self.build_design(snapshot)

        condition_number = self._condition_number(X)
        rank = np.linalg.matrix_rank(X)
        if (
            not math.isfinite(condition_number)
            or condition_number > self.config.max_condition_number
            or rank < X.shape[1]
        ):
            logger.warning(
                f"{self.underlying}: HAR-RV design matrix ill-conditioned "
                f"(cond={condition_number:.3g}, rank={rank}/{X.shape[1]}); keeping previous coefficients"
            )
            raise NumericalInstability(
                f"{self.underlying}: design matrix is near-singular",
                condition_number=condition_number,
                context={"underlying": self.underlying, "rank": int(rank)},
            )

        beta = self._solve(X, y)
        residuals = y - X @ beta
        sse = float(residuals @ residuals)
        dof = len(y) - X.shape[1]
        residual_variance = sse / dof if dof > 0 else sse / len(y)
        if not math.isfinite(residual_variance) or residual_variance < 0:
            residual_variance = 0.0

        sst = float(((y - y.mean()) ** 2).sum())
        r_squared = 1.0 - sse / sst if sst > 0 else 0.0

        self._coefficients = beta
        self._residual_variance = residual_variance if self.config.use_log_variance else 0.0
        self._fit_quality = FitQuality(
            r_squared=r_squared,
            residual_variance=residual_variance,
            observations=len(y),
            condition_number=condition_number,
            fitted_at=now,
        )

        logger.debug(
            f"{self.underlying}: HAR-RV fitted on {len(y)} rows, beta={np.round(beta, 6).tolist()}, "
            f"R2={r_squared:.4f}"
        )
        return self._fit_quality

    def forecast(
        self,
        snapshot: ReturnSeriesSnapshot,
        horizon: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ForecastResult:
        """
        Forecast mean per-period variance over `horizon` periods.

        Re-estimates first when due; otherwise reuses the last coefficients.
        Multi-period horizons iterate the HAR recursion, feeding each
        predicted variance back into the lag averages.

        Raises:
            InsufficientHistory: If a lagged window cannot be computed
            NumericalInstability: If a due re-estimation was rejected
        """
        horizon = self.config.forecast_horizon if horizon is None else horizon
        now = now or datetime.now(timezone.utc)
        if horizon <= 0:
            raise ValueError("Forecast horizon must be positive")

        if len(snapshot) < self.longest_window:
            raise InsufficientHistory(
                f"{self.underlying}: forecast needs {self.longest_window} samples, have {len(snapshot)}",
                required=self.longest_window,
                available=len(snapshot),
                context={"underlying": self.underlying},
            )

        if self.needs_reestimation(now):
            self.fit(snapshot, now)

        variance = self._predict(snapshot, horizon)
        volatility = math.sqrt(variance * self.config.periods_per_year)

        return ForecastResult(
            underlying=self.underlying or snapshot.underlying,
            generated_at=now,
            horizon=horizon,
            predicted_variance=variance,
            predicted_volatility=volatility,
            coefficients=self._to_coefficients(self._coefficients),
            fit_quality=self._fit_quality,
        )

    def _predict(self, snapshot: ReturnSeriesSnapshot, horizon: int) -> float:
        """Mean predicted variance over the horizon using current coefficients."""
        history = [float(v) for v in snapshot.variances[-self.longest_window :]]
        leverage_return = float(snapshot.returns[-1])
        floor = self.config.min_variance

        total = 0.0
        for step in range(horizon):
            # Future returns are unknown; leverage only informs the first step
            features = self._feature_row(history, leverage_return if step == 0 else 0.0)
            fitted = float(features @ self._coefficients)
            if self.config.use_log_variance:
                predicted = math.exp(min(fitted + 0.5 * self._residual_variance, 700.0))
            else:
                predicted = fitted
            if not math.isfinite(predicted):
                raise NumericalInstability(
                    f"{self.underlying}: non-finite variance forecast",
                    context={"underlying": self.underlying, "step": step},
                )
            predicted = max(predicted, floor)
            total += predicted
            history.append(predicted)

        return max(total / horizon, 0.0)

    def _feature_row(self, history: list[float], last_return: float) -> np.ndarray:
        row = [1.0]
        for window in self.windows:
            mean = sum(history[-window:]) / window
            row.append(self._transform_scalar(mean))
        if self.config.include_leverage_effect:
            row.append(-last_return if last_return < 0 else 0.0)
        return np.array(row)

    def _transform(self, values: np.ndarray) -> np.ndarray:
        if not self.config.use_log_variance:
            return values
        return np.log(np.maximum(values, self.config.min_variance))

    def _transform_scalar(self, value: float) -> float:
        if not self.config.use_log_variance:
            return value
        return math.log(max(value, self.config.min_variance))

    def _solve(self, X: np.ndarray, y: np.ndarray) -> np.ndarray:
        """OLS, or ridge on non-intercept terms when a penalty is configured."""
        penalty = self.config.ridge_penalty
        if penalty <= 0:
            beta, *_ = np.linalg.lstsq(X, y, rcond=None)
            return beta

        xtx = X.T @ X
        ridge = np.eye(X.shape[1]) * penalty * len(y)
        ridge[0, 0] = 0.0
        return np.linalg.solve(xtx + ridge, X.T @ y)

    @staticmethod
    def _condition_number(X: np.ndarray) -> float:
        """Condition number of the column-equilibrated design matrix."""
        norms = np.linalg.norm(X, axis=0)
        if np.any(norms == 0) or not np.all(np.isfinite(norms)):
            return math.inf
        return float(np.linalg.cond(X / norms))

    def _to_coefficients(self, beta: np.ndarray) -> HarCoefficients:
        cfg = self.config
        values = iter(float(b) for b in beta)
        return HarCoefficients(
            intercept=next(values),
            daily=next(values) if cfg.include_daily else None,
            weekly=next(values) if cfg.include_weekly else None,
            monthly=next(values) if cfg.include_monthly else None,
            leverage=next(values) if cfg.include_leverage_effect else None,
        )


class ForecastBoard:
    """
    Latest published forecast per underlying.

    Single writer, many readers: publishing swaps the whole mapping, so a
    reader holding the previous mapping or result is never affected.
    """

    def __init__(self) -> None:
        self._results: Mapping[str, ForecastResult] = {}

    def publish(self, result: ForecastResult) -> None:
        updated = dict(self._results)
        updated[result.underlying] = result
        self._results = updated

    def latest(self, underlying: str) -> Optional[ForecastResult]:
        return self._results.get(underlying.upper())

    def snapshot(self) -> Mapping[str, ForecastResult]:
        return self._results

    def __contains__(self, underlying: str) -> bool:
        return underlying.upper() in self._results


def create_forecaster(config: ForecasterConfig, underlying: str) -> HarRvForecaster:
    """Construct the forecaster for an underlying from configuration."""
    return HarRvForecaster(config, underlying=underlying)
