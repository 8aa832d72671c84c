"""
Shared pytest fixtures for the test suite.

Provides reusable test data and configurations.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Callable

import numpy as np
import pandas as pd
import pytest

from volatility_hedging.core.config import (
    Config,
    EngineConfig,
    ForecasterConfig,
    HedgeConfig,
    LoggingConfig,
    OrderConfig,
    UnderlyingHedgeConfig,
)
from volatility_hedging.core.types import (
    AssetClass,
    ContractMetadata,
    FitQuality,
    ForecastResult,
    HarCoefficients,
    OptionType,
    ReturnSample,
)
from volatility_hedging.data.returns import ReturnSeriesStore
from volatility_hedging.hedging.positions import InMemoryContractMetadataProvider

ES_FUTURE_ID = 1001
ES_CALL_ID = 2001
ES_PUT_ID = 2002
ZN_OPTION_ID = 3001
SPY_STOCK_ID = 4001


@pytest.fixture
def now() -> datetime:
    """Monday 2025-06-02 10:00 New York time."""
    return datetime(2025, 6, 2, 14, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def simulate_returns() -> Callable[..., np.ndarray]:
    """GARCH(1,1) return generator with volatility clustering."""

    def _simulate(n: int, seed: int = 42, omega: float = 2e-6) -> np.ndarray:
        rng = np.random.default_rng(seed)
        alpha, beta = 0.08, 0.9
        variance = omega / (1 - alpha - beta)
        returns = np.empty(n)
        for i in range(n):
            returns[i] = rng.normal(0.0, np.sqrt(variance))
            variance = omega + alpha * returns[i] ** 2 + beta * variance
        return returns

    return _simulate


@pytest.fixture
def make_store(simulate_returns) -> Callable[..., ReturnSeriesStore]:
    """Build a store of daily returns starting 2023-01-02."""

    def _make(
        n: int = 300,
        seed: int = 42,
        underlying: str = "ES",
        start: datetime = datetime(2023, 1, 2, tzinfo=timezone.utc),
    ) -> ReturnSeriesStore:
        store = ReturnSeriesStore(underlying)
        for i, r in enumerate(simulate_returns(n, seed)):
            store.append(ReturnSample(timestamp=start + timedelta(days=i), log_return=float(r)))
        return store

    return _make


@pytest.fixture
def forecaster_config() -> ForecasterConfig:
    """Default HAR-RV configuration."""
    return ForecasterConfig()


@pytest.fixture
def hedge_config() -> HedgeConfig:
    """ES hedged with its front future, band 5, lot 1."""
    return HedgeConfig(
        account_id="DU1234567",
        band=Decimal("5"),
        lot_size=Decimal("1"),
        min_adjustment=Decimal("1"),
        underlyings={"ES": UnderlyingHedgeConfig(hedge_instrument_id=ES_FUTURE_ID)},
    )


@pytest.fixture
def default_config(hedge_config: HedgeConfig) -> Config:
    """Default configuration for testing."""
    return Config(
        forecaster=ForecasterConfig(estimation_window=120),
        hedging=hedge_config,
        orders=OrderConfig(
            order_timeout=5.0,
            max_retry_attempts=3,
            retry_base_delay=0.0,
            retry_max_delay=0.0,
            shutdown_timeout=0.2,
        ),
        engine=EngineConfig(forecast_interval=3600.0, resync_timeout=1.0),
        logging=LoggingConfig(
            level="WARNING",  # Reduce noise in tests
            format="json",
            console_output=False,
        ),
    )


@pytest.fixture
def es_expiration() -> datetime:
    return datetime(2025, 6, 20)


@pytest.fixture
def metadata_provider(es_expiration: datetime) -> InMemoryContractMetadataProvider:
    """ES future and options, a ZN option and a stock."""
    return InMemoryContractMetadataProvider(
        [
            ContractMetadata(
                contract_id=ES_FUTURE_ID,
                underlying="ES",
                asset_class=AssetClass.FUTURE,
                expiration_date=es_expiration,
                product="ES",
            ),
            ContractMetadata(
                contract_id=ES_CALL_ID,
                underlying="ES",
                asset_class=AssetClass.FUTURE_OPTION,
                strike=Decimal("5000"),
                expiration_date=es_expiration,
                option_type=OptionType.CALL,
                product="ES",
            ),
            ContractMetadata(
                contract_id=ES_PUT_ID,
                underlying="ES",
                asset_class=AssetClass.FUTURE_OPTION,
                strike=Decimal("4800"),
                expiration_date=es_expiration,
                option_type=OptionType.PUT,
                product="ES",
            ),
            ContractMetadata(
                contract_id=ZN_OPTION_ID,
                underlying="ZN",
                asset_class=AssetClass.FUTURE_OPTION,
                strike=Decimal("110"),
                expiration_date=datetime(2025, 6, 20),
                option_type=OptionType.PUT,
                product="ZN",
            ),
            ContractMetadata(
                contract_id=SPY_STOCK_ID,
                underlying="SPY",
                asset_class=AssetClass.STOCK,
            ),
        ]
    )


@pytest.fixture
def make_forecast() -> Callable[..., ForecastResult]:
    """Build a published forecast without fitting a model."""

    def _make(
        underlying: str = "ES",
        volatility: float = 0.20,
        generated_at: datetime = datetime(2025, 6, 2, tzinfo=timezone.utc),
    ) -> ForecastResult:
        variance = volatility**2 / 252
        return ForecastResult(
            underlying=underlying,
            generated_at=generated_at,
            horizon=1,
            predicted_variance=variance,
            predicted_volatility=volatility,
            coefficients=HarCoefficients(intercept=1e-6, daily=0.3, weekly=0.3, monthly=0.3),
            fit_quality=FitQuality(
                r_squared=0.4,
                residual_variance=1e-9,
                observations=100,
                condition_number=12.0,
                fitted_at=generated_at,
            ),
        )

    return _make


@pytest.fixture
def wait_until() -> Callable:
    """Poll a predicate on the event loop until it holds."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                return False
            await asyncio.sleep(0.005)
        return True

    return _wait


@pytest.fixture
def sample_ohlc_csv(tmp_path: Path, simulate_returns) -> Path:
    """OHLC history in the broker export format."""
    returns = simulate_returns(120, seed=7)
    close = 5000 * np.exp(np.cumsum(returns))
    open_ = np.concatenate([[5000.0], close[:-1]]) * (1 + 0.001)
    high = np.maximum(open_, close) * 1.004
    low = np.minimum(open_, close) * 0.996
    frame = pd.DataFrame(
        {
            "Date": pd.bdate_range("2024-01-02", periods=len(close)).strftime("%m/%d/%Y"),
            "Open": open_,
            "High": high,
            "Low": low,
            "Price": close,
            "Volume": 1000,
        }
    )
    path = tmp_path / "ES.csv"
    frame.to_csv(path, index=False)
    return path


@pytest.fixture
def temp_config_file(tmp_path: Path, default_config: Config) -> Path:
    """Create temporary config file for testing."""
    config_path = tmp_path / "test_config.yaml"
    default_config.to_yaml(config_path)
    return config_path


# Markers for test categorization
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow running tests")
