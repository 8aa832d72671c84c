"""
Command line interface.

Usage:
    volatility-hedging forecast --ohlc data/ES.csv --horizon 5
    volatility-hedging run --config config/default.yaml --duration 120
"""

import argparse
import asyncio
import signal
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional

import numpy as np

from volatility_hedging.core.config import Config, UnderlyingHedgeConfig, load_config
from volatility_hedging.core.errors import HedgingError
from volatility_hedging.core.types import AssetClass, ContractMetadata, OptionType, ReturnSample
from volatility_hedging.data.returns import ReturnSeriesStore
from volatility_hedging.execution.gateway import MockExecutionGateway, SessionMonitor
from volatility_hedging.hedging.alerts import Alert, AlertChannel
from volatility_hedging.hedging.calendar import ExpirationCalendar
from volatility_hedging.hedging.engine import HedgingEngine, build_engine
from volatility_hedging.hedging.messages import ExecutionReport, PriceTick
from volatility_hedging.hedging.positions import InMemoryContractMetadataProvider, InMemoryPositionFeed
from volatility_hedging.models.har_rv import create_forecaster
from volatility_hedging.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)

DEMO_UNDERLYING = "ES"
DEMO_FUTURE_ID = 495512563
DEMO_CALL_ID = 700100001
DEMO_PUT_ID = 700100002


def cmd_forecast(args: argparse.Namespace) -> int:
    """Fit HAR-RV on OHLC history and print the forecast."""
    config = load_config(args.config)
    setup_logging(config.logging)

    symbol = args.symbol or args.ohlc.stem.upper()
    try:
        store = ReturnSeriesStore.from_ohlc_csv(
            symbol, args.ohlc, max_samples=config.engine.max_samples
        )
        forecaster = create_forecaster(config.forecaster, symbol)
        result = forecaster.forecast(store.snapshot(), horizon=args.horizon, now=store.last_timestamp)
    except (FileNotFoundError, ValueError, HedgingError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    quality = result.fit_quality
    print("=" * 60)
    print(f"HAR-RV FORECAST: {result.underlying}")
    print("=" * 60)
    print(f"Samples:            {len(store)}")
    print(f"Regression rows:    {quality.observations}")
    for name, value in result.coefficients.model_dump().items():
        if value is not None:
            print(f"  beta_{name:<12s}{value: .6f}")
    print(f"R-squared:          {quality.r_squared:.4f}")
    print(f"Condition number:   {quality.condition_number:.2f}")
    print(f"Horizon:            {result.horizon} period(s)")
    print(f"Variance/period:    {result.predicted_variance:.6e}")
    print(f"Annualized vol:     {result.predicted_volatility:.2%}")
    return 0


def demo_config(config: Config) -> Config:
    """Add a demo ES underlying when none is configured."""
    if config.hedging.underlyings:
        return config
    hedging = config.hedging.model_copy(
        update={
            "underlyings": {
                DEMO_UNDERLYING: UnderlyingHedgeConfig(hedge_instrument_id=DEMO_FUTURE_ID)
            }
        }
    )
    return config.model_copy(update={"hedging": hedging})


def demo_contracts(now: datetime, calendar: ExpirationCalendar) -> list[ContractMetadata]:
    expiration = calendar.front_month_expiration(DEMO_UNDERLYING, now)
    return [
        ContractMetadata(
            contract_id=DEMO_FUTURE_ID,
            underlying=DEMO_UNDERLYING,
            asset_class=AssetClass.FUTURE,
            multiplier=Decimal("1"),
            expiration_date=expiration,
            product=DEMO_UNDERLYING,
        ),
        ContractMetadata(
            contract_id=DEMO_CALL_ID,
            underlying=DEMO_UNDERLYING,
            asset_class=AssetClass.FUTURE_OPTION,
            strike=Decimal("5000"),
            expiration_date=expiration,
            option_type=OptionType.CALL,
            product=DEMO_UNDERLYING,
        ),
        ContractMetadata(
            contract_id=DEMO_PUT_ID,
            underlying=DEMO_UNDERLYING,
            asset_class=AssetClass.FUTURE_OPTION,
            strike=Decimal("4900"),
            expiration_date=expiration,
            option_type=OptionType.PUT,
            product=DEMO_UNDERLYING,
        ),
    ]


def seed_history(
    store: ReturnSeriesStore, end: datetime, periods: int, rng: np.random.Generator
) -> None:
    """Fill a store with synthetic daily returns ending one day before `end`."""
    daily_vol = 0.18 / np.sqrt(252)
    returns = rng.normal(0.0, daily_vol, size=periods)
    start = end - timedelta(days=periods)
    for i, r in enumerate(returns):
        store.append(ReturnSample(timestamp=start + timedelta(days=i), log_return=float(r)))


async def run_demo(config: Config, duration: Optional[float], seed: int) -> int:
    """Run the engine against the mock venue with synthetic prices."""
    config = demo_config(config)
    now = datetime.now(timezone.utc)
    rng = np.random.default_rng(seed)

    calendar = ExpirationCalendar(config.calendar)
    metadata = InMemoryContractMetadataProvider(demo_contracts(now, calendar))
    feed = InMemoryPositionFeed(
        config.hedging.account_id,
        {DEMO_CALL_ID: Decimal("-10"), DEMO_PUT_ID: Decimal("5")},
    )
    gateway = MockExecutionGateway(disconnect_prob=0.01, seed=seed)
    alerts = AlertChannel()
    raised: list[Alert] = []
    alerts.subscribe(raised.append)
    engine: HedgingEngine = build_engine(config, gateway, metadata, feed, alerts=alerts)

    def on_report(report: ExecutionReport) -> None:
        intent = engine.orders.get(report.order_id)
        if intent is not None and report.filled_quantity:
            feed.adjust(intent.instrument_id, report.filled_quantity)
        engine.publish(report)

    gateway.set_report_handler(on_report)

    for worker in engine.workers.values():
        seed_history(worker.store, now, config.forecaster.estimation_window, rng)

    monitor = SessionMonitor(gateway, engine.publish, interval_s=5.0, reconnect_delay_s=2.0)

    # Graceful shutdown flag
    shutdown_event = asyncio.Event()

    def shutdown_handler(sig, frame):
        print("\n\nShutdown signal received...")
        shutdown_event.set()

    previous_handlers = {
        sig: signal.signal(sig, shutdown_handler) for sig in (signal.SIGINT, signal.SIGTERM)
    }

    prices = {u: 5000.0 for u in engine.workers}
    tick_vol = 0.18 / np.sqrt(252 * 390)

    await engine.start()
    await monitor.start()
    loop = asyncio.get_running_loop()
    deadline = loop.time() + duration if duration else None
    last_snapshot = loop.time()

    try:
        while not shutdown_event.is_set():
            if deadline is not None and loop.time() >= deadline:
                break
            for underlying in prices:
                prices[underlying] *= float(np.exp(rng.normal(0.0, tick_vol)))
                engine.publish(
                    PriceTick(underlying, datetime.now(timezone.utc), prices[underlying])
                )
            if loop.time() - last_snapshot > 10.0:
                feed.push(datetime.now(timezone.utc))
                last_snapshot = loop.time()
            await asyncio.sleep(1.0)
    finally:
        await monitor.stop()
        unresolved = await engine.stop()
        await gateway.disconnect()
        for sig, handler in previous_handlers.items():
            if handler is not None:
                signal.signal(sig, handler)

    print(f"Orders submitted: {len(gateway.submitted)}, unresolved at shutdown: {len(unresolved)}")
    print(f"Alerts raised: {len(raised)}")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    setup_logging(config.logging)
    try:
        return asyncio.run(run_demo(config, args.duration, args.seed))
    except KeyboardInterrupt:
        return 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="volatility-hedging",
        description="HAR-RV volatility forecasting and delta hedging",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    forecast = subparsers.add_parser("forecast", help="Fit HAR-RV on OHLC history")
    forecast.add_argument("--ohlc", type=Path, required=True, help="CSV with Date,Open,High,Low,Close")
    forecast.add_argument("--symbol", type=str, default=None, help="Underlying (default: file stem)")
    forecast.add_argument("--horizon", type=int, default=None, help="Forecast horizon in periods")
    forecast.add_argument("--config", type=Path, default=None, help="YAML configuration file")
    forecast.set_defaults(func=cmd_forecast)

    run = subparsers.add_parser("run", help="Run the hedging engine against the mock venue")
    run.add_argument("--config", type=Path, default=None, help="YAML configuration file")
    run.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Seconds to run before shutting down (default: until interrupted)",
    )
    run.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")
    run.set_defaults(func=cmd_run)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if getattr(args, "horizon", None) is not None and args.horizon <= 0:
        parser.error("--horizon must be positive")
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
