"""
Integration tests for the hedging engine.

Each test drives the engine through the mock venue and the in-memory
position feed, the way the broker adapters would.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from volatility_hedging.core.config import Config, HedgeConfig, UnderlyingHedgeConfig
from volatility_hedging.core.types import OrderState, ReturnSample
from volatility_hedging.data.returns import ReturnSeriesStore
from volatility_hedging.execution.gateway import MockExecutionGateway
from volatility_hedging.hedging.alerts import AlertKind
from volatility_hedging.hedging.engine import HedgingEngine, build_engine
from volatility_hedging.hedging.messages import (
    ForecastPublished,
    PositionsSnapshot,
    PriceTick,
    ResetUnderlying,
    SessionEvent,
)
from volatility_hedging.hedging.positions import InMemoryPositionFeed

ACCOUNT = "DU1234567"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def session(ready: bool) -> SessionEvent:
    return SessionEvent(connected=ready, authenticated=ready, timestamp=utcnow())


async def make_engine(
    config: Config,
    metadata_provider,
    make_forecast,
    quantities=None,
    latency: float = 0.0,
    forecast: bool = True,
) -> tuple[HedgingEngine, MockExecutionGateway, InMemoryPositionFeed]:
    gateway = MockExecutionGateway.manual()
    await gateway.connect()
    feed = InMemoryPositionFeed(ACCOUNT, quantities or {}, latency=latency)
    engine = build_engine(config, gateway, metadata_provider, feed)
    if forecast:
        engine.board.publish(make_forecast("ES"))
    await engine.start(forecast_loop=False)
    return engine, gateway, feed


def tick(price: float = 5000.0, at: datetime = None) -> PriceTick:
    return PriceTick(underlying="ES", timestamp=at or utcnow(), price=price)


@pytest.mark.integration
class TestHedgeFlow:
    """End-to-end hedging of a single underlying."""

    @pytest.mark.asyncio
    async def test_long_delta_hedged_once(
        self, default_config, metadata_provider, make_forecast, wait_until
    ):
        """+12 futures with band 5 yields one sell of 12, then nothing after the fill."""
        engine, gateway, feed = await make_engine(
            default_config, metadata_provider, make_forecast, {1001: Decimal("12")}
        )
        engine.publish(session(True))
        engine.publish(tick())

        assert await wait_until(lambda: len(gateway.submitted) == 1)
        order = gateway.submitted[0]
        assert order.quantity == Decimal("-12")
        assert order.instrument_id == 1001
        assert order.account_id == ACCOUNT

        assert await wait_until(
            lambda: engine.orders.get(order.order_id).state == OrderState.SUBMITTED
        )
        feed.adjust(1001, order.quantity)
        gateway.fill(order.order_id)
        await engine.idle()
        engine.publish(tick(5001.0))
        await engine.idle()

        intent = engine.orders.get(order.order_id)
        assert intent.state == OrderState.FILLED
        assert engine.book.positions("ES") == []
        assert engine.decision.active_intent("ES") is None
        assert len(gateway.submitted) == 1

        assert await engine.stop() == []

    @pytest.mark.asyncio
    async def test_concurrent_triggers_yield_single_intent(
        self, default_config, metadata_provider, make_forecast, wait_until
    ):
        engine, gateway, _ = await make_engine(
            default_config, metadata_provider, make_forecast, {1001: Decimal("12")}
        )
        engine.publish(session(True))
        start = utcnow()
        for i in range(50):
            engine.publish(tick(5000.0 + i, start + timedelta(milliseconds=i)))
        engine.publish(ResetUnderlying(underlying="ES", timestamp=start))

        assert await wait_until(lambda: len(gateway.submitted) == 1)
        await engine.idle()
        await asyncio.sleep(0.05)

        assert len(gateway.submitted) == 1
        assert len(engine.orders.open_intents()) == 1
        await engine.stop()

    @pytest.mark.asyncio
    async def test_inside_band_no_order(
        self, default_config, metadata_provider, make_forecast, wait_until
    ):
        engine, gateway, _ = await make_engine(
            default_config, metadata_provider, make_forecast, {1001: Decimal("4")}
        )
        engine.publish(session(True))
        engine.publish(tick())

        assert await wait_until(lambda: engine.worker("ES").position_sequence == 1)
        await engine.idle()
        assert gateway.submitted == []
        await engine.stop()

    @pytest.mark.asyncio
    async def test_no_forecast_no_order(
        self, default_config, metadata_provider, make_forecast, wait_until
    ):
        engine, gateway, _ = await make_engine(
            default_config,
            metadata_provider,
            make_forecast,
            {1001: Decimal("12")},
            forecast=False,
        )
        engine.publish(session(True))
        engine.publish(tick())

        assert await wait_until(lambda: engine.worker("ES").position_sequence == 1)
        await engine.idle()
        engine.publish(tick(5001.0))
        await engine.idle()

        assert gateway.submitted == []
        assert engine.alerts.history(AlertKind.DELTA_FAILED) == []
        alerts = engine.alerts.history(AlertKind.NO_FORECAST)
        assert [a.underlying for a in alerts] == ["ES"]

        forecast = make_forecast("ES")
        engine.board.publish(forecast)
        engine.publish(ForecastPublished(result=forecast))
        assert await wait_until(lambda: len(gateway.submitted) == 1)
        assert len(engine.alerts.history(AlertKind.NO_FORECAST)) == 1
        await engine.stop()


@pytest.mark.integration
class TestSession:
    """Tests for session gating and resynchronization."""

    @pytest.mark.asyncio
    async def test_no_hedge_before_resync(
        self, default_config, metadata_provider, make_forecast, wait_until
    ):
        engine, gateway, feed = await make_engine(
            default_config,
            metadata_provider,
            make_forecast,
            {1001: Decimal("12")},
            latency=0.2,
        )
        # Snapshot from before the session came up
        feed.push(utcnow())
        engine.publish(tick())
        await engine.idle()
        assert engine.worker("ES").position_sequence == 1

        engine.publish(session(True))
        assert engine.required_sequence == 1
        engine.publish(tick(5001.0))
        await asyncio.sleep(0.05)
        await engine.idle()
        assert gateway.submitted == []

        assert await wait_until(lambda: len(gateway.submitted) == 1)
        assert feed.requests == 1
        await engine.stop()

    @pytest.mark.asyncio
    async def test_disconnect_alerts_and_suspends(
        self, default_config, metadata_provider, make_forecast, wait_until
    ):
        engine, gateway, _ = await make_engine(
            default_config, metadata_provider, make_forecast, {1001: Decimal("3")}
        )
        engine.publish(session(True))
        assert await wait_until(lambda: engine.worker("ES").position_sequence == 1)

        engine.publish(session(False))

        alerts = engine.alerts.history(AlertKind.SESSION_DISCONNECTED)
        assert len(alerts) == 1
        assert not engine.session_ready
        assert not engine.worker("ES").can_hedge()
        await engine.stop()

    @pytest.mark.asyncio
    async def test_disconnect_during_backoff_sends_nothing(
        self, default_config, metadata_provider, make_forecast, wait_until
    ):
        orders = default_config.orders.model_copy(
            update={"retry_base_delay": 0.2, "retry_max_delay": 0.2}
        )
        config = default_config.model_copy(update={"orders": orders})
        engine, gateway, _ = await make_engine(
            config, metadata_provider, make_forecast, {1001: Decimal("12")}
        )
        gateway.fail_next(1, transient=True)
        engine.publish(session(True))
        engine.publish(tick())

        assert await wait_until(lambda: len(engine.orders.open_intents()) == 1)
        intent = engine.orders.open_intents()[0]
        await asyncio.sleep(0.05)
        engine.publish(session(False))

        assert await wait_until(lambda: intent.state == OrderState.CANCELLED)
        await engine.idle()
        assert gateway.submitted == []
        assert not engine.decision.is_paused("ES")
        assert engine.alerts.history(AlertKind.SUBMISSION_FAILED) == []

        # Hedging resumes after the next resync
        engine.publish(session(True))
        assert await wait_until(lambda: len(gateway.submitted) == 1)
        assert gateway.submitted[0].order_id != intent.id
        await engine.stop()

    @pytest.mark.asyncio
    async def test_resync_timeout(self, metadata_provider, make_forecast, default_config):
        config = default_config.model_copy(
            update={"engine": default_config.engine.model_copy(update={"resync_timeout": 0.05})}
        )
        engine, _, feed = await make_engine(config, metadata_provider, make_forecast)
        feed.set_snapshot_handler(lambda snapshot: None)

        assert await engine.resync() is False
        assert len(engine.alerts.history(AlertKind.RESYNC_TIMEOUT)) == 1
        await engine.stop()

    @pytest.mark.asyncio
    async def test_foreign_account_snapshot_ignored(
        self, default_config, metadata_provider, make_forecast
    ):
        engine, _, _ = await make_engine(default_config, metadata_provider, make_forecast)
        engine.publish(
            PositionsSnapshot(account_id="OTHER", quantities={1001: Decimal("9")}, timestamp=utcnow())
        )
        await engine.idle()

        assert engine.worker("ES").position_sequence == 0
        assert engine.book.positions("ES") == []
        await engine.stop()


@pytest.mark.integration
class TestFailures:
    """Tests for recoverable failures."""

    @pytest.mark.asyncio
    async def test_submission_failure_pauses_until_reset(
        self, default_config, metadata_provider, make_forecast, wait_until
    ):
        engine, gateway, _ = await make_engine(
            default_config, metadata_provider, make_forecast, {1001: Decimal("12")}
        )
        gateway.fail_next(1, transient=False)
        engine.publish(session(True))
        engine.publish(tick())

        assert await wait_until(lambda: engine.decision.is_paused("ES"))
        assert len(engine.alerts.history(AlertKind.SUBMISSION_FAILED)) == 1
        engine.publish(tick(5001.0))
        await engine.idle()
        assert gateway.submitted == []

        engine.publish(ResetUnderlying(underlying="ES", timestamp=utcnow()))

        assert await wait_until(lambda: len(gateway.submitted) == 1)
        assert not engine.decision.is_paused("ES")
        await engine.stop()

    @pytest.mark.asyncio
    async def test_venue_rejection_pauses_until_reset(
        self, default_config, metadata_provider, make_forecast, wait_until
    ):
        engine, gateway, _ = await make_engine(
            default_config, metadata_provider, make_forecast, {1001: Decimal("12")}
        )
        engine.publish(session(True))
        engine.publish(tick())
        assert await wait_until(lambda: len(gateway.submitted) == 1)
        order_id = gateway.submitted[0].order_id
        assert await wait_until(
            lambda: engine.orders.get(order_id).state == OrderState.SUBMITTED
        )

        gateway.reject(order_id, reason="permanent: not permitted")
        await engine.idle()
        engine.publish(tick(5001.0))
        await engine.idle()

        assert engine.decision.is_paused("ES")
        assert "not permitted" in engine.decision.pause_reason("ES")
        assert len(engine.alerts.history(AlertKind.ORDER_REJECTED)) == 1
        assert len(gateway.submitted) == 1

        engine.publish(ResetUnderlying(underlying="ES", timestamp=utcnow()))
        assert await wait_until(lambda: len(gateway.submitted) == 2)
        await engine.stop()

    @pytest.mark.asyncio
    async def test_fill_without_metadata_still_resolves(
        self, default_config, metadata_provider, make_forecast, wait_until
    ):
        hedging = default_config.hedging.model_copy(
            update={"underlyings": {"ES": UnderlyingHedgeConfig(hedge_instrument_id=424242)}}
        )
        config = default_config.model_copy(update={"hedging": hedging})
        engine, gateway, _ = await make_engine(
            config, metadata_provider, make_forecast, {1001: Decimal("12")}
        )
        engine.publish(session(True))
        engine.publish(tick())
        assert await wait_until(lambda: len(gateway.submitted) == 1)
        order_id = gateway.submitted[0].order_id
        assert await wait_until(
            lambda: engine.orders.get(order_id).state == OrderState.SUBMITTED
        )

        gateway.fill(order_id)

        # Book unchanged, so the next evaluation hedges again
        assert await wait_until(lambda: len(gateway.submitted) == 2)
        assert engine.orders.get(order_id).state == OrderState.FILLED
        alerts = engine.alerts.history(AlertKind.FILL_NOT_APPLIED)
        assert [a.order_id for a in alerts] == [order_id]
        await engine.stop()

    @pytest.mark.asyncio
    async def test_worker_survives_unexpected_error(
        self, default_config, metadata_provider, make_forecast, monkeypatch
    ):
        engine, _, _ = await make_engine(default_config, metadata_provider, make_forecast)
        worker = engine.worker("ES")

        def broken_reset(underlying):
            raise RuntimeError("unexpected")

        monkeypatch.setattr(engine.decision, "reset", broken_reset)
        engine.publish(ResetUnderlying(underlying="ES", timestamp=utcnow()))
        engine.publish(tick())
        await asyncio.wait_for(engine.idle(), timeout=1.0)

        assert worker.processed == 2
        assert worker.spot == Decimal("5000.0")
        await engine.stop()

    @pytest.mark.asyncio
    async def test_insufficient_history_alert(
        self, default_config, metadata_provider, make_forecast
    ):
        engine, _, _ = await make_engine(
            default_config, metadata_provider, make_forecast, forecast=False
        )

        await engine.refresh_forecasts()

        alerts = engine.alerts.history(AlertKind.INSUFFICIENT_HISTORY)
        assert [a.underlying for a in alerts] == ["ES"]
        assert engine.board.latest("ES") is None
        await engine.stop()

    @pytest.mark.asyncio
    async def test_numerical_instability_keeps_previous_forecast(
        self, default_config, metadata_provider, make_forecast, make_store
    ):
        engine, _, _ = await make_engine(
            default_config, metadata_provider, make_forecast, forecast=False
        )
        worker = engine.worker("ES")
        worker.store = make_store(300)
        now = datetime(2025, 6, 2, 14, 0, tzinfo=timezone.utc)

        await worker.refresh_forecast(now)
        first = engine.board.latest("ES")
        assert first is not None

        degenerate = ReturnSeriesStore("ES")
        for i in range(200):
            degenerate.append(
                ReturnSample(
                    timestamp=now + timedelta(days=i), log_return=0.01 if i % 2 else -0.01
                )
            )
        worker.store = degenerate
        await worker.refresh_forecast(now + timedelta(days=2))

        assert len(engine.alerts.history(AlertKind.NUMERICAL_INSTABILITY)) == 1
        assert engine.board.latest("ES") is first
        await engine.stop()

    @pytest.mark.asyncio
    async def test_history_gap_alerted_once(
        self, default_config, metadata_provider, make_forecast
    ):
        engine, _, _ = await make_engine(default_config, metadata_provider, make_forecast)
        start = utcnow() - timedelta(days=1)
        store = engine.worker("ES").store
        for day in (0, 0.1, 0.2):
            store.append(ReturnSample(timestamp=start - timedelta(days=10 - day), log_return=0.01))
        store.append(ReturnSample(timestamp=start, log_return=0.01))

        first = engine.check_history_gaps()
        second = engine.check_history_gaps()

        assert len(first) == 1
        assert second == []
        assert len(engine.alerts.history(AlertKind.HISTORY_GAP)) == 1
        await engine.stop()


@pytest.mark.integration
class TestShutdown:
    """Tests for graceful shutdown."""

    @pytest.mark.asyncio
    async def test_stop_cancels_open_orders(
        self, default_config, metadata_provider, make_forecast, wait_until
    ):
        engine, gateway, _ = await make_engine(
            default_config, metadata_provider, make_forecast, {1001: Decimal("12")}
        )
        engine.publish(session(True))
        engine.publish(tick())
        assert await wait_until(lambda: len(gateway.submitted) == 1)
        order_id = gateway.submitted[0].order_id
        assert await wait_until(
            lambda: engine.orders.get(order_id).state == OrderState.SUBMITTED
        )

        unresolved = await engine.stop()

        assert unresolved == []
        assert engine.orders.get(order_id).state == OrderState.CANCELLED
        assert len(gateway.submitted) == 1
        assert engine.alerts.history(AlertKind.SHUTDOWN_UNRESOLVED) == []
        assert not engine.running

    @pytest.mark.asyncio
    async def test_stop_marks_unreachable_orders_stale(
        self, default_config, metadata_provider, make_forecast, wait_until
    ):
        engine, gateway, _ = await make_engine(
            default_config, metadata_provider, make_forecast, {1001: Decimal("12")}
        )
        engine.publish(session(True))
        engine.publish(tick())
        assert await wait_until(lambda: len(gateway.submitted) == 1)
        order_id = gateway.submitted[0].order_id
        assert await wait_until(
            lambda: engine.orders.get(order_id).state == OrderState.SUBMITTED
        )
        gateway.drop_connection()

        unresolved = await engine.stop(timeout=0.05)

        assert [i.id for i in unresolved] == [order_id]
        assert unresolved[0].state == OrderState.STALE
        alerts = engine.alerts.history(AlertKind.SHUTDOWN_UNRESOLVED)
        assert [a.order_id for a in alerts] == [order_id]


@pytest.mark.unit
class TestBuildEngine:
    def test_requires_underlyings(self, metadata_provider):
        config = Config(hedging=HedgeConfig())
        with pytest.raises(ValueError, match="underlying"):
            build_engine(
                config,
                MockExecutionGateway.manual(),
                metadata_provider,
                InMemoryPositionFeed(ACCOUNT),
            )
