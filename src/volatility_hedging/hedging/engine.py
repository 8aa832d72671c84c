"""
Hedging engine.

Wires the forecaster, position book, delta calculator, decision engine and
order lifecycle together. Each underlying is served by its own worker task
consuming an asyncio.Queue, so everything that touches an underlying's hedge
state happens in order on that worker while underlyings proceed
independently.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

from volatility_hedging.core.config import Config
from volatility_hedging.core.errors import (
    HedgingError,
    InsufficientHistory,
    NoForecastAvailable,
    NumericalInstability,
)
from volatility_hedging.core.types import OrderIntent, OrderState
from volatility_hedging.data.returns import ReturnSeriesStore
from volatility_hedging.execution.gateway import ExecutionGateway
from volatility_hedging.hedging.alerts import AlertChannel, AlertKind
from volatility_hedging.hedging.calendar import ExpirationCalendar
from volatility_hedging.hedging.decision import HedgeDecisionEngine
from volatility_hedging.hedging.delta import DeltaCalculator
from volatility_hedging.hedging.messages import (
    EngineMessage,
    ExecutionReport,
    ForecastPublished,
    OrderTimedOut,
    PositionsSnapshot,
    PositionsUpdated,
    PriceTick,
    ResetUnderlying,
    SessionEvent,
    SubmissionAcknowledged,
    SubmissionFailed,
    SubmissionWithdrawn,
)
from volatility_hedging.hedging.orders import OrderLifecycleManager
from volatility_hedging.hedging.positions import ContractMetadataProvider, PositionBook, PositionFeed
from volatility_hedging.models.har_rv import ForecastBoard, HarRvForecaster, create_forecaster
from volatility_hedging.utils.logging import get_contextual_logger, get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]

ORDER_MESSAGES = (
    SubmissionAcknowledged,
    SubmissionFailed,
    SubmissionWithdrawn,
    ExecutionReport,
    OrderTimedOut,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UnderlyingWorker:
    """Sequential message consumer owning one underlying's hedge state."""

    def __init__(self, underlying: str, engine: "HedgingEngine") -> None:
        self.underlying = underlying
        self.engine = engine
        self.queue: asyncio.Queue[EngineMessage] = asyncio.Queue()
        self.store = ReturnSeriesStore(underlying, max_samples=engine.config.engine.max_samples)
        self.forecaster: HarRvForecaster = create_forecaster(engine.config.forecaster, underlying)
        self.spot: Optional[Decimal] = None
        self.position_sequence = 0
        self.processed = 0
        self._task: Optional[asyncio.Task] = None
        self._refreshing = False
        self._no_forecast_alerted = False
        self._log = get_contextual_logger(__name__, underlying=underlying)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"worker-{self.underlying}")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def post(self, message: EngineMessage) -> None:
        self.queue.put_nowait(message)

    async def _run(self) -> None:
        while True:
            message = await self.queue.get()
            try:
                self.handle(message)
            except Exception:
                self._log.exception(f"Failed to handle {type(message).__name__}")
            finally:
                self.processed += 1
                self.queue.task_done()

    def handle(self, message: EngineMessage) -> None:
        """Apply one message to this underlying's state."""
        if isinstance(message, PriceTick):
            self._on_price(message)
        elif isinstance(message, PositionsUpdated):
            self.engine.book.replace(self.underlying, message.positions, message.sequence)
            self.position_sequence = message.sequence
            self.evaluate()
        elif isinstance(message, ForecastPublished):
            self._no_forecast_alerted = False
            self.evaluate()
        elif isinstance(message, ORDER_MESSAGES):
            self._on_order_message(message)
        elif isinstance(message, ResetUnderlying):
            self.engine.decision.reset(self.underlying)
            self.evaluate()
        else:
            raise ValueError(f"Unexpected message {type(message).__name__}")

    def _on_price(self, tick: PriceTick) -> None:
        try:
            self.store.append_price(tick.timestamp, tick.price)
        except ValueError as e:
            self._log.warning(f"Price tick rejected: {e}")
            return
        self.spot = Decimal(str(tick.price))
        self.evaluate()

    def _on_order_message(self, message: EngineMessage) -> None:
        engine = self.engine
        intent = engine.orders.handle(message)
        if intent is None or not intent.is_terminal:
            return

        now = engine.clock()
        if intent.state == OrderState.FILLED:
            filled = message.filled_quantity if isinstance(message, ExecutionReport) else Decimal("0")
            self._apply_fill(intent, filled or intent.quantity, now)
        elif isinstance(message, SubmissionFailed):
            engine.decision.pause(self.underlying, f"submission failed: {message.error}")
        elif isinstance(message, ExecutionReport) and intent.state == OrderState.REJECTED:
            engine.decision.pause(self.underlying, f"order rejected: {intent.reason}")

        engine.decision.resolve(intent, now)
        self.evaluate()

    def _apply_fill(self, intent: OrderIntent, quantity: Decimal, now: datetime) -> None:
        try:
            self.engine.book.apply_fill(self.underlying, intent.instrument_id, quantity, now)
        except (HedgingError, KeyError, ValueError, ArithmeticError) as e:
            self.engine.alerts.raise_alert(
                AlertKind.FILL_NOT_APPLIED,
                f"{self.underlying}: fill of order {intent.id} not applied to book: {e}",
                underlying=self.underlying,
                order_id=intent.id,
                timestamp=now,
            )

    def can_hedge(self) -> bool:
        """Session ready and positions synced since the last reconnect."""
        engine = self.engine
        if engine.stopping or not engine.session_ready:
            return False
        return self.position_sequence > engine.required_sequence

    def evaluate(self) -> Optional[OrderIntent]:
        """Recompute net delta and create a hedge intent if needed."""
        engine = self.engine
        if not self.can_hedge() or self.spot is None:
            return None

        now = engine.clock()
        try:
            target = engine.delta.compute(
                self.underlying,
                engine.book.positions(self.underlying),
                self.spot,
                engine.board.latest(self.underlying),
                now,
                engine.config.hedging.band_for(self.underlying),
            )
        except NoForecastAvailable as e:
            # Once per underlying until a forecast is published
            if not self._no_forecast_alerted:
                self._no_forecast_alerted = True
                engine.alerts.raise_alert(
                    AlertKind.NO_FORECAST,
                    f"{e}; hedge evaluation skipped",
                    underlying=self.underlying,
                    timestamp=now,
                )
            return None
        except (HedgingError, ValueError, ArithmeticError) as e:
            engine.alerts.raise_alert(
                AlertKind.DELTA_FAILED,
                f"{self.underlying}: delta computation failed: {e}",
                underlying=self.underlying,
                timestamp=now,
            )
            return None

        intent = engine.decision.evaluate(target, now)
        if intent is None:
            return None

        engine.orders.track(intent)
        self._log.bind(order_id=intent.id).info(
            f"Hedge intent {intent.quantity} of {intent.instrument_id} "
            f"for net delta {target.net_delta}"
        )
        engine.spawn(engine.orders.submit(intent))
        return intent

    async def refresh_forecast(self, now: Optional[datetime] = None) -> None:
        """Fit/forecast off the event loop and publish the result."""
        if self._refreshing:
            return
        engine = self.engine
        now = now or engine.clock()
        snapshot = self.store.snapshot()
        loop = asyncio.get_running_loop()

        self._refreshing = True
        try:
            result = await loop.run_in_executor(
                None, self.forecaster.forecast, snapshot, None, now
            )
        except InsufficientHistory as e:
            self._log.info(f"Forecast skipped: {e}")
            engine.alerts.raise_alert(
                AlertKind.INSUFFICIENT_HISTORY,
                str(e),
                underlying=self.underlying,
                timestamp=now,
                required=e.required,
                available=e.available,
            )
            return
        except NumericalInstability as e:
            engine.alerts.raise_alert(
                AlertKind.NUMERICAL_INSTABILITY,
                f"{e}; keeping previous forecast",
                underlying=self.underlying,
                timestamp=now,
                condition_number=e.condition_number,
            )
            return
        finally:
            self._refreshing = False

        engine.board.publish(result)
        self._log.info(
            f"Forecast published: vol={result.predicted_volatility:.4f} "
            f"var={result.predicted_variance:.3e} h={result.horizon}"
        )
        self.post(ForecastPublished(result=result))


class HedgingEngine:
    """
    Per-underlying hedging runtime.

    Example:
        >>> engine = build_engine(config, gateway, metadata, feed)
        >>> await engine.start()
        >>> engine.publish(PriceTick("ES", now, 5000.0))
        >>> unresolved = await engine.stop()
    """

    def __init__(
        self,
        config: Config,
        gateway: ExecutionGateway,
        metadata: ContractMetadataProvider,
        feed: PositionFeed,
        alerts: Optional[AlertChannel] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.feed = feed
        self.clock: Clock = clock or _utcnow
        self.alerts = alerts or AlertChannel()

        self.board = ForecastBoard()
        self.calendar = ExpirationCalendar(config.calendar)
        self.book = PositionBook(metadata, self.calendar)
        self.delta = DeltaCalculator(config.hedging.risk_free_rate)
        self.decision = HedgeDecisionEngine(config.hedging)
        self.orders = OrderLifecycleManager(
            config.orders,
            gateway,
            config.hedging.account_id,
            alerts=self.alerts,
            sink=self.publish,
            can_submit=self.submissions_open,
        )

        self.workers: dict[str, UnderlyingWorker] = {
            underlying: UnderlyingWorker(underlying, self)
            for underlying in config.hedging.underlyings
        }

        self.session_ready = False
        self.stopping = False
        self.required_sequence = 0
        self._snapshot_sequence = 0
        self._reported_gaps: set[tuple[str, datetime]] = set()
        self._tasks: set[asyncio.Task] = set()
        self._forecast_task: Optional[asyncio.Task] = None
        self._resync_task: Optional[asyncio.Task] = None
        self._running = False

        gateway.set_report_handler(self.publish)
        feed.set_snapshot_handler(self.publish)

    @property
    def running(self) -> bool:
        return self._running

    def submissions_open(self) -> bool:
        """Orders may reach the venue only while the session is ready."""
        return self.session_ready and not self.stopping

    def worker(self, underlying: str) -> UnderlyingWorker:
        return self.workers[underlying.upper()]

    async def start(self, forecast_loop: bool = True) -> None:
        """Start the workers and, optionally, the periodic forecast refresh."""
        for worker in self.workers.values():
            worker.start()
        if forecast_loop:
            self._forecast_task = asyncio.create_task(self._forecast_loop(), name="forecast-loop")
        self._running = True
        logger.info(f"Hedging engine started for {sorted(self.workers)}")

    def publish(self, message: EngineMessage) -> None:
        """Route a message to its worker. Never blocks."""
        if isinstance(message, (PriceTick, ResetUnderlying)):
            self._route(message.underlying, message)
        elif isinstance(message, ForecastPublished):
            self._route(message.result.underlying, message)
        elif isinstance(message, PositionsSnapshot):
            self._fan_out_snapshot(message)
        elif isinstance(message, PositionsUpdated):
            self._route(message.underlying, message)
        elif isinstance(message, ORDER_MESSAGES):
            intent = self.orders.get(message.order_id)
            if intent is None:
                logger.warning(f"{type(message).__name__} for unknown order {message.order_id}")
                return
            self._route(intent.underlying, message)
        elif isinstance(message, SessionEvent):
            self._on_session(message)
        else:
            raise TypeError(f"Unsupported message: {type(message).__name__}")

    def _route(self, underlying: str, message: EngineMessage) -> None:
        worker = self.workers.get(underlying.upper())
        if worker is None:
            logger.debug(f"No worker for {underlying}, {type(message).__name__} dropped")
            return
        worker.post(message)

    def _fan_out_snapshot(self, snapshot: PositionsSnapshot) -> None:
        if snapshot.account_id != self.config.hedging.account_id:
            logger.debug(f"Snapshot for account {snapshot.account_id} ignored")
            return

        self._snapshot_sequence += 1
        sequence = self._snapshot_sequence
        slices = self.book.resolve_snapshot(snapshot.quantities, snapshot.timestamp)

        unhedged = set(slices) - set(self.workers)
        if unhedged:
            logger.debug(f"Positions in unconfigured underlyings: {sorted(unhedged)}")

        for underlying, worker in self.workers.items():
            worker.post(
                PositionsUpdated(
                    underlying=underlying,
                    positions=tuple(slices.get(underlying, ())),
                    sequence=sequence,
                    timestamp=snapshot.timestamp,
                )
            )

    def _on_session(self, event: SessionEvent) -> None:
        was_ready = self.session_ready
        self.session_ready = event.ready

        if was_ready and not event.ready:
            self.alerts.raise_alert(
                AlertKind.SESSION_DISCONNECTED,
                "Broker session lost, hedging suspended",
                timestamp=event.timestamp,
                connected=event.connected,
                authenticated=event.authenticated,
            )
        elif event.ready and not was_ready:
            # Positions seen before this point are not trusted
            self.required_sequence = self._snapshot_sequence
            logger.info("Broker session ready, resynchronizing positions")
            if self._resync_task is not None and not self._resync_task.done():
                self._resync_task.cancel()
            self._resync_task = self.spawn(self.resync())

    async def resync(self) -> bool:
        """
        Request a full position snapshot and check return history for gaps.

        Returns:
            True if every worker applied a snapshot newer than the reconnect
        """
        timeout = self.config.engine.resync_timeout
        await self.feed.request_snapshot()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if all(w.position_sequence > self.required_sequence for w in self.workers.values()):
                break
            await asyncio.sleep(0.01)
        else:
            self.alerts.raise_alert(
                AlertKind.RESYNC_TIMEOUT,
                f"Position resync not completed within {timeout}s, hedging stays suspended",
            )
            return False

        self.check_history_gaps()
        logger.info("Position resync complete, hedging resumed")
        return True

    def check_history_gaps(self) -> list[tuple[str, datetime, datetime]]:
        """Alert on return history gaps longer than `max_history_gap`."""
        max_gap = timedelta(seconds=self.config.engine.max_history_gap)
        now = self.clock()
        found = []
        for underlying, worker in self.workers.items():
            gaps = worker.store.find_gaps(max_gap)
            last = worker.store.last_timestamp
            if last is not None and now - last > max_gap:
                gaps.append((last, now))
            for start, end in gaps:
                if (underlying, start) in self._reported_gaps:
                    continue
                self._reported_gaps.add((underlying, start))
                found.append((underlying, start, end))
                self.alerts.raise_alert(
                    AlertKind.HISTORY_GAP,
                    f"{underlying}: no returns between {start.isoformat()} and {end.isoformat()}",
                    underlying=underlying,
                    timestamp=now,
                )
        return found

    async def refresh_forecasts(self) -> None:
        now = self.clock()
        await asyncio.gather(*(w.refresh_forecast(now) for w in self.workers.values()))

    async def _forecast_loop(self) -> None:
        while True:
            await self.refresh_forecasts()
            await asyncio.sleep(self.config.engine.forecast_interval)

    async def idle(self) -> None:
        """Wait until every worker queue is empty."""
        for worker in self.workers.values():
            await worker.queue.join()

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def stop(self, timeout: Optional[float] = None) -> list[OrderIntent]:
        """
        Shut down gracefully.

        Cancels open hedge orders, waits up to `timeout` (default
        `shutdown_timeout`) for them to resolve, then stops the workers.

        Returns:
            Intents left unresolved, now marked STALE
        """
        self.stopping = True
        if self._forecast_task is not None:
            self._forecast_task.cancel()
            try:
                await self._forecast_task
            except asyncio.CancelledError:
                pass
            self._forecast_task = None

        unresolved = await self.orders.drain(timeout)
        for intent in unresolved:
            self.decision.resolve(intent)
            self.alerts.raise_alert(
                AlertKind.SHUTDOWN_UNRESOLVED,
                f"Hedge order {intent.id} unresolved at shutdown, marked stale",
                underlying=intent.underlying,
                order_id=intent.id,
            )

        for worker in self.workers.values():
            await worker.stop()

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.orders.close()

        self._running = False
        logger.info(f"Hedging engine stopped ({len(unresolved)} unresolved orders)")
        return unresolved


def build_engine(
    config: Config,
    gateway: ExecutionGateway,
    metadata: ContractMetadataProvider,
    feed: PositionFeed,
    alerts: Optional[AlertChannel] = None,
    clock: Optional[Clock] = None,
) -> HedgingEngine:
    """Construct a hedging engine with one worker per configured underlying."""
    if not config.hedging.underlyings:
        raise ValueError("At least one hedged underlying must be configured")
    return HedgingEngine(config, gateway, metadata, feed, alerts=alerts, clock=clock)
