"""
Execution venue interface and a mock venue for tests and paper runs.

The mock simulates real-world conditions: disconnects, latency jitter,
heartbeats, rejects. In manual mode orders stay working until a test fills,
rejects or cancels them.
"""

import asyncio
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from volatility_hedging.core.errors import OrderSubmissionFailure, SessionDisconnected
from volatility_hedging.core.types import OrderSide, OrderState
from volatility_hedging.hedging.messages import ExecutionReport, SessionEvent
from volatility_hedging.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class HedgeOrder:
    """Order as sent to the venue."""

    order_id: str
    account_id: str
    instrument_id: int
    quantity: Decimal  # signed, + buy / - sell

    @property
    def side(self) -> OrderSide:
        return OrderSide.BUY if self.quantity > 0 else OrderSide.SELL


@dataclass(frozen=True)
class Acknowledgement:
    order_id: str
    broker_order_id: str
    timestamp: datetime


ReportHandler = Callable[[ExecutionReport], None]


class ExecutionGateway(ABC):
    """
    Abstract execution venue.

    Terminal order outcomes arrive asynchronously through the report handler.
    """

    def __init__(self) -> None:
        self._report_handler: Optional[ReportHandler] = None

    def set_report_handler(self, handler: ReportHandler) -> None:
        self._report_handler = handler

    def _report(self, report: ExecutionReport) -> None:
        if self._report_handler is None:
            logger.warning(f"Execution report for {report.order_id} dropped: no handler")
            return
        self._report_handler(report)

    @property
    @abstractmethod
    def connected(self) -> bool:
        pass

    @abstractmethod
    async def connect(self) -> None:
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass

    @abstractmethod
    async def submit(self, order: HedgeOrder) -> Acknowledgement:
        """
        Submit an order.

        Raises:
            OrderSubmissionFailure: If the venue did not accept the order
            SessionDisconnected: If the session is down
        """
        pass

    @abstractmethod
    async def cancel(self, order_id: str) -> bool:
        """Request cancellation; False if the order is no longer working."""
        pass

    @abstractmethod
    async def heartbeat(self) -> None:
        """
        Keep the session alive.

        Raises:
            ConnectionError: If the session is down
        """
        pass


class MockExecutionGateway(ExecutionGateway):
    """
    Async venue simulator.

    - Random disconnects (configurable probability per submission)
    - Latency jitter (10-50ms by default)
    - Requires heartbeat every `heartbeat_timeout_s` or connection drops
    - Optional automatic fills after `fill_delay_s`
    - Scripted failures via `fail_next`
    """

    def __init__(
        self,
        disconnect_prob: float = 0.0,
        reject_prob: float = 0.0,
        min_latency_ms: float = 10.0,
        max_latency_ms: float = 50.0,
        heartbeat_timeout_s: float = 30.0,
        auto_fill: bool = True,
        fill_delay_s: float = 0.05,
        seed: Optional[int] = None,
    ) -> None:
        super().__init__()
        self._connected = False
        self._last_heartbeat: float = 0.0
        self._disconnect_prob = disconnect_prob
        self._reject_prob = reject_prob
        self._min_latency = min_latency_ms / 1000.0
        self._max_latency = max_latency_ms / 1000.0
        self._heartbeat_timeout = heartbeat_timeout_s
        self._auto_fill = auto_fill
        self._fill_delay = fill_delay_s
        self._rng = random.Random(seed)
        self._working: dict[str, HedgeOrder] = {}
        self._scripted_failures: list[bool] = []
        self._order_count = 0
        self.submitted: list[HedgeOrder] = []
        self.cancel_requests: list[str] = []

    @classmethod
    def manual(cls) -> "MockExecutionGateway":
        """Deterministic venue: no latency, no random failures, no automatic fills."""
        return cls(min_latency_ms=0.0, max_latency_ms=0.0, auto_fill=False, seed=0)

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def working_orders(self) -> dict[str, HedgeOrder]:
        return dict(self._working)

    async def connect(self) -> None:
        """Establish connection with simulated network latency."""
        await self._simulate_latency()
        self._connected = True
        self._last_heartbeat = asyncio.get_running_loop().time()
        logger.info("Connected to mock execution venue")

    async def disconnect(self) -> None:
        """Graceful disconnect."""
        self._connected = False
        logger.info("Disconnected from mock execution venue")

    def drop_connection(self) -> None:
        """Simulate an unexpected connection loss."""
        self._connected = False
        logger.warning("Mock venue connection dropped")

    def fail_next(self, count: int = 1, transient: bool = True) -> None:
        """Make the next `count` submissions fail."""
        self._scripted_failures.extend([transient] * count)

    async def submit(self, order: HedgeOrder) -> Acknowledgement:
        try:
            self._check_connection()
        except ConnectionError as e:
            raise SessionDisconnected(str(e)) from e

        await self._simulate_latency()

        if self._scripted_failures:
            transient = self._scripted_failures.pop(0)
            raise OrderSubmissionFailure(
                f"Scripted {'transient' if transient else 'permanent'} failure for {order.order_id}",
                transient=transient,
                context={"order_id": order.order_id},
            )

        if self._rng.random() < self._disconnect_prob:
            self._connected = False
            logger.warning("Connection lost during order submission")
            raise OrderSubmissionFailure("Venue connection lost", transient=True)

        if self._rng.random() < self._reject_prob:
            raise OrderSubmissionFailure(
                f"Order {order.order_id} rejected by venue",
                transient=False,
                context={"order_id": order.order_id},
            )

        self._order_count += 1
        self._working[order.order_id] = order
        self.submitted.append(order)
        logger.debug(
            f"Order {order.order_id}: accepted {order.side.value} {abs(order.quantity)} "
            f"of {order.instrument_id}"
        )

        if self._auto_fill:
            asyncio.get_running_loop().call_later(self._fill_delay, self.fill, order.order_id)

        return Acknowledgement(
            order_id=order.order_id,
            broker_order_id=f"MOCK-{self._order_count}",
            timestamp=datetime.now(timezone.utc),
        )

    async def cancel(self, order_id: str) -> bool:
        self._check_connection()
        await self._simulate_latency()
        self.cancel_requests.append(order_id)

        if order_id not in self._working:
            logger.debug(f"Order {order_id} not working, cancel ignored")
            return False

        del self._working[order_id]
        logger.debug(f"Order {order_id} cancelled")
        self._report(
            ExecutionReport(
                order_id=order_id,
                state=OrderState.CANCELLED,
                timestamp=datetime.now(timezone.utc),
                reason="cancelled",
            )
        )
        return True

    def fill(self, order_id: str) -> bool:
        """Fill a working order in full; False if it is no longer working."""
        order = self._working.pop(order_id, None)
        if order is None:
            return False
        self._report(
            ExecutionReport(
                order_id=order_id,
                state=OrderState.FILLED,
                timestamp=datetime.now(timezone.utc),
                filled_quantity=order.quantity,
            )
        )
        return True

    def reject(self, order_id: str, reason: str = "rejected") -> bool:
        """Reject a working order after acknowledgement."""
        if self._working.pop(order_id, None) is None:
            return False
        self._report(
            ExecutionReport(
                order_id=order_id,
                state=OrderState.REJECTED,
                timestamp=datetime.now(timezone.utc),
                reason=reason,
            )
        )
        return True

    async def heartbeat(self) -> None:
        """Send heartbeat to keep connection alive."""
        self._check_connection()
        self._last_heartbeat = asyncio.get_running_loop().time()
        logger.debug("Heartbeat sent")

    async def _simulate_latency(self) -> None:
        """Add realistic network latency."""
        await asyncio.sleep(self._rng.uniform(self._min_latency, self._max_latency))

    def _check_connection(self) -> None:
        """Verify connection is alive and heartbeat is current."""
        if not self._connected:
            raise ConnectionError("Not connected to venue")

        now = asyncio.get_running_loop().time()
        if now - self._last_heartbeat > self._heartbeat_timeout:
            self._connected = False
            logger.warning("Heartbeat timeout, connection dropped")
            raise ConnectionError("Heartbeat timeout")


SessionHandler = Callable[[SessionEvent], None]


class SessionMonitor:
    """
    Background task keeping the venue session alive.

    Sends heartbeats at a fixed interval, reconnects after a failure and
    reports every connected/disconnected transition as a SessionEvent.
    """

    def __init__(
        self,
        gateway: ExecutionGateway,
        handler: SessionHandler,
        interval_s: float = 15.0,
        reconnect_delay_s: float = 5.0,
    ) -> None:
        self._gateway = gateway
        self._handler = handler
        self._interval = interval_s
        self._reconnect_delay = reconnect_delay_s
        self._task: Optional[asyncio.Task] = None
        self._ready: Optional[bool] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Connect if needed, report the session state and start the loop."""
        if not self._gateway.connected:
            try:
                await self._gateway.connect()
            except ConnectionError as e:
                logger.warning(f"Initial connect failed: {e}")
        self._emit(self._gateway.connected)
        self._task = asyncio.create_task(self._heartbeat_loop())

    async def stop(self) -> None:
        """Stop heartbeat loop."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def _emit(self, ready: bool) -> None:
        if ready == self._ready:
            return
        self._ready = ready
        self._handler(
            SessionEvent(connected=ready, authenticated=ready, timestamp=datetime.now(timezone.utc))
        )

    async def _heartbeat_loop(self) -> None:
        """Send heartbeats, reconnecting after failures."""
        while True:
            if self._gateway.connected:
                await asyncio.sleep(self._interval)
                try:
                    await self._gateway.heartbeat()
                    self._emit(True)
                except ConnectionError as e:
                    logger.warning(f"Heartbeat failed: {e}")
                    self._emit(False)
            else:
                self._emit(False)
                await asyncio.sleep(self._reconnect_delay)
                try:
                    await self._gateway.connect()
                    self._emit(True)
                except ConnectionError as e:
                    logger.warning(f"Reconnect failed: {e}")
