"""
Order lifecycle management.

Tracks hedge OrderIntents from creation to a terminal state. Gateway calls
run in their own tasks; their outcomes come back as messages so that state
changes happen on the owning underlying's worker.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Optional

from volatility_hedging.core.config import OrderConfig
from volatility_hedging.core.errors import OrderSubmissionFailure, SessionDisconnected, StaleOrderTimeout
from volatility_hedging.core.types import OrderIntent, OrderState
from volatility_hedging.execution.gateway import ExecutionGateway, HedgeOrder
from volatility_hedging.hedging.alerts import AlertChannel, AlertKind
from volatility_hedging.hedging.messages import (
    EngineMessage,
    ExecutionReport,
    OrderTimedOut,
    SubmissionAcknowledged,
    SubmissionFailed,
    SubmissionWithdrawn,
)
from volatility_hedging.utils.logging import get_contextual_logger, get_logger

logger = get_logger(__name__)

MessageSink = Callable[[EngineMessage], None]
SubmissionGate = Callable[[], bool]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderLifecycleManager:
    """
    OrderIntent state machine driver.

    At most one non-terminal intent is tracked per underlying.

    Example:
        >>> manager = OrderLifecycleManager(config.orders, gateway, "DU123")
        >>> manager.track(intent)
        >>> await manager.submit(intent)
    """

    def __init__(
        self,
        config: OrderConfig,
        gateway: ExecutionGateway,
        account_id: str,
        alerts: Optional[AlertChannel] = None,
        sink: Optional[MessageSink] = None,
        can_submit: Optional[SubmissionGate] = None,
    ) -> None:
        """
        Initialize the manager.

        Args:
            config: Timeout and retry policy
            gateway: Execution venue
            account_id: Account the hedge orders are sent for
            alerts: Operator alert channel
            sink: Receives acknowledgements, failures and timeouts; handled
                in place when not set
            can_submit: Checked before every attempt; a closed gate withdraws
                the intent without sending it
        """
        self.config = config
        self.gateway = gateway
        self.account_id = account_id
        self.alerts = alerts or AlertChannel()
        self._sink: MessageSink = sink or self.handle
        self._can_submit: SubmissionGate = can_submit or (lambda: True)
        self._intents: dict[str, OrderIntent] = {}
        self._active: dict[str, str] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    def get(self, order_id: str) -> Optional[OrderIntent]:
        return self._intents.get(order_id)

    def active_for(self, underlying: str) -> Optional[OrderIntent]:
        order_id = self._active.get(underlying.upper())
        return self._intents.get(order_id) if order_id is not None else None

    def open_intents(self) -> list[OrderIntent]:
        return [i for i in self._intents.values() if not i.is_terminal]

    def retry_delay(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (1-based)."""
        delay = self.config.retry_base_delay * (2 ** (attempt - 1))
        return min(delay, self.config.retry_max_delay)

    def track(self, intent: OrderIntent) -> None:
        """
        Register a new intent.

        Raises:
            ValueError: If the intent is not CREATED or its underlying already
                has a non-terminal intent
        """
        if intent.state != OrderState.CREATED:
            raise ValueError(f"Order {intent.id} must be CREATED to be tracked")
        current = self.active_for(intent.underlying)
        if current is not None and not current.is_terminal:
            raise ValueError(
                f"{intent.underlying}: order {current.id} is still {current.state.value}"
            )
        self._intents[intent.id] = intent
        self._active[intent.underlying] = intent.id

    async def submit(self, intent: OrderIntent) -> None:
        """
        Send an intent to the venue, retrying transient failures.

        The outcome is posted to the sink as SubmissionAcknowledged or
        SubmissionFailed. Runs outside the owning worker, so it does not
        mutate the intent.
        """
        order = HedgeOrder(
            order_id=intent.id,
            account_id=self.account_id,
            instrument_id=intent.instrument_id,
            quantity=intent.quantity,
        )
        log = get_contextual_logger(__name__, underlying=intent.underlying, order_id=intent.id)

        attempt = 0
        while True:
            if not self._can_submit():
                log.warning(f"Session not ready, submission withdrawn after {attempt} attempt(s)")
                self._sink(
                    SubmissionWithdrawn(
                        order_id=intent.id, reason="session not ready", timestamp=_utcnow()
                    )
                )
                return
            attempt += 1
            try:
                ack = await self.gateway.submit(order)
            except (OrderSubmissionFailure, SessionDisconnected) as e:
                transient = not isinstance(e, OrderSubmissionFailure) or e.transient
                if not transient or attempt >= self.config.max_retry_attempts:
                    log.error(f"Submission failed after {attempt} attempt(s): {e}")
                    self._sink(
                        SubmissionFailed(
                            order_id=intent.id,
                            error=str(e),
                            timestamp=_utcnow(),
                            transient=transient,
                            attempts=attempt,
                        )
                    )
                    return
                delay = self.retry_delay(attempt)
                log.warning(f"Submission attempt {attempt} failed ({e}), retrying in {delay:.2f}s")
                await asyncio.sleep(delay)
                continue

            log.info(f"Submitted as {ack.broker_order_id} after {attempt} attempt(s)")
            self._sink(
                SubmissionAcknowledged(
                    order_id=intent.id,
                    broker_order_id=ack.broker_order_id,
                    timestamp=ack.timestamp,
                    attempts=attempt,
                )
            )
            return

    def handle(self, message: EngineMessage) -> Optional[OrderIntent]:
        """Apply an order lifecycle message."""
        if isinstance(message, SubmissionAcknowledged):
            return self.on_acknowledged(
                message.order_id, message.broker_order_id, message.timestamp, message.attempts
            )
        if isinstance(message, SubmissionFailed):
            return self.on_submission_failed(
                message.order_id, message.error, message.timestamp, message.attempts
            )
        if isinstance(message, ExecutionReport):
            return self.on_execution_report(message)
        if isinstance(message, SubmissionWithdrawn):
            return self.on_withdrawn(message.order_id, message.reason, message.timestamp)
        if isinstance(message, OrderTimedOut):
            return self.on_timeout(message.order_id, message.timestamp)
        raise TypeError(f"Not an order message: {type(message).__name__}")

    def on_acknowledged(
        self,
        order_id: str,
        broker_order_id: str,
        timestamp: Optional[datetime] = None,
        attempts: int = 1,
    ) -> Optional[OrderIntent]:
        """CREATED -> SUBMITTED; starts the order timeout."""
        intent = self._intents.get(order_id)
        if intent is None:
            logger.warning(f"Acknowledgement for unknown order {order_id} ignored")
            return None

        intent.attempts = attempts
        intent.broker_order_id = broker_order_id
        if intent.is_terminal:
            # Accepted by the venue after we gave up on it
            logger.warning(
                f"Order {order_id} acknowledged while {intent.state.value}, requesting cancel"
            )
            self._spawn(self._request_cancel(order_id))
            return None

        intent.transition_to(OrderState.SUBMITTED, timestamp or _utcnow())
        self._start_timer(order_id)
        return intent

    def on_execution_report(self, report: ExecutionReport) -> Optional[OrderIntent]:
        """
        Apply a terminal venue outcome.

        Returns:
            The updated intent, or None for unknown or already terminal orders
        """
        intent = self._intents.get(report.order_id)
        if intent is None:
            logger.warning(f"Execution report for unknown order {report.order_id} ignored")
            return None
        if intent.is_terminal:
            logger.warning(
                f"Late {report.state.value} report for order {report.order_id} "
                f"already {intent.state.value}, ignored"
            )
            return None
        if not report.state.is_terminal:
            logger.debug(f"Order {report.order_id}: non-terminal report {report.state.value}")
            return None

        timestamp = report.timestamp
        if intent.state == OrderState.CREATED and report.state == OrderState.FILLED:
            # Fill overtook the acknowledgement
            intent.transition_to(OrderState.SUBMITTED, timestamp)
        intent.transition_to(report.state, timestamp, reason=report.reason)
        self._release(intent)

        if report.state == OrderState.REJECTED:
            self.alerts.raise_alert(
                AlertKind.ORDER_REJECTED,
                f"Hedge order {intent.id} rejected: {report.reason}",
                underlying=intent.underlying,
                order_id=intent.id,
                timestamp=timestamp,
            )
        else:
            logger.info(f"Order {intent.id} {report.state.value}")
        return intent

    def on_timeout(
        self, order_id: str, timestamp: Optional[datetime] = None
    ) -> Optional[OrderIntent]:
        """SUBMITTED -> STALE after the order timeout; requests a cancel."""
        intent = self._intents.get(order_id)
        if intent is None or intent.state != OrderState.SUBMITTED:
            return None

        intent.transition_to(OrderState.STALE, timestamp or _utcnow(), reason="order timeout")
        self._release(intent)
        error = StaleOrderTimeout(
            f"Hedge order {order_id} unresolved after {self.config.order_timeout}s",
            order_id=order_id,
        )
        self.alerts.raise_alert(
            AlertKind.STALE_ORDER,
            str(error),
            underlying=intent.underlying,
            order_id=error.order_id,
            timestamp=intent.updated_at,
        )
        self._spawn(self._request_cancel(order_id))
        return intent

    def on_submission_failed(
        self,
        order_id: str,
        error: str,
        timestamp: Optional[datetime] = None,
        attempts: int = 1,
    ) -> Optional[OrderIntent]:
        """Exhausted or permanent submission failure: -> REJECTED."""
        intent = self._intents.get(order_id)
        if intent is None or intent.is_terminal:
            return None

        intent.attempts = attempts
        intent.transition_to(OrderState.REJECTED, timestamp or _utcnow(), reason=error)
        self._release(intent)
        self.alerts.raise_alert(
            AlertKind.SUBMISSION_FAILED,
            f"Hedge order {order_id} could not be submitted: {error}",
            underlying=intent.underlying,
            order_id=order_id,
            timestamp=intent.updated_at,
            attempts=attempts,
        )
        return intent

    def on_withdrawn(
        self, order_id: str, reason: str, timestamp: Optional[datetime] = None
    ) -> Optional[OrderIntent]:
        """CREATED -> CANCELLED for an intent never sent to the venue."""
        intent = self._intents.get(order_id)
        if intent is None or intent.is_terminal:
            return None

        intent.transition_to(OrderState.CANCELLED, timestamp or _utcnow(), reason=reason)
        self._release(intent)
        logger.warning(f"Order {order_id} withdrawn before submission: {reason}")
        return intent

    async def drain(self, timeout: Optional[float] = None) -> list[OrderIntent]:
        """
        Cancel every open intent and wait for them to resolve.

        Intents still open after `timeout` are marked STALE.

        Returns:
            Intents that did not resolve in time
        """
        timeout = self.config.shutdown_timeout if timeout is None else timeout
        pending = self.open_intents()
        if not pending:
            return []

        logger.info(f"Draining {len(pending)} open hedge order(s)")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        cancelled: set[str] = set()
        while any(not i.is_terminal for i in pending) and loop.time() < deadline:
            # Intents acknowledged while draining are cancelled as they appear
            for intent in pending:
                if intent.state == OrderState.SUBMITTED and intent.id not in cancelled:
                    cancelled.add(intent.id)
                    await self._request_cancel(intent.id)
            await asyncio.sleep(0.01)

        unresolved = [i for i in pending if not i.is_terminal]
        now = _utcnow()
        for intent in unresolved:
            intent.transition_to(OrderState.STALE, now, reason="unresolved at shutdown")
            self._release(intent)
        return unresolved

    async def close(self) -> None:
        """Cancel timers and background tasks."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _start_timer(self, order_id: str) -> None:
        loop = asyncio.get_running_loop()
        self._timers[order_id] = loop.call_later(
            self.config.order_timeout,
            lambda: self._sink(OrderTimedOut(order_id=order_id, timestamp=_utcnow())),
        )

    def _release(self, intent: OrderIntent) -> None:
        timer = self._timers.pop(intent.id, None)
        if timer is not None:
            timer.cancel()
        if self._active.get(intent.underlying) == intent.id:
            del self._active[intent.underlying]

    def _spawn(self, coro) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.warning("No running event loop, cancel request not sent")
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _request_cancel(self, order_id: str) -> None:
        try:
            cancelled = await self.gateway.cancel(order_id)
        except ConnectionError as e:
            logger.warning(f"Cancel request for {order_id} failed: {e}")
            return
        logger.debug(f"Cancel request for {order_id}: {'sent' if cancelled else 'not working'}")
