"""
Failure recovery manager.

Drives one order's submission to an accepting broker:

    route -> translate -> submit (retried with exponential backoff)
          -> reroute to the next-best broker when a broker is exhausted

Policy:
- Transient errors (unavailable, rate limited, timeout confirmed absent)
  are retried up to ``max_attempts`` per broker, then the broker is
  excluded and the order rerouted, at most ``max_reroutes`` times.
- A broker that turns DOWN stops being retried immediately.
- Business rejections are never retried (OrderRejected).
- A submit timeout is an unknown outcome: the broker is polled by client
  order id first. Found -> adopted. Not found -> retried. Poll failed ->
  the order is handed back unconfirmed and flagged for reconciliation.

The manager never mutates orders; it returns a SubmissionOutcome and the
reconciliation engine records it. It also listens to health changes:
DOWN flags the broker's open orders, recovery to HEALTHY triggers a
reconciliation poll. The periodic pass also polls live orders at brokers
that do not push events.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import List, Optional, Protocol, Set

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from contracts.validators import BrokerOrderStatus
from order_plane.broker.sessions import BrokerSessionManager
from order_plane.health.monitor import ConnectionHealthMonitor
from order_plane.routing.engine import RoutingEngine
from order_plane.routing.quality import ExecutionQualityTracker
from order_plane.translation.translator import OrderTranslator
from shared.config import RecoveryConfig
from shared.errors import (
    BrokerError,
    BrokerRejection,
    BrokerTimeout,
    NoAvailableBroker,
    OrderRejected,
    SubmissionFailed,
)
from shared.logging import StructuredLogger
from shared.metrics import OrderPlaneMetrics
from shared.models.order import Order
from shared.models.routing import RoutingDecision
from shared.models.session import HealthStatus

logger = StructuredLogger(__name__)


@dataclass(frozen=True)
class SubmissionOutcome:
    broker_id: str
    native_id: Optional[str]
    decision: RoutingDecision
    #: broker's view when the order was adopted after a timeout
    status: Optional[BrokerOrderStatus] = None
    #: False when the submit timed out and the follow-up poll failed too
    confirmed: bool = True


class Reconciler(Protocol):
    def flag_for_reconciliation(self, user_id: str, broker_id: str) -> int: ...

    async def reconcile_flagged(self, user_id: Optional[str] = None,
                                broker_id: Optional[str] = None) -> int: ...

    async def poll_open_orders(self) -> int: ...


class FailureRecoveryManager:
    def __init__(
        self,
        config: RecoveryConfig,
        routing: RoutingEngine,
        translator: OrderTranslator,
        sessions: BrokerSessionManager,
        health: ConnectionHealthMonitor,
        quality: Optional[ExecutionQualityTracker] = None,
        metrics: Optional[OrderPlaneMetrics] = None,
    ):
        self.config = config
        self.routing = routing
        self.translator = translator
        self.sessions = sessions
        self.health = health
        self.quality = quality
        self.metrics = metrics or OrderPlaneMetrics()
        self._reconciler: Optional[Reconciler] = None
        self._tasks: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None

    def attach(self, reconciler: Reconciler) -> None:
        """Wire the reconciliation engine and start listening to health changes."""
        self._reconciler = reconciler
        self.health.add_listener(self.on_health_change)

    # ------------------------------------------------------------------
    # submission
    # ------------------------------------------------------------------
    async def submit(self, order: Order) -> SubmissionOutcome:
        """Route and submit ``order`` until one broker accepts it.

        Raises NoAvailableBroker / UnsupportedOrderType (first routing
        attempt), OrderRejected or SubmissionFailed.
        """
        failed: List[str] = []
        last_error: Optional[BrokerError] = None
        for attempt in range(1, self.config.max_reroutes + 2):
            try:
                decision = self.routing.route(order, exclude=failed, attempt=attempt)
            except NoAvailableBroker as exc:
                if not failed:
                    raise
                raise SubmissionFailed(
                    f"order {order.order_id}: no broker left after failures on {', '.join(failed)}",
                    order_id=order.order_id, failed_brokers=list(failed),
                    last_error=str(last_error), decision_id=exc.decision.decision_id,
                ) from last_error

            broker_id = decision.chosen_broker
            try:
                return await self._submit_with_retry(order, broker_id, decision)
            except BrokerRejection as exc:
                logger.warning("submission_rejected", order_id=order.order_id,
                               broker_id=broker_id, reason=exc.reason)
                raise OrderRejected(exc.reason, broker_id=broker_id, order_id=order.order_id) from exc
            except BrokerError as exc:
                last_error = exc
                failed.append(broker_id)
                self.metrics.submission_retries.labels(broker_id=broker_id, reason="reroute").inc()
                logger.warning("submission_rerouting", order_id=order.order_id, broker_id=broker_id,
                               attempt=attempt, error_type=type(exc).__name__, error=str(exc))

        raise SubmissionFailed(
            f"order {order.order_id}: reroute limit reached ({self.config.max_reroutes})",
            order_id=order.order_id, failed_brokers=list(failed), last_error=str(last_error),
        ) from last_error

    def _retryable(self, user_id: str, broker_id: str, exc: BaseException) -> bool:
        if not isinstance(exc, BrokerError) or not exc.transient:
            return False
        return self.health.status(user_id, broker_id) != HealthStatus.DOWN

    def _before_sleep(self, order: Order, broker_id: str):
        def log_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception()
            self.metrics.submission_retries.labels(
                broker_id=broker_id, reason=type(exc).__name__,
            ).inc()
            logger.info("submission_retry", order_id=order.order_id, broker_id=broker_id,
                        attempt=state.attempt_number, error=str(exc),
                        sleep_s=round(state.next_action.sleep, 3))
        return log_retry

    async def _submit_with_retry(self, order: Order, broker_id: str,
                                 decision: RoutingDecision) -> SubmissionOutcome:
        payload = self.translator.translate(order, broker_id)
        cfg = self.config
        retrying = AsyncRetrying(
            stop=stop_after_attempt(cfg.max_attempts),
            wait=wait_exponential(multiplier=cfg.backoff_initial_s, exp_base=cfg.backoff_multiplier,
                                  max=cfg.backoff_max_s),
            retry=retry_if_exception(lambda exc: self._retryable(order.user_id, broker_id, exc)),
            before_sleep=self._before_sleep(order, broker_id),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._attempt(order, broker_id, decision, payload)

    async def _attempt(self, order: Order, broker_id: str, decision: RoutingDecision,
                       payload: dict) -> SubmissionOutcome:
        started = time.perf_counter()
        try:
            native_id = await self.sessions.call(
                order.user_id, broker_id, "submit", lambda adapter, ctx: adapter.submit(ctx, payload),
            )
        except BrokerTimeout as exc:
            return await self._confirm_after_timeout(order, broker_id, decision, exc)
        if self.quality is not None:
            self.quality.record_latency(broker_id, time.perf_counter() - started)
        logger.info("submission_accepted", order_id=order.order_id, broker_id=broker_id,
                    native_id=native_id)
        return SubmissionOutcome(broker_id=broker_id, native_id=native_id, decision=decision)

    async def _confirm_after_timeout(self, order: Order, broker_id: str, decision: RoutingDecision,
                                     timeout: BrokerTimeout) -> SubmissionOutcome:
        logger.warning("submission_outcome_unknown", order_id=order.order_id, broker_id=broker_id,
                       error=str(timeout))
        try:
            status = await self.sessions.call(
                order.user_id, broker_id, "find_order",
                lambda adapter, ctx: adapter.find_order(ctx, order.order_id),
                consume_budget=False,
            )
        except BrokerError as exc:
            logger.error("submission_unconfirmed", order_id=order.order_id, broker_id=broker_id,
                         error=str(exc))
            return SubmissionOutcome(broker_id=broker_id, native_id=None, decision=decision,
                                     confirmed=False)
        if status is None:
            # never reached the book: safe to send again
            raise timeout
        logger.info("submission_adopted", order_id=order.order_id, broker_id=broker_id,
                    native_id=status.native_id)
        return SubmissionOutcome(broker_id=broker_id, native_id=status.native_id,
                                 decision=decision, status=status)

    # ------------------------------------------------------------------
    # health driven reconciliation
    # ------------------------------------------------------------------
    def on_health_change(self, user_id: str, broker_id: str,
                         old: HealthStatus, new: HealthStatus) -> None:
        if self._reconciler is None:
            return
        if new == HealthStatus.DOWN:
            flagged = self._reconciler.flag_for_reconciliation(user_id, broker_id)
            if flagged:
                logger.warning("orders_flagged_for_reconciliation", user_id=user_id,
                               broker_id=broker_id, count=flagged)
        elif new == HealthStatus.HEALTHY and old != HealthStatus.HEALTHY:
            self._spawn(self._reconciler.reconcile_flagged(user_id, broker_id))

    def _spawn(self, coro) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning("reconciliation_not_scheduled", reason="no running event loop")
            return
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("reconciliation_task_failed", error=repr(task.exception()))

    async def _reconcile_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.reconciliation_poll_interval_s)
            await self._reconciler.reconcile_flagged()
            await self._reconciler.poll_open_orders()

    def start(self) -> None:
        """Start the periodic reconciliation poll."""
        if self._loop_task is None and self._reconciler is not None:
            self._loop_task = asyncio.get_running_loop().create_task(self._reconcile_loop())
            self._loop_task.add_done_callback(self._task_done)

    async def stop(self) -> None:
        tasks = list(self._tasks)
        if self._loop_task is not None:
            tasks.append(self._loop_task)
            self._loop_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def wait_idle(self) -> None:
        """Wait for scheduled reconciliation passes (tests, shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
