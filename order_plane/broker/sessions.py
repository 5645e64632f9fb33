"""
Broker session manager.

Owns every live (user, broker) session:

- Authentication through the broker adapter; the access token is kept in
  an in-memory vault keyed by an opaque ``token_handle`` and never copied
  into the session record
- One rate-limit budget per session
- One heartbeat task per session (liveness, buying power, token refresh
  before expiry)
- One event pump per session: adapter notifications are queued and fed,
  in arrival order, to the reconciliation engine
- ``call()``: the single choke point for broker requests (budget,
  timeout, health bookkeeping, latency metrics)
"""

import asyncio
from datetime import timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar
from uuid import uuid4

from pydantic import SecretStr

from contracts.validators import BrokerEvent
from order_plane.adapters.base import BrokerAdapter
from order_plane.broker.throttling import RateLimitBudget
from order_plane.health.monitor import ConnectionHealthMonitor
from shared.config import EngineConfig
from shared.errors import (
    BrokerAuthError,
    BrokerError,
    BrokerRateLimited,
    BrokerTimeout,
    BrokerUnavailable,
)
from shared.logging import PerformanceLogger, StructuredLogger
from shared.metrics import OrderPlaneMetrics
from shared.models.base import utc_now
from shared.models.session import BrokerSession, SessionContext, SessionSnapshot
from shared.security.credentials import CredentialStore

logger = StructuredLogger(__name__)

T = TypeVar("T")
SessionKey = Tuple[str, str]
EventHandler = Callable[[str, str, BrokerEvent], Awaitable[object]]

#: failures that say something about connectivity (business errors do not)
HEALTH_FAILURES = (BrokerUnavailable, BrokerTimeout, BrokerAuthError)


class BrokerSessionManager:
    def __init__(
        self,
        config: EngineConfig,
        adapters: Dict[str, BrokerAdapter],
        credentials: CredentialStore,
        health: ConnectionHealthMonitor,
        metrics: Optional[OrderPlaneMetrics] = None,
        run_heartbeats: bool = True,
    ):
        self.config = config
        self.adapters = adapters
        self.credentials = credentials
        self.health = health
        self.metrics = metrics or OrderPlaneMetrics()
        self.run_heartbeats = run_heartbeats
        self._sessions: Dict[SessionKey, BrokerSession] = {}
        self._tokens: Dict[str, SecretStr] = {}
        self._budgets: Dict[SessionKey, RateLimitBudget] = {}
        self._queues: Dict[SessionKey, asyncio.Queue] = {}
        self._tasks: Dict[SessionKey, List[asyncio.Task]] = {}
        self._event_handler: Optional[EventHandler] = None

    def set_event_handler(self, handler: EventHandler) -> None:
        self._event_handler = handler

    # ------------------------------------------------------------------
    # lookup
    # ------------------------------------------------------------------
    def adapter(self, broker_id: str) -> BrokerAdapter:
        return self.adapters[broker_id]

    def get(self, user_id: str, broker_id: str) -> Optional[BrokerSession]:
        return self._sessions.get((user_id, broker_id))

    def sessions_for(self, user_id: str) -> List[BrokerSession]:
        return [s for (uid, _), s in sorted(self._sessions.items()) if uid == user_id]

    def budget(self, user_id: str, broker_id: str) -> Optional[RateLimitBudget]:
        return self._budgets.get((user_id, broker_id))

    def context(self, user_id: str, broker_id: str) -> SessionContext:
        session = self._sessions.get((user_id, broker_id))
        if session is None or not session.active:
            raise BrokerUnavailable(f"no active session for {user_id}@{broker_id}", broker_id)
        return SessionContext(
            user_id=user_id,
            broker_id=broker_id,
            access_token=self._tokens[session.token_handle],
            account_id=session.account_id,
        )

    def snapshot(self, user_id: str, broker_id: str) -> Optional[SessionSnapshot]:
        session = self.get(user_id, broker_id)
        if session is None:
            return None
        budget = self._budgets[(user_id, broker_id)]
        return SessionSnapshot(
            user_id=session.user_id,
            broker_id=session.broker_id,
            session_id=session.session_id,
            credentials_ref=session.credentials_ref,
            account_id=session.account_id,
            expires_at=session.expires_at,
            health=self.health.status(user_id, broker_id),
            rate_limit_remaining=float(budget.remaining),
            buying_power=session.buying_power,
            last_heartbeat_at=session.last_heartbeat_at,
        )

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    async def connect(self, user_id: str, broker_id: str, credentials_ref: Optional[str] = None) -> SessionSnapshot:
        """Authenticate and start heartbeats and the event pump.

        Raises BrokerAuthError when the credentials cannot be resolved or
        the broker refuses them.
        """
        if broker_id not in self.adapters:
            raise BrokerUnavailable(f"broker {broker_id} not configured", broker_id)
        broker_cfg = self.config.broker(broker_id)
        ref = credentials_ref or broker_cfg.credentials_ref or f"{broker_id}-{user_id}"
        try:
            secret = self.credentials.resolve(ref)
        except KeyError as exc:
            raise BrokerAuthError(f"credentials not found for handle {ref}", broker_id) from exc

        if (user_id, broker_id) in self._sessions:
            await self.disconnect(user_id, broker_id, reason="reconnect")

        adapter = self.adapters[broker_id]
        try:
            grant = await asyncio.wait_for(
                adapter.authenticate(user_id, secret), self.config.recovery.call_timeout_s
            )
        except asyncio.TimeoutError as exc:
            raise BrokerTimeout("authentication timed out", broker_id) from exc
        token_handle = uuid4().hex
        self._tokens[token_handle] = grant.access_token
        session = BrokerSession(
            user_id=user_id,
            broker_id=broker_id,
            session_id=uuid4().hex,
            credentials_ref=ref,
            token_handle=token_handle,
            account_id=grant.account_id,
            expires_at=grant.expires_at,
        )
        key = session.key
        self._sessions[key] = session
        self._budgets[key] = RateLimitBudget(
            capacity=broker_cfg.rate_limit.capacity,
            refill_per_second=broker_cfg.rate_limit.refill_per_second,
        )
        self.health.register(user_id, broker_id)
        self.metrics.set_session_health(user_id, broker_id, "HEALTHY")

        queue: asyncio.Queue = asyncio.Queue()
        self._queues[key] = queue
        adapter.subscribe(user_id, lambda native_id, event: queue.put_nowait((native_id, event)))

        tasks = [asyncio.create_task(self._pump(key, queue), name=f"pump-{broker_id}-{user_id}")]
        if self.run_heartbeats:
            tasks.append(asyncio.create_task(self._heartbeat_loop(key), name=f"hb-{broker_id}-{user_id}"))
        self._tasks[key] = tasks

        logger.info("broker_session_connected", user_id=user_id, broker_id=broker_id,
                    session_id=session.session_id, expires_at=session.expires_at)
        return self.snapshot(user_id, broker_id)

    async def disconnect(self, user_id: str, broker_id: str, reason: str = "disconnect") -> bool:
        key = (user_id, broker_id)
        session = self._sessions.pop(key, None)
        if session is None:
            return False
        self.adapters[broker_id].unsubscribe(user_id)
        # queued events are still applied before the pump goes away
        queue = self._queues.pop(key, None)
        if queue is not None and self._event_handler is not None:
            await queue.join()
        current = asyncio.current_task()
        tasks = [t for t in self._tasks.pop(key, []) if t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tokens.pop(session.token_handle, None)
        self._budgets.pop(key, None)
        self.health.mark_down(user_id, broker_id, reason)
        self.health.remove(user_id, broker_id)
        self.metrics.set_session_health(user_id, broker_id, "DOWN")
        logger.info("broker_session_disconnected", user_id=user_id, broker_id=broker_id, reason=reason)
        return True

    async def close(self) -> None:
        for user_id, broker_id in list(self._sessions):
            await self.disconnect(user_id, broker_id, reason="shutdown")

    # ------------------------------------------------------------------
    # broker calls
    # ------------------------------------------------------------------
    async def call(
        self,
        user_id: str,
        broker_id: str,
        operation: str,
        fn: Callable[[BrokerAdapter, SessionContext], Awaitable[T]],
        consume_budget: bool = True,
    ) -> T:
        """Run one broker request through budget, timeout and health bookkeeping."""
        ctx = self.context(user_id, broker_id)
        if consume_budget and not self._budgets[(user_id, broker_id)].try_consume():
            raise BrokerRateLimited(f"rate-limit budget exhausted for {broker_id}", broker_id)
        adapter = self.adapters[broker_id]
        try:
            with self.metrics.time_broker_call(broker_id, operation), \
                    PerformanceLogger(logger, f"broker_{operation}", broker_id=broker_id, user_id=user_id):
                result = await asyncio.wait_for(fn(adapter, ctx), self.config.recovery.call_timeout_s)
        except asyncio.TimeoutError as exc:
            self.health.record_failure(user_id, broker_id, f"{operation} timed out")
            raise BrokerTimeout(f"{operation} timed out", broker_id) from exc
        except HEALTH_FAILURES as exc:
            self.health.record_failure(user_id, broker_id, f"{operation}: {exc}")
            raise
        except BrokerError:
            self.health.record_success(user_id, broker_id)
            raise
        self.health.record_success(user_id, broker_id)
        return result

    # ------------------------------------------------------------------
    # heartbeats
    # ------------------------------------------------------------------
    async def heartbeat_once(self, user_id: str, broker_id: str) -> bool:
        """One heartbeat: liveness + buying power, refreshing the token when due."""
        key = (user_id, broker_id)
        session = self._sessions.get(key)
        if session is None or not session.active:
            return False
        adapter = self.adapters[broker_id]

        if session.expires_within(timedelta(seconds=self.config.health.refresh_margin_s)):
            if not await self._refresh(session):
                return False

        try:
            account = await asyncio.wait_for(
                adapter.heartbeat(self.context(user_id, broker_id)),
                self.config.health.heartbeat_timeout_s,
            )
        except asyncio.TimeoutError:
            self.health.record_failure(user_id, broker_id, "heartbeat timed out", heartbeat=True)
            return False
        except BrokerError as exc:
            self.health.record_failure(user_id, broker_id, f"heartbeat: {exc}", heartbeat=True)
            return False

        now = utc_now()
        session.last_heartbeat_at = now
        if account.buying_power is not None:
            session.buying_power = account.buying_power
        self.health.record_success(user_id, broker_id, heartbeat=True)
        return True

    async def _refresh(self, session: BrokerSession) -> bool:
        adapter = self.adapters[session.broker_id]
        try:
            secret = self.credentials.resolve(session.credentials_ref)
            grant = await asyncio.wait_for(
                adapter.refresh(self.context(session.user_id, session.broker_id), secret),
                self.config.recovery.call_timeout_s,
            )
        except (KeyError, BrokerAuthError) as exc:
            session.active = False
            self.health.mark_down(session.user_id, session.broker_id, f"auth failure: {exc}")
            logger.error("broker_session_auth_failed", user_id=session.user_id,
                         broker_id=session.broker_id, error=str(exc))
            return False
        except (asyncio.TimeoutError, BrokerError) as exc:
            self.health.record_failure(session.user_id, session.broker_id, f"refresh: {exc}", heartbeat=True)
            return False
        self._tokens[session.token_handle] = grant.access_token
        session.expires_at = grant.expires_at
        if grant.account_id:
            session.account_id = grant.account_id
        logger.info("broker_session_refreshed", user_id=session.user_id,
                    broker_id=session.broker_id, expires_at=grant.expires_at)
        return True

    async def _heartbeat_loop(self, key: SessionKey) -> None:
        user_id, broker_id = key
        interval = self.config.health.heartbeat_interval_s
        while key in self._sessions:
            await asyncio.sleep(interval)
            await self.heartbeat_once(user_id, broker_id)

    # ------------------------------------------------------------------
    # event pump
    # ------------------------------------------------------------------
    async def _pump(self, key: SessionKey, queue: asyncio.Queue) -> None:
        _, broker_id = key
        while True:
            native_id, event = await queue.get()
            try:
                if self._event_handler is None:
                    logger.warning("broker_event_dropped", broker_id=broker_id, native_id=native_id)
                else:
                    await self._event_handler(broker_id, native_id, event)
            except Exception:
                logger.exception("broker_event_pump_error", broker_id=broker_id, native_id=native_id,
                                 event_type=event.type.value)
            finally:
                queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued broker event has been applied."""
        for queue in list(self._queues.values()):
            await queue.join()
