"""
Order plane service facade.

Wires every component from one EngineConfig and exposes the inbound API:

    submit_order / wait_for_submission / resubmit_order
    modify_order / cancel_order / get_order
    get_positions / update_mark_price / sync_positions
    connect_broker / disconnect_broker / health_summary
    routing_decisions / subscribe / handle_webhook

``config.mode`` decides which adapters are wired: ``simulated`` runs every
configured broker as an in-process PaperBroker speaking the canonical
dialect; ``live`` uses each broker's configured adapter and dialect.
"""

import asyncio
from typing import Any, Dict, List, Optional, Set, Union

from contracts.validators import BrokerEvent, ModifyRequest, OrderIntent
from order_plane.adapters.base import BrokerAdapter
from order_plane.adapters.paper_broker import PaperBroker
from order_plane.adapters.rest_broker import RestBrokerAdapter
from order_plane.broker.sessions import BrokerSessionManager
from order_plane.events import BrokerHealthChanged, OrderEventBus, Subscription
from order_plane.health.monitor import ConnectionHealthMonitor, HealthSummary
from order_plane.persistence.store import OrderStore
from order_plane.positions.aggregator import PositionAggregator
from order_plane.reconciliation.engine import EventOutcome, ReconciliationEngine
from order_plane.recovery.manager import FailureRecoveryManager
from order_plane.routing.engine import RoutingEngine
from order_plane.routing.quality import ExecutionQualityTracker
from order_plane.translation.dialects import get_dialect
from order_plane.translation.translator import OrderTranslator
from shared.config import EngineConfig, Mode
from shared.errors import PersistenceError
from shared.logging import StructuredLogger
from shared.metrics import OrderPlaneMetrics
from shared.models.order import OrderSnapshot
from shared.models.position import PositionDiscrepancy, PositionSnapshot
from shared.models.routing import RoutingDecision
from shared.models.session import HealthStatus, SessionSnapshot
from shared.results import Result
from shared.security.credentials import CredentialStore

logger = StructuredLogger(__name__)


def effective_config(config: EngineConfig) -> EngineConfig:
    """Simulated mode: every broker becomes a canonical-dialect paper broker."""
    if config.mode != Mode.SIMULATED:
        return config
    brokers = [b.model_copy(update={"adapter": "paper", "dialect": "canonical"}) for b in config.brokers]
    return config.model_copy(update={"brokers": brokers})


def build_adapters(config: EngineConfig) -> Dict[str, BrokerAdapter]:
    adapters: Dict[str, BrokerAdapter] = {}
    for broker in config.enabled_brokers:
        if broker.adapter == "paper":
            adapters[broker.broker_id] = PaperBroker(broker.broker_id, broker.paper, broker.session_ttl_s)
        else:
            adapters[broker.broker_id] = RestBrokerAdapter(
                broker.broker_id, broker.rest.base_url, get_dialect(broker.dialect), broker.rest.timeout_s,
            )
    return adapters


class OrderPlaneService:
    def __init__(
        self,
        config: EngineConfig,
        credentials: Optional[CredentialStore] = None,
        adapters: Optional[Dict[str, BrokerAdapter]] = None,
        store: Optional[OrderStore] = None,
        metrics: Optional[OrderPlaneMetrics] = None,
        run_heartbeats: bool = True,
    ):
        self.config = effective_config(config)
        cfg = self.config
        self.metrics = metrics or OrderPlaneMetrics()
        self.credentials = credentials or CredentialStore()
        self.adapters = adapters if adapters is not None else build_adapters(cfg)
        self.store = store or OrderStore(cfg.persistence.url, cfg.persistence.echo)
        self.bus = OrderEventBus(cfg.events.queue_size)

        self.health = ConnectionHealthMonitor(cfg.health)
        self.translator = OrderTranslator.from_config(cfg)
        self.quality = ExecutionQualityTracker(
            cfg.routing.quality_prior_fills, cfg.routing.quality_prior_total, cfg.routing.latency_alpha,
        )
        self.positions = PositionAggregator()
        self.sessions = BrokerSessionManager(
            cfg, self.adapters, self.credentials, self.health, self.metrics, run_heartbeats=run_heartbeats,
        )
        self.routing = RoutingEngine(
            cfg.routing, self.translator, self.sessions, self.health, self.quality, self.positions,
            on_decision=self._record_decision, metrics=self.metrics,
        )
        self.recovery = FailureRecoveryManager(
            cfg.recovery, self.routing, self.translator, self.sessions, self.health,
            quality=self.quality, metrics=self.metrics,
        )
        self.engine = ReconciliationEngine(
            self.translator, self.sessions, self.positions, self.recovery, self.store,
            bus=self.bus, metrics=self.metrics, quality=self.quality,
        )
        self.recovery.attach(self.engine)
        self.sessions.set_event_handler(self.engine.apply_broker_event)
        self.health.add_listener(self._on_health_change)
        self._background: Set[asyncio.Task] = set()
        self._started = False

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Restore persisted state and start the reconciliation poll."""
        if self._started:
            return
        self.engine.restore()
        self.recovery.start()
        self._started = True
        logger.info("order_plane_started", mode=self.config.mode.value,
                    brokers=sorted(self.adapters))

    async def close(self) -> None:
        await self.recovery.stop()
        await self.engine.close()
        await self.sessions.close()
        for adapter in self.adapters.values():
            await adapter.close()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self.store.close()
        self._started = False
        logger.info("order_plane_stopped")

    async def __aenter__(self) -> "OrderPlaneService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _record_decision(self, decision: RoutingDecision) -> None:
        try:
            self.store.save_routing_decision(decision)
        except PersistenceError:
            self.engine.submission_halted = True
            raise

    def _on_health_change(self, user_id: str, broker_id: str, old: HealthStatus, new: HealthStatus) -> None:
        self.metrics.set_session_health(user_id, broker_id, new.value)
        self.bus.publish(BrokerHealthChanged(user_id=user_id, broker_id=broker_id, previous=old, current=new))

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    async def connect_broker(self, user_id: str, broker_id: str,
                             credentials_ref: Optional[str] = None) -> SessionSnapshot:
        """Authenticate a session; raises BrokerAuthError / BrokerUnavailable / BrokerTimeout."""
        snapshot = await self.sessions.connect(user_id, broker_id, credentials_ref)
        # orders flagged while the broker was away
        task = asyncio.get_running_loop().create_task(self.engine.reconcile_flagged(user_id, broker_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return snapshot

    async def disconnect_broker(self, user_id: str, broker_id: str) -> bool:
        return await self.sessions.disconnect(user_id, broker_id)

    def set_allowed_brokers(self, user_id: str, broker_ids: Optional[List[str]]) -> None:
        self.routing.set_allowed_brokers(user_id, broker_ids)

    def health_summary(self, user_id: str) -> HealthSummary:
        return self.health.summary(user_id)

    # ------------------------------------------------------------------
    # orders
    # ------------------------------------------------------------------
    async def submit_order(self, intent: Union[OrderIntent, dict]) -> Result[str]:
        return await self.engine.submit(intent)

    async def wait_for_submission(self, order_id: str, timeout: Optional[float] = None) -> Result[str]:
        return await self.engine.wait_for_submission(order_id, timeout)

    async def resubmit_order(self, order_id: str) -> Result[str]:
        return await self.engine.resubmit(order_id)

    async def modify_order(self, order_id: str, params: Union[ModifyRequest, dict]) -> Result[OrderSnapshot]:
        return await self.engine.modify(order_id, params)

    async def cancel_order(self, order_id: str) -> Result[OrderSnapshot]:
        return await self.engine.cancel(order_id)

    def get_order(self, order_id: str) -> Result[OrderSnapshot]:
        return self.engine.get_order(order_id)

    def list_orders(self, user_id: Optional[str] = None) -> List[OrderSnapshot]:
        return self.engine.orders(user_id)

    async def apply_broker_event(self, broker_id: str, native_id: str,
                                 event: Union[BrokerEvent, dict]) -> Result[EventOutcome]:
        return await self.engine.apply_broker_event(broker_id, native_id, event)

    def handle_webhook(self, broker_id: str, user_id: str, payload: Dict[str, Any]) -> bool:
        """Deliver a broker's push notification (HTTP callback body).

        Returns False when the broker takes no webhooks, the payload holds
        no order update, or the user has no live session. The event is
        applied asynchronously; ``drain`` waits for it.
        """
        adapter = self.adapters.get(broker_id)
        if adapter is None:
            raise KeyError(f"unknown broker: {broker_id}")
        if not isinstance(adapter, RestBrokerAdapter):
            logger.warning("webhook_ignored", broker_id=broker_id, reason="broker has no webhooks")
            return False
        return adapter.handle_webhook(user_id, payload)

    def routing_decisions(self, order_id: str) -> List[RoutingDecision]:
        return self.store.routing_decisions(order_id)

    async def reconcile(self) -> int:
        return await self.engine.reconcile_flagged()

    # ------------------------------------------------------------------
    # positions
    # ------------------------------------------------------------------
    def get_positions(self, user_id: str, include_flat: bool = True) -> List[PositionSnapshot]:
        return self.positions.positions(user_id, include_flat=include_flat)

    def update_mark_price(self, symbol: str, price: float) -> List[PositionSnapshot]:
        return self.positions.update_mark_price(symbol.upper(), price)

    async def sync_positions(self, user_id: str, broker_id: str) -> List[PositionDiscrepancy]:
        """Compare the broker's position statement with our sub-positions."""
        reported = await self.sessions.call(
            user_id, broker_id, "get_positions", lambda adapter, ctx: adapter.get_positions(ctx),
        )
        instruments = self.translator.instruments
        canonical = {instruments.native_symbol(s, broker_id): s for s in instruments.symbols()}
        mapped: Dict[str, float] = {}
        for native, qty in reported.items():
            symbol = canonical.get(native, native.upper())
            mapped[symbol] = mapped.get(symbol, 0.0) + float(qty)
        return self.positions.reconcile_broker_positions(user_id, broker_id, mapped)

    # ------------------------------------------------------------------
    # events
    # ------------------------------------------------------------------
    def subscribe(self, maxsize: Optional[int] = None) -> Subscription:
        return self.bus.subscribe(maxsize)

    async def drain(self) -> None:
        """Wait until every queued broker event has been applied."""
        await self.sessions.drain()
