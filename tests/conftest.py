"""
pytest configuration and global fixtures.

This file is automatically loaded by pytest and provides:
- Engine configuration factories (two deterministic paper brokers)
- Service factories wired with in-memory persistence and test credentials
- Async polling helpers for asynchronous broker events
- Pytest hooks and Hypothesis profiles
"""

import asyncio
import os
from typing import Callable, Dict, List, Optional

import pytest
from hypothesis import HealthCheck, Verbosity, settings

from order_plane.app.service import OrderPlaneService
from shared.config import EngineConfig
from shared.models.order import OrderState
from shared.security.credentials import CredentialStore

USER = "user-1"
OTHER_USER = "user-2"


def paper_broker(broker_id: str, **overrides) -> Dict:
    """Paper broker that only acknowledges; fills are driven by the test."""
    cfg = {
        "broker_id": broker_id,
        "paper": {"auto_fill": False, "fill_delay_ms": 0},
        "rate_limit": {"capacity": 1000, "refill_per_second": 1000},
    }
    cfg.update(overrides)
    return cfg


def default_brokers() -> List[Dict]:
    # paper-a is the cheaper broker and wins routing by default
    return [
        paper_broker("paper-a", commission={"per_order": 1.0}),
        paper_broker("paper-b", commission={"per_order": 2.0}),
    ]


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def make_config() -> Callable[..., EngineConfig]:
    """
    Factory for engine configurations.

    Sections passed as keyword arguments are merged over the defaults, so
    ``make_config(health={"degraded_after_failures": 10})`` keeps the rest
    of the health section.
    """
    def _make(brokers: Optional[List[Dict]] = None, instruments: Optional[List[Dict]] = None,
              **sections) -> EngineConfig:
        data = {
            "mode": "simulated",
            "brokers": brokers if brokers is not None else default_brokers(),
            "instruments": instruments if instruments is not None else [
                {"symbol": "AAPL", "tick_size": 0.01, "lot_size": 1},
                {"symbol": "INFY", "tick_size": 0.05, "lot_size": 1},
            ],
            "recovery": {
                "max_attempts": 3,
                "backoff_initial_s": 0,
                "backoff_max_s": 0,
                "call_timeout_s": 1.0,
                "reconciliation_poll_interval_s": 60,
            },
            "persistence": {"url": "sqlite://"},
            "logging": {"json_output": False},
        }
        for name, value in sections.items():
            if isinstance(value, dict) and isinstance(data.get(name), dict):
                data[name] = {**data[name], **value}
            else:
                data[name] = value
        return EngineConfig.model_validate(data)
    return _make


@pytest.fixture
def config(make_config) -> EngineConfig:
    return make_config()


def credentials_for(config: EngineConfig, users=(USER, OTHER_USER)) -> CredentialStore:
    secrets = {
        f"{broker.broker_id}-{user}": f"key-{broker.broker_id}:{user}"
        for broker in config.brokers for user in users
    }
    return CredentialStore(secrets, environ={})


# ============================================================================
# Service Fixtures
# ============================================================================


@pytest.fixture
def make_service(make_config) -> Callable[..., OrderPlaneService]:
    """
    Factory for OrderPlaneService instances.

    Heartbeat loops are off by default; tests drive heartbeats explicitly
    through ``service.sessions.heartbeat_once``. Use the result as an
    async context manager.
    """
    def _make(config: Optional[EngineConfig] = None, **kwargs) -> OrderPlaneService:
        config = config or make_config()
        kwargs.setdefault("credentials", credentials_for(config))
        kwargs.setdefault("run_heartbeats", False)
        return OrderPlaneService(config, **kwargs)
    return _make


@pytest.fixture
def wait_until():
    """Poll ``predicate`` until it holds; AssertionError after ``timeout`` seconds."""
    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.002) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError(f"condition not met within {timeout:.2f}s")
            await asyncio.sleep(interval)
    return _wait


@pytest.fixture
def place_order(wait_until):
    """
    Submit an intent and wait until the broker acknowledged it.

    Returns the order id. Keyword arguments override the default intent
    (market BUY of 100 AAPL for USER).
    """
    async def _place(service: OrderPlaneService, state: OrderState = OrderState.ACKNOWLEDGED,
                     **intent) -> str:
        payload = {"user_id": USER, "symbol": "AAPL", "side": "BUY", "quantity": 100,
                   "order_type": "MARKET"}
        payload.update(intent)
        result = await service.submit_order(payload)
        assert result.ok, result.error
        submitted = await service.wait_for_submission(result.value, timeout=2.0)
        assert submitted.ok, submitted.error
        await wait_until(lambda: service.get_order(result.value).value.state == state)
        return result.value
    return _place


# ============================================================================
# Pytest Hooks
# ============================================================================


def pytest_configure(config):
    """
    Pytest configuration hook.

    Register custom markers.
    """
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "property: Property-based tests")
    config.addinivalue_line("markers", "e2e: End-to-end tests")


def pytest_collection_modifyitems(config, items):
    """
    Pytest hook to modify test collection.

    Auto-mark tests based on their location.
    """
    for item in items:
        path = str(item.fspath)
        if f"{os.sep}unit{os.sep}" in path:
            item.add_marker(pytest.mark.unit)
        elif f"{os.sep}property{os.sep}" in path:
            item.add_marker(pytest.mark.property)
        elif f"{os.sep}e2e{os.sep}" in path:
            item.add_marker(pytest.mark.e2e)


# ============================================================================
# Hypothesis Configuration
# ============================================================================

settings.register_profile(
    "default",
    max_examples=50,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture],
)

settings.register_profile(
    "ci",
    max_examples=200,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture],
)

settings.register_profile(
    "dev",
    max_examples=10,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture],
    verbosity=Verbosity.verbose,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "default"))
