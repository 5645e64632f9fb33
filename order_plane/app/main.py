#!/usr/bin/env python3
"""
Order plane command line.

Usage:
    python -m order_plane.app.main --config config/order_plane.yaml demo
    python -m order_plane.app.main --config config/order_plane.yaml healthcheck
    python -m order_plane.app.main metrics

``demo`` runs a simulated session against the configured brokers (paper
brokers in simulated mode): one buy, one sell, then prints order and
position snapshots as JSON. ``healthcheck`` validates the configuration,
the persistence layer and broker authentication. ``metrics`` runs the demo
quietly and prints the Prometheus exposition.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from pydantic import ValidationError

from order_plane.app.service import OrderPlaneService
from order_plane.persistence.store import OrderStore
from shared.config import BrokerConfig, EngineConfig, InstrumentConfig, Mode, load_config
from shared.errors import OrderPlaneError, PersistenceError
from shared.logging import configure_logging
from shared.security.credentials import CredentialStore

DEMO_USER = "demo-user"


def default_config() -> EngineConfig:
    """Two simulated brokers and one instrument; used when no --config is given."""
    return EngineConfig(
        mode=Mode.SIMULATED,
        brokers=[
            BrokerConfig(broker_id="paper-a", commission={"per_order": 1.0}),
            BrokerConfig(broker_id="paper-b", commission={"rate_bps": 2.0}),
        ],
        instruments=[InstrumentConfig(symbol="AAPL", tick_size=0.01, lot_size=1)],
        persistence={"url": "sqlite://"},
        logging={"json_output": False, "level": "WARNING"},
    )


def demo_credentials(config: EngineConfig, user_id: str) -> CredentialStore:
    store = CredentialStore()
    for broker in config.enabled_brokers:
        store.register(broker.credentials_ref or f"{broker.broker_id}-{user_id}", f"demo:{broker.broker_id}")
    return store


async def run_demo(config: EngineConfig, quiet: bool = False) -> OrderPlaneService:
    credentials = demo_credentials(config, DEMO_USER) if config.mode == Mode.SIMULATED else None
    service = OrderPlaneService(config, credentials=credentials, run_heartbeats=False)
    await service.start()
    for broker in service.config.enabled_brokers:
        await service.connect_broker(DEMO_USER, broker.broker_id)

    symbol = config.instruments[0].symbol if config.instruments else "AAPL"
    lot = config.instruments[0].lot_size if config.instruments else 1.0
    order_ids = []
    for side in ("BUY", "SELL"):
        result = await service.submit_order({
            "user_id": DEMO_USER,
            "client_order_id": f"demo-{side.lower()}",
            "symbol": symbol,
            "side": side,
            "quantity": 10 * lot,
            "order_type": "MARKET",
        })
        if not result.ok:
            print(f"✗ {side} rejected: {result.error}")
            continue
        await service.wait_for_submission(result.value, timeout=5.0)
        order_ids.append(result.value)
        # let the paper broker finish filling before the opposite side
        for _ in range(200):
            await service.drain()
            snapshot = service.get_order(result.value)
            if snapshot.ok and snapshot.value.is_terminal:
                break
            await asyncio.sleep(0.01)

    if not quiet:
        for order_id in order_ids:
            print(service.get_order(order_id).value.model_dump_json(indent=2))
            for decision in service.routing_decisions(order_id):
                print(decision.model_dump_json(indent=2))
        positions = [p.model_dump(mode="json") for p in service.get_positions(DEMO_USER)]
        print(json.dumps({"positions": positions}, indent=2))
    return service


def healthcheck(config: EngineConfig) -> int:
    """
    Verify the order plane can start.

    Checks:
    - persistence URL reachable
    - at least one enabled broker
    - every broker's credentials resolvable (live mode)
    - every instrument mapped on at least one broker

    Returns:
        0 if healthy, 1 if unhealthy
    """
    checks_passed = 0
    checks_failed = 0

    print("=" * 60)
    print("HEALTHCHECK - Order Plane")
    print("=" * 60)
    print()

    try:
        store = OrderStore(config.persistence.url)
        store.ping()
        store.close()
        print(f"✓ Persistence reachable: {config.persistence.url}")
        checks_passed += 1
    except PersistenceError as exc:
        print(f"✗ Persistence unreachable: {exc}")
        checks_failed += 1

    if config.enabled_brokers:
        print(f"✓ Enabled brokers: {', '.join(b.broker_id for b in config.enabled_brokers)}")
        checks_passed += 1
    else:
        print("✗ No enabled brokers")
        checks_failed += 1

    if config.mode == Mode.LIVE:
        credentials = CredentialStore()
        for broker in config.enabled_brokers:
            if broker.credentials_ref and credentials.has(broker.credentials_ref):
                print(f"✓ Credentials resolvable: {broker.broker_id}")
                checks_passed += 1
            else:
                print(f"✗ Credentials missing: {broker.broker_id} ({broker.credentials_ref})")
                checks_failed += 1

    for instrument in config.instruments:
        routable = [
            b.broker_id for b in config.enabled_brokers
            if b.symbols is None or instrument.symbol in {s.upper() for s in b.symbols}
        ]
        if routable:
            print(f"✓ Instrument {instrument.symbol} routable via {', '.join(routable)}")
            checks_passed += 1
        else:
            print(f"✗ Instrument {instrument.symbol} has no broker")
            checks_failed += 1

    print()
    print("=" * 60)
    print(f"RESULTS: {checks_passed}/{checks_passed + checks_failed} checks passed")
    print("=" * 60)

    if checks_failed == 0:
        print("✅ Order plane healthy")
        return 0
    print(f"❌ Order plane unhealthy ({checks_failed} failures)")
    return 1


async def _demo(config: EngineConfig, metrics_only: bool) -> int:
    service = await run_demo(config, quiet=metrics_only)
    try:
        if metrics_only:
            sys.stdout.write(service.metrics.render().decode("utf-8"))
    finally:
        await service.close()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Multi-broker order plane")
    parser.add_argument("--config", help="YAML configuration file (environment overrides apply)")
    parser.add_argument("command", choices=["demo", "healthcheck", "metrics"])
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config) if args.config else default_config()
    except (ValidationError, ValueError) as exc:
        print(f"✗ Invalid configuration: {exc}")
        return 2

    configure_logging(
        service_name="order-plane",
        environment=config.logging.environment,
        level=getattr(logging, config.logging.level),
        json_output=config.logging.json_output,
    )

    if args.command == "healthcheck":
        return healthcheck(config)
    try:
        return asyncio.run(_demo(config, metrics_only=args.command == "metrics"))
    except OrderPlaneError as exc:
        print(f"✗ {type(exc).__name__}: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
