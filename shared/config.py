"""
shared.config: order plane configuration loader.

Configuration is a tree of pydantic models loaded from YAML and overlaid
with environment variables:

    ORDER_PLANE__ROUTING__ALLOW_DEGRADED=true
        -> {'routing': {'allow_degraded': True}}

Values in the environment are JSON-decoded when possible, so numbers and
booleans keep their types. Broker credentials are never part of the
config: brokers name a ``credentials_ref`` handle that is resolved by
shared.security.credentials.CredentialStore.
"""
from __future__ import annotations

import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from shared.models.order import OrderType, TimeInForce

logger = logging.getLogger(__name__)

ENV_PREFIX = "ORDER_PLANE__"


class Mode(str, Enum):
    SIMULATED = "simulated"
    LIVE = "live"


# -----------------------
# broker / instrument sections
# -----------------------
class CommissionConfig(BaseModel):
    """Per-order commission schedule: fixed + proportional, floored and capped."""
    per_order: float = Field(0.0, ge=0)
    rate_bps: float = Field(0.0, ge=0, description="Basis points of notional")
    minimum: float = Field(0.0, ge=0)
    maximum: Optional[float] = Field(None, ge=0)

    def estimate(self, notional: float) -> float:
        fee = self.per_order + notional * self.rate_bps / 10_000.0
        fee = max(fee, self.minimum)
        if self.maximum is not None:
            fee = min(fee, self.maximum)
        return fee


class RateLimitConfig(BaseModel):
    capacity: float = Field(10.0, gt=0, description="Burst size (requests)")
    refill_per_second: float = Field(10.0, gt=0)


class PaperBrokerConfig(BaseModel):
    """Behaviour of the in-process simulated broker."""
    auto_fill: bool = True
    fill_delay_ms: int = Field(5, ge=0)
    partial_fills: int = Field(1, ge=1, description="Number of fill events per order")
    initial_buying_power: float = Field(1_000_000.0, ge=0)
    fill_price: Optional[float] = Field(None, gt=0, description="Price used for MARKET orders")
    reject_symbols: List[str] = Field(default_factory=list)


class RestBrokerConfig(BaseModel):
    base_url: str = "https://localhost"
    timeout_s: float = Field(5.0, gt=0)


class BrokerConfig(BaseModel):
    broker_id: str
    adapter: str = Field("paper", description="paper | rest")
    dialect: str = Field("canonical", description="canonical | alpaca | kite")
    credentials_ref: Optional[str] = None
    enabled: bool = True
    supported_order_types: List[OrderType] = Field(default_factory=lambda: list(OrderType))
    supported_time_in_force: List[TimeInForce] = Field(default_factory=lambda: list(TimeInForce))
    supports_modify: bool = True
    symbols: Optional[List[str]] = Field(None, description="None means every configured instrument")
    commission: CommissionConfig = Field(default_factory=CommissionConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    paper: PaperBrokerConfig = Field(default_factory=PaperBrokerConfig)
    rest: RestBrokerConfig = Field(default_factory=RestBrokerConfig)
    session_ttl_s: Optional[float] = Field(None, gt=0)

    @field_validator("adapter")
    @classmethod
    def known_adapter(cls, v: str) -> str:
        if v not in ("paper", "rest"):
            raise ValueError(f"unknown adapter: {v}")
        return v

    @field_validator("dialect")
    @classmethod
    def known_dialect(cls, v: str) -> str:
        if v not in ("canonical", "alpaca", "kite"):
            raise ValueError(f"unknown dialect: {v}")
        return v


class InstrumentConfig(BaseModel):
    symbol: str
    tick_size: float = Field(0.01, gt=0)
    lot_size: float = Field(1.0, gt=0)
    broker_symbols: Dict[str, str] = Field(default_factory=dict, description="broker_id -> native symbol")
    exchange: Optional[str] = None

    @field_validator("symbol")
    @classmethod
    def upper_symbol(cls, v: str) -> str:
        return v.upper().strip()


# -----------------------
# engine sections
# -----------------------
class RoutingConfig(BaseModel):
    cost_weight: float = Field(0.4, ge=0)
    quality_weight: float = Field(0.4, ge=0)
    headroom_weight: float = Field(0.2, ge=0)
    preference_bonus: float = Field(0.05, ge=0)
    allow_degraded: bool = False
    quality_prior_fills: float = Field(1.0, ge=0)
    quality_prior_total: float = Field(2.0, gt=0)
    latency_alpha: float = Field(0.2, gt=0, le=1)


class HealthConfig(BaseModel):
    degraded_after_failures: int = Field(3, ge=1)
    down_after_failures: int = Field(6, ge=1)
    recovery_successes: int = Field(3, ge=1)
    error_rate_window: int = Field(20, ge=1)
    error_rate_threshold: float = Field(0.5, gt=0, le=1)
    min_samples: int = Field(5, ge=1)
    heartbeat_interval_s: float = Field(5.0, gt=0)
    heartbeat_timeout_s: float = Field(2.0, gt=0)
    refresh_margin_s: float = Field(60.0, ge=0)

    @model_validator(mode="after")
    def down_after_degraded(self):
        if self.down_after_failures < self.degraded_after_failures:
            raise ValueError("down_after_failures must be >= degraded_after_failures")
        return self


class RecoveryConfig(BaseModel):
    max_attempts: int = Field(3, ge=1)
    backoff_initial_s: float = Field(0.2, ge=0)
    backoff_max_s: float = Field(2.0, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1)
    call_timeout_s: float = Field(5.0, gt=0)
    max_reroutes: int = Field(2, ge=0)
    reconciliation_poll_interval_s: float = Field(5.0, gt=0)


class PersistenceConfig(BaseModel):
    url: str = "sqlite:///order_plane.db"
    echo: bool = False


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_output: bool = True
    environment: str = "development"

    @field_validator("level")
    @classmethod
    def known_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return v


class EventBusConfig(BaseModel):
    queue_size: int = Field(1000, ge=1)


class EngineConfig(BaseModel):
    mode: Mode = Mode.SIMULATED
    brokers: List[BrokerConfig] = Field(default_factory=list)
    instruments: List[InstrumentConfig] = Field(default_factory=list)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    events: EventBusConfig = Field(default_factory=EventBusConfig)

    @model_validator(mode="after")
    def unique_ids(self):
        ids = [b.broker_id for b in self.brokers]
        if len(ids) != len(set(ids)):
            raise ValueError("broker_id values must be unique")
        symbols = [i.symbol for i in self.instruments]
        if len(symbols) != len(set(symbols)):
            raise ValueError("instrument symbols must be unique")
        return self

    def broker(self, broker_id: str) -> BrokerConfig:
        for b in self.brokers:
            if b.broker_id == broker_id:
                return b
        raise KeyError(broker_id)

    @property
    def enabled_brokers(self) -> List[BrokerConfig]:
        return [b for b in self.brokers if b.enabled]


# -----------------------
# loading: yaml, env overrides, deep merge
# -----------------------
def _load_yaml_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.debug("config: %s not found; return empty", path)
        return {}
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping: {path}")
    return data


def _env_overrides(env: Mapping[str, str], prefix: str = ENV_PREFIX) -> Dict[str, Any]:
    """
    Parse env vars with prefix, nesting via double-underscore.
    Example: ORDER_PLANE__HEALTH__MIN_SAMPLES=3 -> {'health': {'min_samples': 3}}
    """
    out: Dict[str, Any] = {}
    pref = prefix.upper()
    for k, v in env.items():
        if not k.upper().startswith(pref):
            continue
        parts = [p.lower() for p in k[len(pref):].split("__") if p]
        if not parts:
            continue
        node = out
        for p in parts[:-1]:
            if p not in node or not isinstance(node[p], dict):
                node[p] = {}
            node = node[p]
        try:
            parsed = json.loads(v)
        except ValueError:
            parsed = v
        node[parts[-1]] = parsed
    return out


def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    res = dict(a)
    for k, v in b.items():
        if k in res and isinstance(res[k], dict) and isinstance(v, dict):
            res[k] = _deep_merge(res[k], v)
        else:
            res[k] = v
    return res


def load_config(
    path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    prefix: str = ENV_PREFIX,
) -> EngineConfig:
    """Build EngineConfig from an optional YAML file plus environment overrides.

    Raises pydantic.ValidationError on invalid configuration; the engine
    never starts on a half-valid config.
    """
    yaml_map = _load_yaml_file(Path(path)) if path else {}
    env_map = _env_overrides(os.environ if env is None else env, prefix=prefix)
    merged = _deep_merge(yaml_map, env_map)
    cfg = EngineConfig.model_validate(merged)
    logger.debug(
        "config loaded: mode=%s brokers=%s instruments=%d",
        cfg.mode.value, [b.broker_id for b in cfg.brokers], len(cfg.instruments),
    )
    return cfg
