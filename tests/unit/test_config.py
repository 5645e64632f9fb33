"""Unit tests for configuration loading."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from shared.config import EngineConfig, HealthConfig, Mode, load_config
from shared.models.order import OrderType, TimeInForce

SHIPPED_CONFIG = Path(__file__).parents[2] / "config" / "order_plane.yaml"


@pytest.mark.unit
class TestLoadConfig:
    """YAML plus environment overlay."""

    def test_shipped_config_is_valid(self):
        config = load_config(str(SHIPPED_CONFIG), env={})
        assert config.mode == Mode.SIMULATED
        assert [b.broker_id for b in config.brokers] == ["alpaca", "kite"]
        kite = config.broker("kite")
        assert kite.dialect == "kite"
        assert OrderType.BRACKET not in kite.supported_order_types
        assert kite.supported_time_in_force == [TimeInForce.DAY, TimeInForce.IOC]
        assert config.instruments[1].broker_symbols == {"kite": "INFY-EQ"}

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(str(tmp_path / "absent.yaml"), env={})
        assert config == EngineConfig()

    def test_env_overrides_are_json_decoded(self):
        env = {
            "ORDER_PLANE__ROUTING__ALLOW_DEGRADED": "true",
            "ORDER_PLANE__HEALTH__MIN_SAMPLES": "7",
            "ORDER_PLANE__LOGGING__ENVIRONMENT": "staging",
            "UNRELATED": "1",
        }
        config = load_config(str(SHIPPED_CONFIG), env=env)
        assert config.routing.allow_degraded is True
        assert config.health.min_samples == 7
        assert config.health.degraded_after_failures == 3
        assert config.logging.environment == "staging"

    def test_env_can_switch_mode(self):
        config = load_config(None, env={"ORDER_PLANE__MODE": "live"})
        assert config.mode == Mode.LIVE

    def test_non_mapping_root(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ValueError, match="must be a mapping"):
            load_config(str(path), env={})


@pytest.mark.unit
class TestConfigValidation:
    def test_health_thresholds_ordered(self):
        with pytest.raises(ValidationError, match="down_after_failures"):
            HealthConfig(degraded_after_failures=5, down_after_failures=2)

    def test_duplicate_broker_ids(self):
        with pytest.raises(ValidationError, match="unique"):
            EngineConfig.model_validate({"brokers": [{"broker_id": "a"}, {"broker_id": "a"}]})

    def test_duplicate_symbols(self):
        with pytest.raises(ValidationError, match="unique"):
            EngineConfig.model_validate({"instruments": [{"symbol": "aapl"}, {"symbol": "AAPL"}]})

    def test_unknown_adapter_and_dialect(self):
        with pytest.raises(ValidationError, match="unknown adapter"):
            EngineConfig.model_validate({"brokers": [{"broker_id": "a", "adapter": "fix"}]})
        with pytest.raises(ValidationError, match="unknown dialect"):
            EngineConfig.model_validate({"brokers": [{"broker_id": "a", "dialect": "ibkr"}]})

    def test_unknown_log_level(self):
        with pytest.raises(ValidationError):
            EngineConfig.model_validate({"logging": {"level": "LOUD"}})

    def test_commission_estimate(self):
        config = EngineConfig.model_validate({"brokers": [
            {"broker_id": "a", "commission": {"per_order": 1.0, "rate_bps": 10, "maximum": 5.0}},
        ]})
        commission = config.broker("a").commission
        assert commission.estimate(1000.0) == pytest.approx(2.0)
        assert commission.estimate(1_000_000.0) == 5.0

    def test_unknown_broker_lookup(self):
        with pytest.raises(KeyError):
            EngineConfig().broker("nope")

    def test_disabled_brokers(self):
        config = EngineConfig.model_validate({"brokers": [
            {"broker_id": "a"}, {"broker_id": "b", "enabled": False},
        ]})
        assert [b.broker_id for b in config.enabled_brokers] == ["a"]
