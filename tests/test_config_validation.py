"""
Tests for configuration validation.

Validates that config_validator correctly identifies invalid configs
and accepts valid configs.
"""
from pathlib import Path

import pytest
import yaml

from tools.config_validator import (
    EngineConfig,
    NetworkConfig,
    TradingConfig,
    load_engine_config,
    validate_engine_config,
    validate_sanity_checks,
)

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config" / "engine.yaml"

NETWORK = {
    "rpc_url": "http://127.0.0.1:8545",
    "chain_id": 13579,
    "trading_contract": "0x" + "3" * 40,
}


def write_config(tmp_path, config) -> str:
    path = tmp_path / "engine.yaml"
    path.write_text(yaml.safe_dump(config))
    return str(path)


class TestSchema:
    """Pydantic schema rules"""

    def test_shipped_config_is_valid(self):
        assert validate_engine_config(str(REPO_CONFIG)) == []

    def test_defaults_fill_missing_sections(self):
        config = EngineConfig(network=NETWORK)
        assert config.trading.fee_pct == 3.0
        assert config.trading.lock_policy == "advisory"
        assert config.reconcile.max_attempts == 3
        assert config.reconcile.delay_seconds == 1.5
        assert config.metrics.enabled is False

    def test_bad_contract_address(self):
        with pytest.raises(ValueError, match="trading_contract"):
            NetworkConfig(**{**NETWORK, "trading_contract": "0x1234"})

    def test_rpc_url_must_be_http(self):
        with pytest.raises(ValueError, match="rpc_url"):
            NetworkConfig(**{**NETWORK, "rpc_url": "ws://127.0.0.1:8546"})

    def test_unknown_lock_policy(self):
        with pytest.raises(ValueError):
            TradingConfig(lock_policy="strict")

    def test_fee_out_of_range(self):
        with pytest.raises(ValueError):
            TradingConfig(fee_pct=25)

    def test_confirmation_attempts_positive(self):
        with pytest.raises(ValueError):
            TradingConfig(confirmation_attempts=0)


class TestSanityChecks:
    """Cross-field rules"""

    def test_zero_slippage_with_enforced_floor(self):
        config = EngineConfig(network=NETWORK, trading={"enforce_sell_slippage": True,
                                                        "default_slippage_pct": 0})
        errors = validate_sanity_checks(config)
        assert any("enforce_sell_slippage" in e for e in errors)

    def test_reconcile_window_longer_than_refresh(self):
        config = EngineConfig(network=NETWORK, reconcile={"max_attempts": 5, "delay_seconds": 5,
                                                          "refresh_interval_seconds": 10})
        errors = validate_sanity_checks(config)
        assert any("refresh_interval_seconds" in e for e in errors)

    def test_cache_and_audit_share_path(self):
        config = EngineConfig(network=NETWORK, cache={"path": "data/x.json"},
                              audit={"path": "data/x.json"})
        assert validate_sanity_checks(config) == ["cache.path and audit.path must be different files"]

    def test_defaults_are_consistent(self):
        assert validate_sanity_checks(EngineConfig(network=NETWORK)) == []


class TestFileValidation:

    def test_missing_file(self, tmp_path):
        errors = validate_engine_config(str(tmp_path / "missing.yaml"))
        assert len(errors) == 1
        assert "not found" in errors[0]

    def test_malformed_yaml_reports_line(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("network:\n  rpc_url: [unclosed\n")
        errors = validate_engine_config(str(path))
        assert len(errors) == 1
        assert "Invalid YAML" in errors[0]

    def test_missing_network_section(self, tmp_path):
        errors = validate_engine_config(write_config(tmp_path, {"trading": {"fee_pct": 3}}))
        assert any(e.startswith("engine.yaml: network") for e in errors)

    def test_nested_field_path_in_message(self, tmp_path):
        errors = validate_engine_config(write_config(tmp_path, {
            "network": NETWORK,
            "trading": {"default_slippage_pct": -1},
        }))
        assert any("trading -> default_slippage_pct" in e for e in errors)

    def test_load_raises_with_every_error(self, tmp_path):
        path = write_config(tmp_path, {"network": {**NETWORK, "chain_id": 0},
                                       "metrics": {"port": 70000}})
        with pytest.raises(ValueError) as exc_info:
            load_engine_config(path)
        assert "chain_id" in str(exc_info.value)
        assert "port" in str(exc_info.value)

    def test_load_returns_model(self, tmp_path):
        config = load_engine_config(write_config(tmp_path, {"network": NETWORK}))
        assert config.network.chain_id == 13579
        assert config.trading.approve_exact_amount is True
