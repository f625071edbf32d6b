"""
Unit tests for config/loader.py and config/validate.py.

Tests cover:
- JSON config file loading
- Environment variable overrides with type coercion
- Start block parsing and contract slot resolution
- Singleton pattern for ConfigLoader
- Config validation (validate_all_configs)
- ABI loading (raw arrays and build artifacts)
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from config.loader import ConfigLoader, _parse_start_block, get_config, get_env_var, load_indexer_settings
from config.validate import (
    ConfigValidationError,
    validate_all_configs,
    validate_chain_config,
    validate_indexer_config,
    validate_timing_config,
)

ENV_VARS = (
    "CHAIN_ID",
    "RPC_URL_HTTP",
    "RPC_URL_WS",
    "RPC_POLL_MS",
    "START_BLOCK",
    "CONFIRMATIONS",
    "BATCH_SIZE",
    "DATABASE_URL",
    "KWH_TOKEN_ADDRESS",
    "BILLING_ADDRESS",
    "MARKET_ADDRESS",
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_singleton():
    """Reset the ConfigLoader singleton between tests."""
    ConfigLoader._instance = None
    yield
    ConfigLoader._instance = None


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


# ===========================================================================
# ConfigLoader tests
# ===========================================================================


class TestConfigLoaderSingleton:
    def test_get_instance_returns_same_object(self):
        a = ConfigLoader.get_instance()
        b = ConfigLoader.get_instance()
        assert a is b

    def test_get_config_returns_singleton(self):
        assert get_config() is ConfigLoader.get_instance()


class TestConfigLoading:
    def test_chain_config_for_local_node(self):
        chain = get_config().get_chain_config(31337)
        assert chain["chain_id"] == 31337
        assert [c["name"] for c in chain["contracts"]] == ["KWHToken", "EnergyBilling", "Marketplace"]

    def test_unknown_chain_returns_empty(self):
        assert get_config().get_chain_config(999999) == {}

    def test_indexer_config_defaults(self):
        cfg = get_config().get_indexer_config()
        assert cfg["batch_size"] == 2000
        assert cfg["fallback_window"] == 2000
        assert cfg["confirmations"] == 0

    def test_abi_from_artifact_envelope(self):
        abi = get_config().get_abi("KWHToken")
        assert isinstance(abi, list)
        assert {"Transfer", "KWHConsumed"} <= {e.get("name") for e in abi if e.get("type") == "event"}

    def test_abi_from_raw_list(self):
        abi = get_config().get_abi("EnergyBilling")
        assert isinstance(abi, list)
        assert any(e.get("name") == "BillPaid" for e in abi)

    def test_missing_abi_is_empty(self):
        assert get_config().get_abi("DoesNotExist") == []


class TestEnvVar:
    def test_default_when_unset(self, clean_env):
        assert get_env_var("BATCH_SIZE", 10, int) == 10

    def test_empty_is_unset(self, clean_env):
        clean_env.setenv("BATCH_SIZE", "   ")
        assert get_env_var("BATCH_SIZE", 10, int) == 10

    def test_trimmed_and_coerced(self, clean_env):
        clean_env.setenv("BATCH_SIZE", " 25 ")
        assert get_env_var("BATCH_SIZE", 10, int) == 25

    def test_unparseable_falls_back(self, clean_env):
        clean_env.setenv("BATCH_SIZE", "lots")
        assert get_env_var("BATCH_SIZE", 10, int) == 10


class TestStartBlock:
    @pytest.mark.parametrize("raw, expected", [(None, None), ("", None), ("-1", None), ("abc", None), ("0", 0), (" 42 ", 42), (7, 7)])
    def test_parse(self, raw, expected):
        assert _parse_start_block(raw) == expected


class TestLoadIndexerSettings:
    def test_defaults_from_json(self, clean_env):
        settings = load_indexer_settings()
        assert settings.chain_id == 31337
        assert settings.rpc_http_url == "http://127.0.0.1:8545"
        assert settings.rpc_ws_url == ""
        assert settings.start_block == 0
        assert settings.database_url == "sqlite:///data/indexer.db"
        assert [s.name for s in settings.contracts] == ["KWHToken", "EnergyBilling", "Marketplace"]
        assert settings.contracts[0].required
        assert all(s.address == "" for s in settings.contracts)
        assert settings.failed_batch_retries == 3

    def test_environment_overrides(self, clean_env):
        clean_env.setenv("RPC_URL_HTTP", "http://node:8545")
        clean_env.setenv("RPC_URL_WS", "ws://node:8546")
        clean_env.setenv("RPC_POLL_MS", "1500")
        clean_env.setenv("START_BLOCK", "1234")
        clean_env.setenv("CONFIRMATIONS", "3")
        clean_env.setenv("BATCH_SIZE", "500")
        clean_env.setenv("DATABASE_URL", "postgresql://u:p@db/kwh")
        clean_env.setenv("KWH_TOKEN_ADDRESS", " 0x5FbDB2315678afecb367f032d93F642f64180aa3 ")

        settings = load_indexer_settings()

        assert settings.rpc_http_url == "http://node:8545"
        assert settings.rpc_ws_url == "ws://node:8546"
        assert settings.poll_interval_seconds == 1.5
        assert settings.start_block == 1234
        assert settings.confirmations == 3
        assert settings.batch_size == 500
        assert settings.database_url == "postgresql://u:p@db/kwh"
        assert settings.contracts[0].address == "0x5FbDB2315678afecb367f032d93F642f64180aa3"

    def test_negative_start_block_means_unset(self, clean_env):
        clean_env.setenv("START_BLOCK", "-5")
        assert load_indexer_settings().start_block is None

    def test_bounds_clamped(self, clean_env):
        clean_env.setenv("CONFIRMATIONS", "-2")
        clean_env.setenv("BATCH_SIZE", "0")
        settings = load_indexer_settings()
        assert settings.confirmations == 0
        assert settings.batch_size == 1


# ===========================================================================
# Validation tests
# ===========================================================================


class TestValidation:
    def test_shipped_configs_are_valid(self, clean_env):
        validate_all_configs()

    def test_indexer_missing_storage(self):
        errors = validate_indexer_config({"chain_id": 1, "confirmations": 0, "batch_size": 10, "fallback_window": 5})
        assert errors == ["storage.url"]

    def test_indexer_bad_values(self):
        errors = validate_indexer_config(
            {"chain_id": 1, "confirmations": -1, "batch_size": 0, "fallback_window": 5, "storage": {"url": "x"}}
        )
        assert len(errors) == 2

    def test_chain_requires_primary(self):
        cfg = {"chain_id": 1, "rpc": {"http_url": "http://x"}, "contracts": [{"name": "A"}]}
        assert validate_chain_config(cfg) == ["contracts: no primary (required) contract declared"]

    def test_chain_empty_contracts(self):
        cfg = {"chain_id": 1, "rpc": {"http_url": "http://x"}, "contracts": []}
        assert validate_chain_config(cfg) == ["contracts: must be a non-empty list"]

    def test_timing_missing_keys(self):
        assert set(validate_timing_config({})) == {
            "rpc_retry_attempts",
            "rpc_retry_backoff_seconds",
            "block_cache_size",
        }

    def test_empty_file_reported(self, clean_env):
        loader = MagicMock()
        loader.get_indexer_config.return_value = {}
        loader.get_app_config.return_value = {"logging": {"log_dir": "logs", "module_folders": {}}}
        loader.get_chain_config.return_value = {}
        loader.get_timing_config.return_value = {}
        with patch("config.validate.get_config", return_value=loader):
            with pytest.raises(ConfigValidationError) as exc_info:
                validate_all_configs()
        message = str(exc_info.value)
        assert "indexer.json" in message
        assert "chains/31337.json" in message
        assert "app.json" not in message
