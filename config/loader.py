"""
Configuration loader for the KWH event indexer.

Provides centralized configuration management with .env overrides.

Usage:
    from config.loader import get_config, load_indexer_settings

    config = get_config()
    chain_config = config.get_chain_config(31337)
    settings = load_indexer_settings()
"""

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from shared.constants import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_CHAIN_ID,
    DEFAULT_CONFIRMATIONS,
    DEFAULT_FAILED_BATCH_RETRIES,
    DEFAULT_FALLBACK_WINDOW,
    DEFAULT_HTTP_RPC_URL,
    DEFAULT_POLL_INTERVAL_SECONDS,
)
from shared.types import ContractSlot, IndexerSettings

load_dotenv()

# Resolve config directory relative to this file
_CONFIG_DIR = Path(__file__).parent


def _load_json(filepath: Path) -> Any:
    """Load a JSON config file. Returns empty dict if file doesn't exist."""
    try:
        with open(filepath, "r") as f:
            return json.load(f)
    except FileNotFoundError:
        print(f"[CONFIG_WARN] Config file not found: {filepath}")
        return {}
    except json.JSONDecodeError as e:
        print(f"[CONFIG_ERROR] Invalid JSON in {filepath}: {e}")
        return {}


def get_env_var(var_name: str, default_value: Any, var_type: type) -> Any:
    """Get environment variable with type conversion and fallback."""
    value = os.getenv(var_name, None)
    if value is None:
        return default_value
    value = value.strip()
    if value == "":
        return default_value
    try:
        if var_type == bool:
            return value.lower() in ("true", "1", "yes")
        return var_type(value)
    except (ValueError, TypeError):
        return default_value


class ConfigLoader:
    """
    Central configuration manager for the indexer.

    Loads configuration from JSON files in the config/ directory with .env overrides.
    All accessor methods are cached via @lru_cache for performance.
    """

    _instance: Optional["ConfigLoader"] = None

    def __init__(self):
        self._config_dir = _CONFIG_DIR

    @classmethod
    def get_instance(cls) -> "ConfigLoader":
        """Singleton accessor."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    # ------------------------------------------------------------------
    # Core config file loaders (cached)
    # ------------------------------------------------------------------

    @lru_cache(maxsize=8)
    def get_chain_config(self, chain_id: int = DEFAULT_CHAIN_ID) -> Dict[str, Any]:
        """Load chain-specific config (local hardhat = 31337)."""
        return _load_json(self._config_dir / "chains" / f"{chain_id}.json")

    @lru_cache(maxsize=1)
    def get_app_config(self) -> Dict[str, Any]:
        """Load general application settings."""
        return _load_json(self._config_dir / "app.json")

    @lru_cache(maxsize=1)
    def get_indexer_config(self) -> Dict[str, Any]:
        """Load sync parameters and storage settings."""
        return _load_json(self._config_dir / "indexer.json")

    @lru_cache(maxsize=1)
    def get_timing_config(self) -> Dict[str, Any]:
        """Load retry, cache and reconnect timings."""
        return _load_json(self._config_dir / "timing.json")

    # ------------------------------------------------------------------
    # ABI loader
    # ------------------------------------------------------------------

    @lru_cache(maxsize=32)
    def get_abi(self, abi_name: str) -> list:
        """Load ABI from config/abis/<abi_name>.json."""
        data = _load_json(self._config_dir / "abis" / f"{abi_name}.json")
        # ABI files are either raw arrays or build artifacts {"abi": [...]}
        if isinstance(data, list):
            return data
        return data.get("abi", [])

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    def clear_cache(self) -> None:
        """Clear all cached configurations (useful for testing)."""
        for method_name in dir(self):
            method = getattr(self, method_name)
            if hasattr(method, "cache_clear"):
                method.cache_clear()


# ---------------------------------------------------------------------------
# Module-level convenience functions
# ---------------------------------------------------------------------------


def get_config() -> ConfigLoader:
    """Get the singleton ConfigLoader instance."""
    return ConfigLoader.get_instance()


def _parse_start_block(raw: Any) -> int | None:
    """Negative, empty or non-numeric start blocks mean "not configured"."""
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = int(str(raw).strip())
    except ValueError:
        return None
    return value if value >= 0 else None


def _resolve_slots(chain_cfg: Dict[str, Any]) -> tuple[ContractSlot, ...]:
    slots = []
    for entry in chain_cfg.get("contracts", []):
        address = entry.get("address") or ""
        env_name = entry.get("address_env")
        if env_name:
            address = get_env_var(env_name, address, str)
        slots.append(
            ContractSlot(
                name=entry["name"],
                address=address.strip(),
                abi_name=entry.get("abi", entry["name"]),
                required=bool(entry.get("required", False)),
            )
        )
    return tuple(slots)


def load_indexer_settings() -> IndexerSettings:
    """Merge indexer.json, chains/<id>.json and the environment into IndexerSettings."""
    config = get_config()
    indexer_cfg = config.get_indexer_config()

    chain_id = get_env_var("CHAIN_ID", indexer_cfg.get("chain_id", DEFAULT_CHAIN_ID), int)
    chain_cfg = config.get_chain_config(chain_id)
    rpc_cfg = chain_cfg.get("rpc", {})

    poll_seconds = float(rpc_cfg.get("poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS))
    poll_ms = get_env_var("RPC_POLL_MS", None, int)
    if poll_ms is not None and poll_ms > 0:
        poll_seconds = poll_ms / 1000.0

    start_block = _parse_start_block(os.getenv("START_BLOCK", indexer_cfg.get("start_block")))

    return IndexerSettings(
        chain_id=chain_id,
        rpc_http_url=get_env_var("RPC_URL_HTTP", rpc_cfg.get("http_url", DEFAULT_HTTP_RPC_URL), str),
        rpc_ws_url=get_env_var("RPC_URL_WS", rpc_cfg.get("ws_url", ""), str),
        poll_interval_seconds=poll_seconds,
        start_block=start_block,
        confirmations=max(
            0, get_env_var("CONFIRMATIONS", indexer_cfg.get("confirmations", DEFAULT_CONFIRMATIONS), int)
        ),
        batch_size=max(1, get_env_var("BATCH_SIZE", indexer_cfg.get("batch_size", DEFAULT_BATCH_SIZE), int)),
        fallback_window=int(indexer_cfg.get("fallback_window", DEFAULT_FALLBACK_WINDOW)),
        database_url=get_env_var("DATABASE_URL", indexer_cfg.get("storage", {}).get("url", ""), str),
        contracts=_resolve_slots(chain_cfg),
        strict_primary=bool(indexer_cfg.get("strict_primary", False)),
        failed_batch_retries=max(
            1, int(indexer_cfg.get("failed_batch_retries", DEFAULT_FAILED_BATCH_RETRIES))
        ),
    )
