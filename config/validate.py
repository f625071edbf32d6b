"""
Configuration schema validation for the KWH event indexer.

Validates that all required config files exist and contain required keys.
Run at startup to fail fast on misconfiguration.
"""

from typing import Any

from config.loader import get_config, get_env_var
from shared.constants import DEFAULT_CHAIN_ID


class ConfigValidationError(ValueError):
    """Raised when a required config key is missing or invalid."""

    pass


def _check_keys(config: dict[str, Any], required_keys: list[str], config_name: str) -> list[str]:
    """Check that all required keys exist in a config dict. Returns list of missing keys."""
    missing = []
    for key in required_keys:
        parts = key.split(".")
        current = config
        for part in parts:
            if not isinstance(current, dict) or part not in current:
                missing.append(key)
                break
            current = current[part]
    return missing


def validate_app_config(config: dict[str, Any]) -> list[str]:
    """Validate app.json has required fields."""
    return _check_keys(config, ["logging.log_dir", "logging.module_folders"], "app.json")


def validate_indexer_config(config: dict[str, Any]) -> list[str]:
    """Validate indexer.json has required fields."""
    errors = _check_keys(
        config,
        [
            "chain_id",
            "confirmations",
            "batch_size",
            "fallback_window",
            "storage.url",
        ],
        "indexer.json",
    )
    batch_size = config.get("batch_size")
    if isinstance(batch_size, int) and batch_size <= 0:
        errors.append("batch_size: must be a positive integer")
    confirmations = config.get("confirmations")
    if isinstance(confirmations, int) and confirmations < 0:
        errors.append("confirmations: must be >= 0")
    return errors


def validate_chain_config(config: dict[str, Any]) -> list[str]:
    """Validate chains/<chain_id>.json has required fields."""
    errors = _check_keys(config, ["chain_id", "rpc.http_url", "contracts"], "chain")
    if not errors:
        contracts = config.get("contracts", [])
        if not isinstance(contracts, list) or len(contracts) == 0:
            errors.append("contracts: must be a non-empty list")
        else:
            for i, entry in enumerate(contracts):
                if not isinstance(entry, dict) or "name" not in entry:
                    errors.append(f"contracts[{i}].name")
            if not any(isinstance(c, dict) and c.get("required") for c in contracts):
                errors.append("contracts: no primary (required) contract declared")
    return errors


def validate_timing_config(config: dict[str, Any]) -> list[str]:
    """Validate timing.json has required fields."""
    return _check_keys(
        config,
        [
            "rpc_retry_attempts",
            "rpc_retry_backoff_seconds",
            "block_cache_size",
        ],
        "timing.json",
    )


def validate_all_configs() -> None:
    """
    Validate all config files. Raises ConfigValidationError with details
    if any required keys are missing.
    """
    loader = get_config()
    all_errors: dict[str, list[str]] = {}

    chain_id = get_env_var(
        "CHAIN_ID", loader.get_indexer_config().get("chain_id", DEFAULT_CHAIN_ID), int
    )

    validators = {
        "app.json": (loader.get_app_config, validate_app_config),
        "indexer.json": (loader.get_indexer_config, validate_indexer_config),
        f"chains/{chain_id}.json": (lambda: loader.get_chain_config(chain_id), validate_chain_config),
        "timing.json": (loader.get_timing_config, validate_timing_config),
    }

    for config_name, (loader_fn, validator_fn) in validators.items():
        config = loader_fn()
        if not config:
            all_errors[config_name] = ["Config file is empty or not found"]
            continue
        errors = validator_fn(config)
        if errors:
            all_errors[config_name] = errors

    if all_errors:
        lines = ["Configuration validation failed:"]
        for config_name, errors in all_errors.items():
            lines.append(f"\n  {config_name}:")
            for error in errors:
                lines.append(f"    - missing: {error}")
        raise ConfigValidationError("\n".join(lines))
