"""
Configuration schema validation for Base Swap Watcher.

Validates that all required config files exist and contain required keys.
Run at startup to fail fast on misconfiguration.
"""

from typing import Any

from config.loader import get_config
from shared.constants import FAULT_POLICY_EXIT, FAULT_POLICY_RESTART


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


def validate_chain_config(config: dict[str, Any]) -> list[str]:
    """Validate chains/8453.json has required fields."""
    return _check_keys(config, ["chain_id", "name", "rpc.endpoints"], "chains/8453.json")


def validate_redis_channels_config(config: dict[str, Any]) -> list[str]:
    """Validate redis_channels.json declares all four channels."""
    return _check_keys(
        config,
        [
            "redis_url",
            "channels.token_actions",
            "channels.buys",
            "channels.info",
            "channels.errors",
        ],
        "redis_channels.json",
    )


def validate_app_config(config: dict[str, Any]) -> list[str]:
    """Validate app.json has required fields."""
    errors = _check_keys(
        config, ["chain_tag", "version_tag", "min_amount_received"], "app.json"
    )
    policy = config.get("on_transport_fault", FAULT_POLICY_EXIT)
    if policy not in (FAULT_POLICY_EXIT, FAULT_POLICY_RESTART):
        errors.append(f"on_transport_fault: must be '{FAULT_POLICY_EXIT}' or '{FAULT_POLICY_RESTART}'")
    return errors


def validate_timing_config(config: dict[str, Any]) -> list[str]:
    """Validate timing.json has required fields."""
    return _check_keys(
        config,
        [
            "db_write_throttle_ms",
            "stale_pair_threshold_ms",
            "stale_pair_scan_interval_ms",
            "rpc.probe_timeout_seconds",
            "rpc.call_timeout_seconds",
        ],
        "timing.json",
    )


def validate_all_configs() -> None:
    """
    Validate all config files. Raises ConfigValidationError with details
    if any required keys are missing or no RPC endpoint is configured.
    """
    loader = get_config()
    all_errors: dict[str, list[str]] = {}

    validators = {
        "chains/8453.json": (loader.get_chain_config, validate_chain_config),
        "redis_channels.json": (loader.get_redis_channels, validate_redis_channels_config),
        "app.json": (loader.get_app_config, validate_app_config),
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

    if not loader.get_rpc_endpoints():
        all_errors.setdefault("RPC_PROVIDERS", []).append(
            "no RPC endpoint configured (set RPC_PROVIDERS or rpc.endpoints)"
        )

    if all_errors:
        lines = ["Configuration validation failed:"]
        for config_name, errors in all_errors.items():
            lines.append(f"\n  {config_name}:")
            for error in errors:
                lines.append(f"    - missing: {error}")
        raise ConfigValidationError("\n".join(lines))
