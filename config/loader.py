"""
Configuration loader for Base Swap Watcher.

Provides centralized configuration management: JSON files in config/ with
.env overrides for deployment-specific values (RPC endpoints, Redis, timing).

Usage:
    from config.loader import get_config, get_channel

    config = get_config()
    chain_config = config.get_chain_config(8453)
    channel = get_channel("buys")
"""

import json
import os
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from shared.constants import (
    DEFAULT_CHAIN_ID,
    DEFAULT_DB_WRITE_THROTTLE_MS,
    DEFAULT_MIN_AMOUNT_RECEIVED,
    DEFAULT_STALE_PAIR_SCAN_INTERVAL_MS,
    DEFAULT_STALE_PAIR_THRESHOLD_MS,
    FAULT_POLICY_EXIT,
)

load_dotenv()

# Resolve config directory relative to this file
_CONFIG_DIR = Path(__file__).parent
_PROJECT_ROOT = _CONFIG_DIR.parent

# Channel key -> env var override
_CHANNEL_ENV_VARS = {
    "token_actions": "REDIS_CHANNEL_TOKEN_ACTIONS",
    "buys": "REDIS_CHANNEL_BUYS",
    "info": "REDIS_CHANNEL_INFO",
    "errors": "REDIS_CHANNEL_ERRORS",
}


def _load_json(filepath: Path) -> Dict[str, Any]:
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
    if value is None or value == "":
        return default_value
    try:
        if var_type == bool:
            return value.lower() in ("true", "1", "yes")
        return var_type(value)
    except (ValueError, TypeError, InvalidOperation):
        return default_value


class ConfigLoader:
    """
    Central configuration manager for Base Swap Watcher.

    Loads configuration from JSON files in the config/ directory with .env overrides.
    File accessors are cached via @lru_cache; the derived settings helpers
    re-read the environment on every call so tests can monkeypatch it.
    """

    _instance: Optional["ConfigLoader"] = None

    def __init__(self):
        self._config_dir = _CONFIG_DIR
        self._project_root = _PROJECT_ROOT

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
        """Load chain-specific config (Base = 8453)."""
        return _load_json(self._config_dir / "chains" / f"{chain_id}.json")

    @lru_cache(maxsize=1)
    def get_redis_channels(self) -> Dict[str, Any]:
        """Load Redis URL and channel definitions."""
        return _load_json(self._config_dir / "redis_channels.json")

    @lru_cache(maxsize=1)
    def get_app_config(self) -> Dict[str, Any]:
        """Load general application settings."""
        return _load_json(self._config_dir / "app.json")

    @lru_cache(maxsize=1)
    def get_timing_config(self) -> Dict[str, Any]:
        """Load timing intervals and timeouts."""
        return _load_json(self._config_dir / "timing.json")

    @lru_cache(maxsize=1)
    def get_websocket_config(self) -> Dict[str, Any]:
        """Load WebSocket connection settings."""
        return _load_json(self._config_dir / "websocket.json")

    @lru_cache(maxsize=1)
    def get_storage_config(self) -> Dict[str, Any]:
        """Load SQLite storage settings."""
        return _load_json(self._config_dir / "storage.json")

    # ------------------------------------------------------------------
    # ABI loader
    # ------------------------------------------------------------------

    @lru_cache(maxsize=32)
    def get_abi(self, abi_name: str) -> list:
        """Load ABI from config/abis/<abi_name>.json."""
        data = _load_json(self._config_dir / "abis" / f"{abi_name}.json")
        # ABI files are either raw arrays or {"abi": [...]}
        if isinstance(data, list):
            return data
        return data.get("abi", [])

    # ------------------------------------------------------------------
    # Derived settings (config value, overridden by env)
    # ------------------------------------------------------------------

    def get_rpc_endpoints(self, chain_id: int = DEFAULT_CHAIN_ID) -> List[str]:
        """Ordered candidate RPC endpoints. RPC_PROVIDERS (comma list) wins."""
        env_value = os.getenv("RPC_PROVIDERS", "")
        if env_value.strip():
            return [u.strip() for u in env_value.split(",") if u.strip()]
        return list(self.get_chain_config(chain_id).get("rpc", {}).get("endpoints", []))

    def get_redis_url(self) -> str:
        return get_env_var(
            "REDIS_URL",
            self.get_redis_channels().get("redis_url", "redis://localhost:6379/0"),
            str,
        )

    def get_channel_name(self, channel_key: str) -> str:
        """Get a Redis channel name by key."""
        env_var = _CHANNEL_ENV_VARS.get(channel_key)
        default = self.get_redis_channels().get("channels", {}).get(channel_key, channel_key)
        if env_var is None:
            return default
        return get_env_var(env_var, default, str)

    def get_min_amount_received(self) -> Decimal:
        default = Decimal(
            str(self.get_app_config().get("min_amount_received", DEFAULT_MIN_AMOUNT_RECEIVED))
        )
        return get_env_var("MIN_AMOUNT_RECEIVED", default, Decimal)

    def get_throttle_ms(self) -> int:
        default = self.get_timing_config().get("db_write_throttle_ms", DEFAULT_DB_WRITE_THROTTLE_MS)
        return get_env_var("DB_WRITE_THROTTLE_MS", int(default), int)

    def get_stale_pair_threshold_ms(self) -> int:
        default = self.get_timing_config().get(
            "stale_pair_threshold_ms", DEFAULT_STALE_PAIR_THRESHOLD_MS
        )
        return get_env_var("STALE_PAIR_THRESHOLD_MS", int(default), int)

    def get_stale_pair_scan_interval_ms(self) -> int:
        default = self.get_timing_config().get(
            "stale_pair_scan_interval_ms", DEFAULT_STALE_PAIR_SCAN_INTERVAL_MS
        )
        return get_env_var("STALE_PAIR_SCAN_INTERVAL_MS", int(default), int)

    def get_db_path(self) -> str:
        default = str(
            self._project_root / self.get_storage_config().get("db_path", "data/swap_watcher.db")
        )
        return get_env_var("DB_PATH", default, str)

    def get_fault_policy(self) -> str:
        default = self.get_app_config().get("on_transport_fault", FAULT_POLICY_EXIT)
        return get_env_var("ON_TRANSPORT_FAULT", default, str).lower()

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


def get_channel(channel_key: str) -> str:
    """Get a Redis channel name by key (convenience function)."""
    return get_config().get_channel_name(channel_key)
