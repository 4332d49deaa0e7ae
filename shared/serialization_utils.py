"""
Serialization utilities for Base Swap Watcher.

Provides JSON encoding for Decimal, HexBytes, large integers, and web3 types
so that trade, info and error payloads can be published without precision loss.

Usage:
    from shared.serialization_utils import DecimalEncoder, dumps
    json.dumps(data, cls=DecimalEncoder)
"""

import json
from dataclasses import asdict, is_dataclass
from decimal import Decimal
from json import JSONEncoder
from typing import Any

from hexbytes import HexBytes


class DecimalEncoder(JSONEncoder):
    """
    Custom JSON encoder handling Decimal, HexBytes, large integers, and web3.py types.

    Integers beyond the IEEE 754 safe range are emitted as strings so that
    JavaScript consumers (alert bots, dashboards) do not silently round them.
    """

    # IEEE 754 double precision safe integer limit
    _MAX_SAFE_INTEGER = 2**53 - 1

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return str(obj)
        # HexBytes from web3.py (addresses, tx hashes, topics)
        if isinstance(obj, (HexBytes, bytes)):
            return "0x" + bytes(obj).hex()
        if is_dataclass(obj) and not isinstance(obj, type):
            return asdict(obj)
        # web3.py AttributeDict (receipts, logs)
        if hasattr(obj, "__iter__") and hasattr(obj, "keys"):
            return dict(obj)
        return super().default(obj)

    def encode(self, obj: Any) -> str:
        """Override encode to convert large integers to strings before JSON serialization."""
        return super().encode(self._convert_large_ints(obj))

    def _convert_large_ints(self, obj: Any) -> Any:
        """Recursively convert integers exceeding IEEE 754 safe limits to strings."""
        if isinstance(obj, dict):
            return {k: self._convert_large_ints(v) for k, v in obj.items()}
        elif isinstance(obj, (list, tuple)):
            return [self._convert_large_ints(item) for item in obj]
        elif isinstance(obj, bool):
            return obj
        elif isinstance(obj, int) and (obj > self._MAX_SAFE_INTEGER or obj < -self._MAX_SAFE_INTEGER):
            return str(obj)
        return obj


def dumps(payload: Any) -> str:
    """Serialize a payload for publishing. Plain strings pass through unchanged."""
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, cls=DecimalEncoder)
