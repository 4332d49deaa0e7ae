"""
Raw log decoding for Uniswap V3 Swap events.

Accepts logs as delivered by either transport: web3.py AttributeDicts with
HexBytes fields (HTTP polling) or plain JSON-RPC dicts with hex strings
(eth_subscribe over WebSocket).
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from eth_abi.abi import decode as abi_decode
from eth_abi.exceptions import DecodingError

from shared.constants import V3_SWAP_TOPIC
from shared.types import SwapNotification

# amount0, amount1, sqrtPriceX96, liquidity, tick (sender/recipient are indexed)
_SWAP_DATA_TYPES = ["int256", "int256", "uint160", "uint128", "int24"]


def _to_hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value)
    return text if text.startswith("0x") else "0x" + text


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value or 0)


def decode_swap_log(log_data: Mapping[str, Any]) -> SwapNotification | None:
    """
    Decode a raw Swap log into a SwapNotification.

    Returns None when the log is not a V3 Swap, was removed by a reorg, or
    cannot be decoded.
    """
    if log_data.get("removed"):
        return None

    topics = log_data.get("topics") or []
    if not topics or _to_hex(topics[0]).lower() != V3_SWAP_TOPIC:
        return None

    raw_data = log_data.get("data", "0x")
    try:
        if isinstance(raw_data, str):
            raw_data = bytes.fromhex(raw_data[2:] if raw_data.startswith("0x") else raw_data)
        amount0, amount1, sqrt_price_x96, liquidity, tick = abi_decode(
            _SWAP_DATA_TYPES, bytes(raw_data)
        )
        block_number = _to_int(log_data.get("blockNumber", 0))
        log_index = _to_int(log_data.get("logIndex", 0))
    except (DecodingError, ValueError, TypeError):
        return None

    return SwapNotification(
        amount0=amount0,
        amount1=amount1,
        sqrt_price_x96=sqrt_price_x96,
        tx_hash=_to_hex(log_data.get("transactionHash", "")),
        pool_address=_to_hex(log_data.get("address", "")).lower(),
        liquidity=liquidity,
        tick=tick,
        block_number=block_number,
        log_index=log_index,
    )
