"""
Pure math helpers for Uniswap V3 swap events.

No I/O and no logging. Prices are computed with ``decimal.Decimal`` under a
local context so that uint160 square-root prices and uint256 transfer amounts
never pass through binary floating point.

Usage:
    from chain.price_calc import sqrt_x96_to_price, get_highest_transfer_amount

    quote = sqrt_x96_to_price(sqrt_price_x96, -meme_decimals, -base_decimals, is_token0)
    received = get_highest_transfer_amount(receipt["logs"], pair, default=raw_bought)
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from decimal import ROUND_HALF_UP, Decimal, localcontext
from typing import Any

from shared.constants import DECIMAL_PRECISION, Q96, TRANSFER_TOPIC
from shared.types import PriceQuote


def _hex(value: Any) -> str:
    """Normalize a topic / data field (str, bytes, HexBytes) to lowercase 0x-hex."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def sqrt_x96_to_price(
    sqrt_price_x96: Any,
    decimal0: int,
    decimal1: int,
    is_token0: bool,
) -> PriceQuote:
    """
    Convert a packed sqrtPriceX96 into a human-readable token price.

    ``decimal0`` / ``decimal1`` are negative exponents (e.g. -18, -6) for the
    meme and base token respectively. When the meme token is token0 the price
    is fixed to the base token's precision; otherwise the reciprocal is fixed
    to the meme token's precision.

    Never raises: any failure yields ``PriceQuote.unpriced()``.
    """
    try:
        with localcontext() as ctx:
            ctx.prec = DECIMAL_PRECISION
            ratio = Decimal(sqrt_price_x96) / Decimal(Q96)
            raw_price = ratio * ratio
            decimal_adjustment = Decimal(10) ** int(decimal1) / Decimal(10) ** int(decimal0)
            price = raw_price / decimal_adjustment

            if is_token0:
                precision = abs(int(decimal1))
            else:
                price = Decimal(1) / price
                precision = abs(int(decimal0))

            if not price.is_finite():
                return PriceQuote.unpriced()
            quantized = price.quantize(Decimal(1).scaleb(-precision), rounding=ROUND_HALF_UP)
            return PriceQuote(price=quantized, precision=precision)
    except (ArithmeticError, TypeError, ValueError):
        return PriceQuote.unpriced()


def get_highest_transfer_amount(
    logs: Iterable[Mapping[str, Any]],
    pair_address: str,
    default_amount: int,
) -> int:
    """
    Scan receipt logs for ERC-20 Transfer events sent FROM the pool.

    Returns the largest transferred value among matching logs, starting from
    ``default_amount``. Router and aggregator paths can hop through several
    transfers; the pool's own outbound transfer is the one that reflects
    what left the pool.
    """
    highest = int(default_amount)
    pair = pair_address.lower()

    for log in logs:
        topics = log.get("topics") or []
        if len(topics) < 2 or _hex(topics[0]) != TRANSFER_TOPIC:
            continue

        # topics[1] is the `from` address, left-padded to 32 bytes
        sender = "0x" + _hex(topics[1])[-40:]
        if sender != pair:
            continue

        data = _hex(log.get("data", "0x"))
        if data == "0x":
            continue
        amount = int(data, 16)
        if amount > highest:
            highest = amount

    return highest


def format_amount(raw: int, decimals: int, fixed: int = 3) -> str:
    """Format a raw on-chain integer as a fixed-precision decimal string."""
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        value = Decimal(int(raw)).scaleb(-int(decimals))
        return format(value.quantize(Decimal(1).scaleb(-fixed), rounding=ROUND_HALF_UP), "f")
