"""
Swap event processing: one decoded Swap in, one TradeResult (or nothing) out.

A swap is a buy when the meme token left the pool (its signed amount is
negative). Buys are enriched with the buyer (receipt sender), the amount that
actually left the pool (largest Transfer out of the pool in the receipt),
the buyer's post-trade balance and the pool price.

Usage:
    from core.swap_processor import SwapContext, process_swap_event

    result = await process_swap_event(swap, ctx)
    if result is not None:
        await bus.publish(buys_channel, result.to_message())
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from bot_logging.logger_manager import setup_module_logger
from chain.price_calc import format_amount, get_highest_transfer_amount, sqrt_x96_to_price
from shared.constants import (
    BASE_AMOUNT_DP,
    DEFAULT_CHAIN_TAG,
    DEFAULT_MIN_AMOUNT_RECEIVED,
    DEFAULT_VERSION_TAG,
    TOKEN_AMOUNT_DP,
)
from shared.types import SwapNotification, TokenOrdering, TradeResult

if TYPE_CHECKING:
    from chain.chain_client import ChainClient, TokenBinding

ErrorCallback = Callable[[Exception, dict[str, Any]], Awaitable[None]]


@dataclass
class SwapContext:
    """Everything needed to turn one swap on one pair into a TradeResult."""

    pair: str
    meme_token_address: str
    base_token_address: str
    meme_token_decimals: int
    base_token_decimals: int
    ordering: int
    chain_client: ChainClient
    meme_token: TokenBinding
    on_error: ErrorCallback
    min_amount_received: Decimal = DEFAULT_MIN_AMOUNT_RECEIVED
    chain_tag: str = DEFAULT_CHAIN_TAG
    version_tag: str = DEFAULT_VERSION_TAG


def _get_logger():
    return setup_module_logger(
        "swap_processor", "swap_processor.log", module_folder="Swap_Processor_Logs"
    )


def is_buy(amount: int) -> bool:
    """Negative pool delta means the tokens left the pool."""
    return amount < 0


def resolve_amounts(amount0: int, amount1: int, ordering: int) -> tuple[int, int]:
    """Return (meme token amount, base token amount) for the pool's slot ordering."""
    if ordering == TokenOrdering.TOKEN0:
        return amount0, amount1
    return amount1, amount0


async def process_swap_event(event: SwapNotification, ctx: SwapContext) -> TradeResult | None:
    """
    Turn a decoded Swap into a TradeResult.

    Returns None for sells and for buys whose received amount formats below
    ``ctx.min_amount_received``. Receipt and balance failures degrade to
    fallback values and are reported through ``ctx.on_error``; they never
    abort processing.
    """
    logger = _get_logger()
    token_amount, base_amount = resolve_amounts(event.amount0, event.amount1, ctx.ordering)
    if not is_buy(token_amount):
        return None

    raw_bought = -token_amount

    # Receipt: buyer and the amount that actually left the pool
    buyer = ""
    actual_received = raw_bought
    try:
        receipt = await ctx.chain_client.get_transaction_receipt(event.tx_hash)
        buyer = str(receipt.get("from") or "")
        actual_received = get_highest_transfer_amount(
            receipt.get("logs") or [], ctx.pair, raw_bought
        )
    except Exception as e:
        logger.warning("Receipt lookup failed for %s on %s: %s", event.tx_hash, ctx.pair, e)
        await ctx.on_error(e, {"context": "getTransactionReceipt", "txHash": event.tx_hash})

    # Buyer balance; zero or unavailable falls back to the received amount
    balance = actual_received
    if buyer:
        try:
            queried = await ctx.meme_token.balance_of(buyer)
            if queried != 0:
                balance = queried
        except Exception as e:
            logger.warning("Balance lookup failed for %s on %s: %s", buyer, ctx.pair, e)
            await ctx.on_error(e, {"context": "balanceOf", "buyer": buyer})

    quote = sqrt_x96_to_price(
        event.sqrt_price_x96,
        -ctx.meme_token_decimals,
        -ctx.base_token_decimals,
        ctx.ordering == TokenOrdering.TOKEN0,
    )
    if not quote.is_priced:
        logger.warning("Unpriceable swap %s on %s", event.tx_hash, ctx.pair)

    amount_received = format_amount(actual_received, ctx.meme_token_decimals, TOKEN_AMOUNT_DP)
    if Decimal(amount_received) < ctx.min_amount_received:
        logger.debug(
            "Dropping dust buy %s on %s: %s < %s",
            event.tx_hash, ctx.pair, amount_received, ctx.min_amount_received,
        )
        return None

    return TradeResult(
        total_tokens_purchased=format_amount(raw_bought, ctx.meme_token_decimals, TOKEN_AMOUNT_DP),
        amount_received=amount_received,
        cost=format_amount(abs(base_amount), ctx.base_token_decimals, BASE_AMOUNT_DP),
        user_balance=format_amount(balance, ctx.meme_token_decimals, TOKEN_AMOUNT_DP),
        token_price=quote.as_str(),
        pair=ctx.pair,
        token_contract=ctx.meme_token_address,
        sender=buyer,
        txn_hash=event.tx_hash,
        version=ctx.version_tag,
        chain=ctx.chain_tag,
    )
