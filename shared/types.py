"""
Shared data types for Base Swap Watcher.

Centralized dataclasses and enums used across all modules.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from shared.constants import UNPRICED_MARKER

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ControlAction(Enum):
    CREATE = "create"
    DELETE = "delete"


class TokenOrdering(int, Enum):
    TOKEN0 = 0  # meme token occupies the pool's first slot
    TOKEN1 = 1


# ---------------------------------------------------------------------------
# Pair Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TrackedPair:
    """One watched pool. Keyed by pair address."""

    pair: str
    meme_token_address: str
    base_token_address: str = ""
    meme_token_decimals: int = 18
    base_token_decimals: int = 18
    last_bought_at: int = 0  # epoch ms

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> TrackedPair:
        """Build from a control message or a persisted row (camelCase keys)."""
        meme_decimals = message.get("memeTokenDecimals")
        base_decimals = message.get("baseTokenDecimals")
        return cls(
            pair=str(message.get("pair") or ""),
            meme_token_address=str(message.get("memeTokenAddress") or ""),
            base_token_address=str(message.get("baseTokenAddress") or ""),
            meme_token_decimals=int(meme_decimals) if meme_decimals is not None else 18,
            base_token_decimals=int(base_decimals) if base_decimals is not None else 18,
            last_bought_at=int(message.get("lastBoughtAt") or 0),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "pair": self.pair,
            "memeTokenAddress": self.meme_token_address,
            "baseTokenAddress": self.base_token_address,
            "memeTokenDecimals": self.meme_token_decimals,
            "baseTokenDecimals": self.base_token_decimals,
            "lastBoughtAt": self.last_bought_at,
        }


# ---------------------------------------------------------------------------
# Chain Event Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SwapNotification:
    """Decoded Uniswap V3 Swap event. Transient, never persisted."""

    amount0: int  # signed; negative = left the pool
    amount1: int
    sqrt_price_x96: int
    tx_hash: str
    pool_address: str = ""
    liquidity: int = 0
    tick: int = 0
    block_number: int = 0
    log_index: int = 0


@dataclass(frozen=True)
class TransportFault:
    """Unrecoverable transport closure reported by a socket chain client."""

    endpoint: str
    reason: str
    occurred_at: float = field(default_factory=time.time)


# ---------------------------------------------------------------------------
# Price / Trade Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PriceQuote:
    """Either a fixed-precision decimal price or an explicit unpriced result."""

    price: Decimal | None
    precision: int = 0

    @classmethod
    def unpriced(cls) -> PriceQuote:
        return cls(price=None)

    @property
    def is_priced(self) -> bool:
        return self.price is not None

    def as_str(self) -> str:
        if self.price is None:
            return UNPRICED_MARKER
        return format(self.price, f".{self.precision}f")


@dataclass(frozen=True)
class TradeResult:
    total_tokens_purchased: str
    amount_received: str
    cost: str
    user_balance: str
    token_price: str  # decimal string or UNPRICED_MARKER
    pair: str
    token_contract: str
    sender: str
    txn_hash: str
    version: str
    chain: str

    def to_message(self) -> dict[str, str]:
        """Outbound JSON shape for the buys channel."""
        return {
            "totalTokensPurchased": self.total_tokens_purchased,
            "amountReceived": self.amount_received,
            "cost": self.cost,
            "userBalance": self.user_balance,
            "tokenPrice": self.token_price,
            "pair": self.pair,
            "tokenContract": self.token_contract,
            "sender": self.sender,
            "txnHash": self.txn_hash,
            "version": self.version,
            "chain": self.chain,
        }
