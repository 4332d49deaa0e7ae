"""
Shared pytest configuration and fixtures for Base Swap Watcher tests.

Swap fixtures use a real Uniswap V3 WETH/USDC 0.05% pool swap on Base:
    tx 0x3dd1f721a100bf30e813194577dc7faa07e28f605d5c8b4cf7495795774d0cde
    token0 = WETH (18 decimals), token1 = USDC (6 decimals)
    amount0 = +0.00774 WETH into the pool, amount1 = -15.263362 USDC out

USDC plays the "meme" token (ordering 1) so the swap reads as a buy.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
from decimal import Decimal
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Keep test log files out of the working tree
os.environ.setdefault(
    "LOG_DIR", str(Path(tempfile.gettempdir()) / "base_swap_watcher_test_logs")
)

from shared.types import SwapNotification, TrackedPair  # noqa: E402

# ---------------------------------------------------------------------------
# Real Base chain data
# ---------------------------------------------------------------------------

POOL = "0xd0b53d9277642d899df5c87a3966a349a798f224"
WETH = "0x4200000000000000000000000000000000000006"
USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
BUYER = "0xf0DA03E41B60F05ddF2F7C8007ECc3936C9a1b98"
TX = "0x3dd1f721a100bf30e813194577dc7faa07e28f605d5c8b4cf7495795774d0cde"

AMOUNT0 = 7740000000000000  # WETH (18 dec), positive = into pool
AMOUNT1 = -15263362  # USDC (6 dec), negative = out of pool (buy)
SQRT_PRICE = 3519190486474440538307992

USDC_ORDERING = 1  # USDC address > WETH address, so USDC is token1

BUYER_BALANCE = 500 * 10**6  # 500 USDC

TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def pad_address(address: str) -> str:
    """Left-pad a 20-byte address into a 32-byte topic."""
    return "0x" + address.lower().replace("0x", "").rjust(64, "0")


def transfer_log(sender: str, amount: int, recipient: str = BUYER) -> dict:
    """Build a raw ERC-20 Transfer log as found in a receipt."""
    return {
        "topics": [TRANSFER_TOPIC, pad_address(sender), pad_address(recipient)],
        "data": "0x" + format(amount, "064x"),
    }


def make_swap(
    amount0: int = AMOUNT0,
    amount1: int = AMOUNT1,
    sqrt_price_x96: int = SQRT_PRICE,
    tx_hash: str = TX,
) -> SwapNotification:
    return SwapNotification(
        amount0=amount0,
        amount1=amount1,
        sqrt_price_x96=sqrt_price_x96,
        tx_hash=tx_hash,
        pool_address=POOL,
    )


def make_pair(pair: str = POOL, **overrides) -> TrackedPair:
    fields = {
        "pair": pair,
        "meme_token_address": USDC,
        "base_token_address": WETH,
        "meme_token_decimals": 6,
        "base_token_decimals": 18,
    }
    fields.update(overrides)
    return TrackedPair(**fields)


# ---------------------------------------------------------------------------
# Fake subscription (async iterator fed from the test)
# ---------------------------------------------------------------------------


class FakeSubscription:
    """In-memory SwapSubscription: push() delivers, cancel()/end() stop."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self.cancelled = False

    def push(self, swap: SwapNotification) -> None:
        self._queue.put_nowait(swap)

    def end(self) -> None:
        self._queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> SwapNotification:
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def cancel(self) -> None:
        self.cancelled = True
        self.end()


def make_chain_client(
    token0: str = WETH,
    balance: int = BUYER_BALANCE,
    receipt: dict | None = None,
) -> MagicMock:
    """
    Mock ChainClient whose pool()/token() bindings are AsyncMocks.

    ``client.subscriptions`` collects every FakeSubscription handed out.
    """
    client = MagicMock()
    client.endpoint = "mock://chain"
    client.subscriptions = []

    def _pool(address):
        binding = MagicMock()
        binding.address = address
        binding.token0 = AsyncMock(return_value=token0)

        async def _subscribe():
            sub = FakeSubscription()
            client.subscriptions.append(sub)
            return sub

        binding.subscribe_swaps = AsyncMock(side_effect=_subscribe)
        return binding

    def _token(address):
        binding = MagicMock()
        binding.address = address
        binding.balance_of = AsyncMock(return_value=balance)
        return binding

    client.pool = MagicMock(side_effect=_pool)
    client.token = MagicMock(side_effect=_token)
    client.get_transaction_receipt = AsyncMock(
        return_value=receipt if receipt is not None else {"from": BUYER, "logs": []}
    )
    client.close = AsyncMock()
    return client


# ---------------------------------------------------------------------------
# Config loader fixture (patched singleton)
# ---------------------------------------------------------------------------

STANDARD_CHANNELS = {
    "token_actions": "token-actions",
    "buys": "buys",
    "info": "info",
    "errors": "errors",
}


@pytest.fixture
def mock_config_loader():
    """
    Provide a mock ConfigLoader that returns standard configs.

    Usage in tests:
        def test_something(mock_config_loader):
            mock_config_loader.get_throttle_ms.return_value = 1000
    """
    loader = MagicMock()
    loader.get_app_config.return_value = {
        "chain_tag": "base",
        "version_tag": "v3",
        "min_amount_received": "0.01",
        "on_transport_fault": "exit",
    }
    loader.get_timing_config.return_value = {
        "db_write_throttle_ms": 10_800_000,
        "stale_pair_threshold_ms": 259_200_000,
        "stale_pair_scan_interval_ms": 21_600_000,
        "rpc": {
            "probe_timeout_seconds": 0.5,
            "call_timeout_seconds": 0.5,
            "poll_interval_seconds": 0.01,
            "backoff_base_seconds": 0.01,
            "backoff_max_seconds": 0.05,
        },
        "redis": {
            "reconnect_base_delay_seconds": 1.0,
            "reconnect_max_delay_seconds": 30.0,
            "jitter_max_seconds": 0.0,
        },
    }
    loader.get_websocket_config.return_value = {"connection": {}}
    loader.get_storage_config.return_value = {}
    loader.get_abi.return_value = []
    loader.get_channel_name.side_effect = lambda key: STANDARD_CHANNELS.get(key, key)
    loader.get_min_amount_received.return_value = Decimal("0.01")
    loader.get_throttle_ms.return_value = 10_800_000
    loader.get_stale_pair_threshold_ms.return_value = 259_200_000
    loader.get_stale_pair_scan_interval_ms.return_value = 21_600_000
    loader.get_fault_policy.return_value = "exit"
    loader.get_rpc_endpoints.return_value = ["https://mainnet.base.org"]
    loader.get_redis_url.return_value = "redis://localhost:6379/0"
    loader.get_db_path.return_value = ":memory:"
    return loader


# ---------------------------------------------------------------------------
# Publisher / store doubles
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_publisher():
    """RedisBus stand-in: publish() records calls and returns True."""
    publisher = MagicMock()
    publisher.publish = AsyncMock(return_value=True)
    publisher.connect = AsyncMock()
    publisher.subscribe = AsyncMock()
    publisher.close = AsyncMock()
    return publisher


@pytest.fixture
def mock_store():
    """PairStore stand-in with async CRUD methods."""
    store = MagicMock()
    store.create_table = AsyncMock()
    store.upsert = AsyncMock()
    store.delete = AsyncMock()
    store.get_all = AsyncMock(return_value=[])
    store.get_stale = AsyncMock(return_value=[])
    store.update_last_bought = AsyncMock()
    store.close = MagicMock()
    return store


def published_on(publisher: MagicMock, channel: str) -> list:
    """Payloads passed to publisher.publish for one channel, in order."""
    return [c.args[1] for c in publisher.publish.call_args_list if c.args[0] == channel]
