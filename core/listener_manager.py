"""
Per-pool swap subscription lifecycle.

Owns every piece of per-pair runtime state: the active pair set, token
ordering, decimals, subscriptions, consumer tasks and throttle markers.
A pair is either Unregistered or Active; add() and remove() move it between
the two.

Each active pool has one consumer task reading its swap subscription; every
swap is handled in its own task so receipt and balance reads never hold up
delivery of the next event.

Usage:
    from core.listener_manager import ListenerManager

    manager = ListenerManager(chain_client, store, bus)
    await manager.add(TrackedPair.from_message(msg))
    await manager.remove(pair_address)
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from core.swap_processor import SwapContext, process_swap_event
from shared.constants import DEFAULT_CHAIN_TAG, DEFAULT_VERSION_TAG
from shared.types import SwapNotification, TokenOrdering, TrackedPair

if TYPE_CHECKING:
    from chain.chain_client import ChainClient, PoolBinding, SwapSubscription, TokenBinding
    from core.pair_store import PairStore
    from messaging.redis_bus import RedisBus


def _now_ms() -> int:
    return int(time.time() * 1000)


def address_ordering(meme_token_address: str, base_token_address: str) -> TokenOrdering:
    """Uniswap sorts pool tokens by address value: the lower address is token0."""
    try:
        meme = int(meme_token_address, 16)
        base = int(base_token_address, 16)
    except (TypeError, ValueError):
        return TokenOrdering.TOKEN0
    return TokenOrdering.TOKEN0 if meme < base else TokenOrdering.TOKEN1


class ListenerManager:
    """Registry of watched pools and their swap handlers."""

    def __init__(self, chain_client: ChainClient, store: PairStore, publisher: RedisBus) -> None:
        cfg = get_config()
        app_cfg = cfg.get_app_config()

        self._chain = chain_client
        self._store = store
        self._publisher = publisher

        self._buys_channel = cfg.get_channel_name("buys")
        self._errors_channel = cfg.get_channel_name("errors")
        self._min_amount_received = cfg.get_min_amount_received()
        self._throttle_ms = cfg.get_throttle_ms()
        self._chain_tag = app_cfg.get("chain_tag", DEFAULT_CHAIN_TAG)
        self._version_tag = app_cfg.get("version_tag", DEFAULT_VERSION_TAG)

        self._active: dict[str, TrackedPair] = {}
        self._ordering: dict[str, TokenOrdering] = {}
        self._decimals: dict[str, tuple[int, int]] = {}
        self._subscriptions: dict[str, SwapSubscription] = {}
        self._consumers: dict[str, asyncio.Task] = {}
        self._last_write: dict[str, int] = {}
        self._handler_tasks: set[asyncio.Task] = set()

        self._logger = setup_module_logger(
            "listener_manager", "listener_manager.log", module_folder="Listener_Logs"
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def active_pairs(self) -> list[str]:
        return list(self._active)

    def is_active(self, pair: str) -> bool:
        return pair in self._active

    def ordering_for(self, pair: str) -> TokenOrdering | None:
        return self._ordering.get(pair)

    def decimals_for(self, pair: str) -> tuple[int, int] | None:
        return self._decimals.get(pair)

    @property
    def chain_client(self) -> ChainClient:
        return self._chain

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def add(self, pair_info: TrackedPair) -> None:
        """
        Start watching a pool. No-op for an empty or already active pair.

        Subscription and store failures propagate to the caller; nothing is
        left registered in either case.
        """
        pair = pair_info.pair
        if not pair:
            self._logger.warning("Ignoring add with empty pair address")
            return
        if pair in self._active:
            self._logger.debug("Pair %s already active", pair)
            return

        pool = self._chain.pool(pair)
        meme_token = self._chain.token(pair_info.meme_token_address)
        ordering = await self._resolve_ordering(pool, pair_info)

        subscription = await pool.subscribe_swaps()

        self._active[pair] = pair_info
        self._ordering[pair] = ordering
        self._decimals[pair] = (pair_info.meme_token_decimals, pair_info.base_token_decimals)
        self._subscriptions[pair] = subscription
        consumer = asyncio.create_task(
            self._consume(pair, subscription, meme_token), name=f"swaps:{pair}"
        )
        self._consumers[pair] = consumer

        try:
            await self._store.upsert(pair_info)
        except Exception as e:
            self._logger.error("Persisting pair %s failed, rolling back: %s", pair, e)
            self._subscriptions.pop(pair, None)
            self._consumers.pop(pair, None)
            self._forget(pair)
            await self._cancel(pair, subscription, consumer)
            raise
        self._logger.info(
            "Watching pair %s (meme=%s ordering=%d)",
            pair, pair_info.meme_token_address, int(ordering),
        )

    async def remove(self, pair: str) -> None:
        """Stop watching a pool and delete its persisted row. No-op if unknown."""
        if pair not in self._active:
            self._logger.debug("Remove for unknown pair %s ignored", pair)
            return

        subscription = self._subscriptions.pop(pair, None)
        consumer = self._consumers.pop(pair, None)
        self._forget(pair)

        await self._cancel(pair, subscription, consumer)
        await self._store.delete(pair)
        self._logger.info("Stopped watching pair %s", pair)

    async def remove_all(self) -> None:
        """Cancel every subscription and clear all state. Persisted rows are kept."""
        pairs = list(self._active)
        subscriptions = dict(self._subscriptions)
        consumers = dict(self._consumers)

        self._subscriptions.clear()
        self._consumers.clear()
        for pair in pairs:
            self._forget(pair)

        for pair in pairs:
            await self._cancel(pair, subscriptions.get(pair), consumers.get(pair))

        handlers = list(self._handler_tasks)
        for task in handlers:
            task.cancel()
        if handlers:
            await asyncio.gather(*handlers, return_exceptions=True)

        self._logger.info("Removed all %d listeners", len(pairs))

    async def replace_chain_client(self, chain_client: ChainClient) -> None:
        """Use a new chain client for subsequent subscriptions and reads."""
        self._chain = chain_client
        self._logger.info("Chain client replaced: %r", chain_client)

    async def throttled_update(self, pair: str, now_ms: int | None = None) -> None:
        """Persist lastBoughtAt at most once per throttle window per pair."""
        if pair not in self._active:
            return
        now = _now_ms() if now_ms is None else now_ms
        if now - self._last_write.get(pair, 0) < self._throttle_ms:
            return
        self._last_write[pair] = now
        await self._store.update_last_bought(pair)
        self._logger.debug("lastBoughtAt updated for %s", pair)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _forget(self, pair: str) -> None:
        self._active.pop(pair, None)
        self._ordering.pop(pair, None)
        self._decimals.pop(pair, None)
        self._last_write.pop(pair, None)

    async def _cancel(
        self,
        pair: str,
        subscription: SwapSubscription | None,
        consumer: asyncio.Task | None,
    ) -> None:
        if subscription is not None:
            try:
                await subscription.cancel()
            except Exception as e:
                self._logger.warning("Cancelling subscription for %s failed: %s", pair, e)
        if consumer is not None and not consumer.done():
            consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)

    async def _resolve_ordering(self, pool: PoolBinding, pair_info: TrackedPair) -> TokenOrdering:
        try:
            token0 = await pool.token0()
        except Exception as e:
            ordering = address_ordering(
                pair_info.meme_token_address, pair_info.base_token_address
            )
            self._logger.warning(
                "token0() failed for %s, ordering by address value (%d): %s",
                pair_info.pair, int(ordering), e,
            )
            return ordering

        if str(token0).lower() == pair_info.meme_token_address.lower():
            return TokenOrdering.TOKEN0
        return TokenOrdering.TOKEN1

    async def _consume(
        self, pair: str, subscription: SwapSubscription, meme_token: TokenBinding
    ) -> None:
        try:
            async for swap in subscription:
                task = asyncio.create_task(self._handle_swap(pair, swap, meme_token))
                self._handler_tasks.add(task)
                task.add_done_callback(self._handler_tasks.discard)
        except Exception as e:
            self._logger.error("Swap stream for %s failed: %s", pair, e, exc_info=True)
            await self._report_error(pair, e, {"context": "subscription"})
            return

        if pair in self._active:
            self._logger.warning("Swap stream for %s ended while pair is active", pair)

    async def _handle_swap(
        self, pair: str, swap: SwapNotification, meme_token: TokenBinding
    ) -> None:
        pair_info = self._active.get(pair)
        if pair_info is None:
            return
        meme_decimals, base_decimals = self._decimals[pair]

        async def _on_error(exc: Exception, meta: dict[str, Any]) -> None:
            await self._report_error(pair, exc, meta)

        ctx = SwapContext(
            pair=pair,
            meme_token_address=pair_info.meme_token_address,
            base_token_address=pair_info.base_token_address,
            meme_token_decimals=meme_decimals,
            base_token_decimals=base_decimals,
            ordering=self._ordering[pair],
            chain_client=self._chain,
            meme_token=meme_token,
            on_error=_on_error,
            min_amount_received=self._min_amount_received,
            chain_tag=self._chain_tag,
            version_tag=self._version_tag,
        )

        try:
            result = await process_swap_event(swap, ctx)
            if result is None:
                return
            if pair not in self._active:
                self._logger.debug("Dropping result for removed pair %s (%s)", pair, swap.tx_hash)
                return
            await self._publisher.publish(self._buys_channel, result.to_message())
            self._logger.info(
                "Buy on %s: %s tokens for %s (tx %s)",
                pair, result.amount_received, result.cost, result.txn_hash,
            )
            await self.throttled_update(pair)
        except Exception as e:
            self._logger.error("Swap handler failed for %s: %s", pair, e, exc_info=True)
            await self._report_error(pair, e, {"txHash": swap.tx_hash})

    async def _report_error(self, pair: str, exc: Exception, meta: dict[str, Any]) -> None:
        payload = {"error": str(exc), "pair": pair, **meta}
        await self._publisher.publish(self._errors_channel, payload)
