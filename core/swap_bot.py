"""
Application supervisor for Base Swap Watcher.

Wires the collaborators together and owns everything that is not per-pool:
startup restore of persisted pairs, the token-actions control plane, the
periodic stale-pair sweep, the transport-fault watcher and shutdown.

Usage:
    from core.swap_bot import SwapBot

    bot = SwapBot(shutdown_event=shutdown_event)
    await bot.start()
    await shutdown_event.wait()
    await bot.stop()
    sys.exit(bot.exit_code)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any

from bot_logging.logger_manager import setup_module_logger
from chain.chain_client import ChainClient, NoLiveEndpointError
from chain.rpc_resolver import RpcResolver
from config.loader import get_config
from core.listener_manager import ListenerManager
from core.pair_store import PairStore
from messaging.redis_bus import RedisBus
from shared.constants import FAULT_POLICY_EXIT, FAULT_POLICY_RESTART
from shared.types import ControlAction, TrackedPair, TransportFault

ResolverFactory = Callable[["asyncio.Queue[TransportFault]"], RpcResolver]


class SwapBot:
    """
    Long-running supervisor. start() brings everything up; stop() tears it
    down. Fatal conditions set ``exit_code`` and the shutdown event.
    """

    def __init__(
        self,
        bus: RedisBus | None = None,
        store: PairStore | None = None,
        resolver_factory: ResolverFactory | None = None,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        cfg = get_config()
        self._bus = bus if bus is not None else RedisBus()
        self._store = store if store is not None else PairStore()
        self._resolver_factory = resolver_factory or (
            lambda fault_queue: RpcResolver(cfg.get_rpc_endpoints(), fault_queue=fault_queue)
        )

        self._token_actions_channel = cfg.get_channel_name("token_actions")
        self._info_channel = cfg.get_channel_name("info")
        self._errors_channel = cfg.get_channel_name("errors")
        self._stale_threshold_ms = cfg.get_stale_pair_threshold_ms()
        self._scan_interval_s = cfg.get_stale_pair_scan_interval_ms() / 1000
        self._fault_policy = cfg.get_fault_policy()

        self._fault_queue: asyncio.Queue[TransportFault] = asyncio.Queue()
        self._shutdown_event = shutdown_event if shutdown_event is not None else asyncio.Event()
        self._control_lock = asyncio.Lock()
        self._chain: ChainClient | None = None
        self._manager: ListenerManager | None = None
        self._tasks: list[asyncio.Task] = []
        self._stopped = False
        self.exit_code = 0

        self._logger = setup_module_logger(
            "swap_bot", "swap_bot.log", module_folder="Swap_Bot_Logs"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def manager(self) -> ListenerManager | None:
        return self._manager

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    async def start(self) -> None:
        """
        Bring the watcher up.

        Raises:
            RedisBusError: Redis did not answer ping.
            NoLiveEndpointError: no RPC endpoint answered the probe.
        """
        await self._bus.connect()
        await self._store.create_table()

        self._chain = await self._resolver_factory(self._fault_queue).resolve()
        self._manager = ListenerManager(self._chain, self._store, self._bus)

        restored = await self._restore_pairs()
        self._logger.info("Restored %d pair(s) from store", restored)

        await self._bus.subscribe(self._token_actions_channel, self.handle_control_message)

        self._tasks = [
            asyncio.create_task(self._stale_sweep_loop(), name="stale_sweep"),
            asyncio.create_task(self._fault_watcher(), name="fault_watcher"),
        ]
        for task in self._tasks:
            task.add_done_callback(self._on_task_done)

        self._logger.info("Swap watcher running")

    async def stop(self) -> None:
        """Cancel listeners (persisted rows kept) and release every resource."""
        if self._stopped:
            return
        self._stopped = True
        self._logger.info("Shutting down")

        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if self._manager is not None:
            await self._manager.remove_all()
        self._store.close()
        await self._bus.close()
        if self._chain is not None:
            await self._chain.close()
        self._logger.info("Shutdown complete (exit code %d)", self.exit_code)

    def request_shutdown(self, exit_code: int = 0) -> None:
        if exit_code and not self.exit_code:
            self.exit_code = exit_code
        self._shutdown_event.set()

    def _on_task_done(self, task: asyncio.Task) -> None:
        try:
            exc = task.exception()
        except asyncio.CancelledError:
            self._logger.debug("Task %s cancelled", task.get_name())
            return
        if exc is not None:
            self._logger.critical(
                "Task %s failed with unhandled exception: %s", task.get_name(), exc, exc_info=exc
            )
            self.request_shutdown(1)

    async def _restore_pairs(self) -> int:
        restored = 0
        for pair_info in await self._store.get_all():
            try:
                await self._manager.add(pair_info)
                restored += 1
            except Exception as e:
                self._logger.error("Failed to restore pair %s: %s", pair_info.pair, e)
                await self._publish_error(str(e), pair_info.pair, context="restore")
        return restored

    # ------------------------------------------------------------------
    # Control plane
    # ------------------------------------------------------------------

    async def handle_control_message(self, message: Any) -> None:
        """Route one token-actions message. Messages are handled one at a time."""
        async with self._control_lock:
            if not isinstance(message, dict):
                self._logger.warning("Malformed control message: %r", message)
                await self._publish_error("malformed control message", "", raw=str(message))
                return

            action = message.get("action")
            pair = str(message.get("pair") or "")

            if action == ControlAction.CREATE.value:
                await self._handle_create(message, pair)
            elif action == ControlAction.DELETE.value:
                await self._handle_delete(pair)
            else:
                self._logger.warning("Unknown action: %s", action)

    async def _handle_create(self, message: dict[str, Any], pair: str) -> None:
        if not pair or not message.get("memeTokenAddress") or not message.get("baseTokenAddress"):
            self._logger.warning("Malformed create message: %r", message)
            await self._publish_error(
                "create requires pair, memeTokenAddress and baseTokenAddress", pair
            )
            return
        try:
            pair_info = TrackedPair.from_message(message)
        except (TypeError, ValueError) as e:
            self._logger.warning("Malformed create message for %s: %s", pair, e)
            await self._publish_error(f"malformed create message: {e}", pair)
            return

        try:
            await self._manager.add(pair_info)
        except Exception as e:
            self._logger.error("Failed to add pair %s: %s", pair, e)
            await self._publish_error(str(e), pair, context="add")
            return
        await self._bus.publish(self._info_channel, f"added pair {pair}")

    async def _handle_delete(self, pair: str) -> None:
        if not pair:
            self._logger.warning("Delete message without pair")
            await self._publish_error("delete requires pair", pair)
            return
        try:
            await self._manager.remove(pair)
        except Exception as e:
            self._logger.error("Failed to remove pair %s: %s", pair, e)
            await self._publish_error(str(e), pair, context="remove")
            return
        await self._bus.publish(self._info_channel, f"removed pair {pair}")

    async def _publish_error(self, error: str, pair: str, **meta: Any) -> None:
        await self._bus.publish(self._errors_channel, {"error": error, "pair": pair, **meta})

    # ------------------------------------------------------------------
    # Stale-pair sweep
    # ------------------------------------------------------------------

    async def sweep_stale_pairs(self, now_ms: int | None = None) -> list[str]:
        """Announce pairs without a buy inside the threshold. Nothing is deleted."""
        now = int(time.time() * 1000) if now_ms is None else now_ms
        cutoff = now - self._stale_threshold_ms
        stale = [p.pair for p in await self._store.get_stale(cutoff)]
        if stale:
            self._logger.info("Stale pairs (no buy since %d): %s", cutoff, stale)
            await self._bus.publish(
                self._info_channel, {"message": "stale-pairs check", "pairs": stale}
            )
        return stale

    async def _stale_sweep_loop(self) -> None:
        while not self._shutdown_event.is_set():
            await asyncio.sleep(self._scan_interval_s)
            try:
                await self.sweep_stale_pairs()
            except Exception as e:
                self._logger.error("Stale sweep failed: %s", e)

    # ------------------------------------------------------------------
    # Transport faults
    # ------------------------------------------------------------------

    async def _fault_watcher(self) -> None:
        while not self._shutdown_event.is_set():
            fault = await self._fault_queue.get()
            await self.handle_transport_fault(fault)

    async def handle_transport_fault(self, fault: TransportFault) -> None:
        """Apply the configured on_transport_fault policy to one fault."""
        self._logger.critical("Transport fault on %s: %s", fault.endpoint, fault.reason)
        await self._publish_error(
            f"transport fault: {fault.reason}", "", endpoint=fault.endpoint
        )

        if self._fault_policy != FAULT_POLICY_RESTART:
            if self._fault_policy != FAULT_POLICY_EXIT:
                self._logger.warning("Unknown fault policy %r, exiting", self._fault_policy)
            self.request_shutdown(1)
            return

        async with self._control_lock:
            try:
                await self._restart_chain()
            except NoLiveEndpointError as e:
                self._logger.critical("Scoped restart failed, exiting: %s", e)
                self.request_shutdown(1)

    async def _restart_chain(self) -> None:
        await self._manager.remove_all()
        old_chain = self._chain
        if old_chain is not None:
            try:
                await old_chain.close()
            except Exception as e:
                self._logger.warning("Closing old chain client failed: %s", e)

        # faults from the old client are stale now
        while not self._fault_queue.empty():
            self._fault_queue.get_nowait()

        self._chain = await self._resolver_factory(self._fault_queue).resolve()
        await self._manager.replace_chain_client(self._chain)
        restored = await self._restore_pairs()
        self._logger.info("Scoped restart complete: %d pair(s) re-added", restored)
