"""
Chain access layer for Uniswap V3 pools on Base.

One capability interface (ChainClient) with two transports and one
aggregator:

- HttpChainClient    AsyncWeb3 over HTTP; swaps are delivered by polling
                     eth_getLogs block range by block range.
- SocketChainClient  raw JSON-RPC over a websocket; swaps are delivered by
                     eth_subscribe("logs"). Never reconnects: a closed
                     transport is reported as a TransportFault on the
                     fault queue and the supervisor decides what to do.
- MultiEndpointClient  several live clients in priority order; every call
                     returns the first success.

Usage:
    from chain.chain_client import HttpChainClient

    client = HttpChainClient("https://mainnet.base.org")
    await client.connect()
    pool = client.pool(pair_address)
    token0 = await pool.token0()
    async for swap in await pool.subscribe_swaps():
        ...
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any

import websockets
from eth_abi.abi import decode as abi_decode
from eth_abi.abi import encode as abi_encode
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from bot_logging.logger_manager import setup_module_logger
from chain.log_decoder import decode_swap_log
from config.loader import get_config
from shared.constants import (
    BALANCE_OF_SELECTOR,
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_BACKOFF_MAX_SECONDS,
    DEFAULT_CALL_TIMEOUT_SECONDS,
    DEFAULT_KEEPALIVE_INTERVAL_SECONDS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    TOKEN0_SELECTOR,
    V3_SWAP_TOPIC,
)
from shared.types import SwapNotification, TransportFault

TRANSPORT_HTTP = "http"
TRANSPORT_WS = "ws"
TRANSPORT_MULTI = "multi"


class ChainClientError(Exception):
    """Raised when a chain read fails or times out."""


class NoLiveEndpointError(ChainClientError):
    """Raised when no configured RPC endpoint answered the startup probe."""


def _get_logger():
    return setup_module_logger(
        "chain_client", "chain_client.log", module_folder="Chain_Client_Logs"
    )


def _rpc_timing() -> dict[str, Any]:
    return get_config().get_timing_config().get("rpc", {})


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================


class SwapSubscription(ABC):
    """Async iterator of SwapNotification for one pool, cancellable."""

    def __aiter__(self) -> SwapSubscription:
        return self

    @abstractmethod
    async def __anext__(self) -> SwapNotification: ...

    @abstractmethod
    async def cancel(self) -> None: ...


class PollingSwapSubscription(SwapSubscription):
    """
    Swap delivery by eth_getLogs polling.

    Starts at the block after the chain head seen on the first poll, so only
    swaps mined after subscription are delivered. Read failures are retried
    with exponential backoff (base doubling, capped); the stream only ends
    on cancel().
    """

    def __init__(
        self,
        client: ChainClient,
        pool_address: str,
        poll_interval: float | None = None,
        backoff_base: float | None = None,
        backoff_max: float | None = None,
    ) -> None:
        timing = _rpc_timing()
        self._client = client
        self._pool = pool_address
        self._poll_interval = float(
            poll_interval
            if poll_interval is not None
            else timing.get("poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS)
        )
        self._backoff_base = float(
            backoff_base
            if backoff_base is not None
            else timing.get("backoff_base_seconds", DEFAULT_BACKOFF_BASE_SECONDS)
        )
        self._backoff_max = float(
            backoff_max
            if backoff_max is not None
            else timing.get("backoff_max_seconds", DEFAULT_BACKOFF_MAX_SECONDS)
        )
        self._next_block: int | None = None
        self._failures = 0
        self._buffer: deque[SwapNotification] = deque()
        self._cancelled = asyncio.Event()
        self._logger = _get_logger()

    @property
    def pool_address(self) -> str:
        return self._pool

    async def __anext__(self) -> SwapNotification:
        while not self._buffer:
            if self._cancelled.is_set():
                raise StopAsyncIteration
            await self._poll_once()
        return self._buffer.popleft()

    async def cancel(self) -> None:
        self._cancelled.set()
        self._buffer.clear()

    def next_backoff(self) -> float:
        """Delay before the next retry, given the current failure count."""
        return min(self._backoff_base * (2 ** max(self._failures - 1, 0)), self._backoff_max)

    async def _poll_once(self) -> None:
        try:
            latest = await self._client.get_block_number()
            if self._next_block is None:
                self._next_block = latest + 1
                await self._wait(self._poll_interval)
                return
            if latest < self._next_block:
                await self._wait(self._poll_interval)
                return

            logs = await self._client.get_swap_logs(self._pool, self._next_block, latest)
            self._next_block = latest + 1
            self._failures = 0
        except ChainClientError as e:
            self._failures += 1
            delay = self.next_backoff()
            self._logger.warning(
                "Swap poll failed for %s (attempt %d): %s. Retrying in %.1fs",
                self._pool, self._failures, e, delay,
            )
            await self._wait(delay)
            return

        for log in logs:
            swap = decode_swap_log(log)
            if swap is None:
                self._logger.warning("Skipping undecodable swap log for %s", self._pool)
                continue
            self._buffer.append(swap)
        if not self._buffer:
            await self._wait(self._poll_interval)

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


class StreamSwapSubscription(SwapSubscription):
    """Swap delivery fed by eth_subscription notifications on a websocket."""

    def __init__(
        self,
        subscription_id: str,
        pool_address: str,
        on_cancel: Callable[[str], Awaitable[None]],
    ) -> None:
        self.subscription_id = subscription_id
        self._pool = pool_address
        self._on_cancel = on_cancel
        self._queue: asyncio.Queue[SwapNotification | None] = asyncio.Queue()
        self._ended = False
        self._logger = _get_logger()

    def feed(self, log_data: Mapping[str, Any]) -> None:
        if self._ended:
            return
        swap = decode_swap_log(log_data)
        if swap is None:
            self._logger.warning("Skipping undecodable swap log for %s", self._pool)
            return
        self._queue.put_nowait(swap)

    def end(self) -> None:
        if not self._ended:
            self._ended = True
            self._queue.put_nowait(None)

    async def __anext__(self) -> SwapNotification:
        item = await self._queue.get()
        if item is None:
            # keep the sentinel for any later reader
            self._queue.put_nowait(None)
            raise StopAsyncIteration
        return item

    async def cancel(self) -> None:
        if self._ended:
            return
        self.end()
        await self._on_cancel(self.subscription_id)


# ============================================================================
# CONTRACT BINDINGS
# ============================================================================


class PoolBinding:
    """A Uniswap V3 pool address bound to a chain client."""

    def __init__(self, client: ChainClient, address: str) -> None:
        self.client = client
        self.address = address

    async def token0(self) -> str:
        return await self.client.get_token0(self.address)

    async def subscribe_swaps(self) -> SwapSubscription:
        return await self.client.subscribe_swap_events(self.address)


class TokenBinding:
    """An ERC-20 token address bound to a chain client."""

    def __init__(self, client: ChainClient, address: str) -> None:
        self.client = client
        self.address = address

    async def balance_of(self, owner: str) -> int:
        return await self.client.get_token_balance(self.address, owner)


# ============================================================================
# CLIENT INTERFACE
# ============================================================================


class ChainClient(ABC):
    """Read and subscribe capabilities needed to watch V3 pools."""

    transport: str = ""

    def __init__(self, endpoint: str) -> None:
        self.endpoint = endpoint

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def get_block_number(self) -> int: ...

    @abstractmethod
    async def get_token0(self, pool_address: str) -> str: ...

    @abstractmethod
    async def get_transaction_receipt(self, tx_hash: str) -> Mapping[str, Any]: ...

    @abstractmethod
    async def get_token_balance(self, token_address: str, owner: str) -> int: ...

    @abstractmethod
    async def get_swap_logs(
        self, pool_address: str, from_block: int, to_block: int
    ) -> list[Mapping[str, Any]]: ...

    @abstractmethod
    async def subscribe_swap_events(self, pool_address: str) -> SwapSubscription: ...

    def pool(self, address: str) -> PoolBinding:
        return PoolBinding(self, address)

    def token(self, address: str) -> TokenBinding:
        return TokenBinding(self, address)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.endpoint!r})"


# ============================================================================
# HTTP TRANSPORT
# ============================================================================


class HttpChainClient(ChainClient):
    """
    AsyncWeb3 over HTTP.

    Contract reads go through the ABIs in config/abis. Every read is bounded
    by rpc.call_timeout_seconds and wrapped as ChainClientError.
    """

    transport = TRANSPORT_HTTP

    def __init__(self, endpoint: str, w3: AsyncWeb3 | None = None) -> None:
        super().__init__(endpoint)
        cfg = get_config()
        self._w3 = w3 if w3 is not None else AsyncWeb3(AsyncHTTPProvider(endpoint))
        self._pool_abi = cfg.get_abi("uniswap_v3_pool")
        self._erc20_abi = cfg.get_abi("erc20")
        self._call_timeout = float(
            _rpc_timing().get("call_timeout_seconds", DEFAULT_CALL_TIMEOUT_SECONDS)
        )
        self._logger = _get_logger()

    async def _call(self, label: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await asyncio.wait_for(factory(), timeout=self._call_timeout)
        except asyncio.TimeoutError as e:
            raise ChainClientError(
                f"{label} timed out after {self._call_timeout}s on {self.endpoint}"
            ) from e
        except ChainClientError:
            raise
        except Exception as e:
            raise ChainClientError(f"{label} failed on {self.endpoint}: {e}") from e

    async def connect(self) -> None:
        connected = await self._call("is_connected", self._w3.is_connected)
        if not connected:
            raise ChainClientError(f"HTTP endpoint {self.endpoint} is not reachable")
        self._logger.info("HTTP client ready on %s", self.endpoint)

    async def close(self) -> None:
        self._logger.debug("HTTP client on %s released", self.endpoint)

    async def get_block_number(self) -> int:
        async def _block_number() -> int:
            return await self._w3.eth.block_number

        return int(await self._call("eth_blockNumber", _block_number))

    async def get_token0(self, pool_address: str) -> str:
        def _token0():
            contract = self._w3.eth.contract(
                address=Web3.to_checksum_address(pool_address), abi=self._pool_abi
            )
            return contract.functions.token0().call()

        return await self._call("token0", _token0)

    async def get_transaction_receipt(self, tx_hash: str) -> Mapping[str, Any]:
        return await self._call(
            "getTransactionReceipt", lambda: self._w3.eth.get_transaction_receipt(tx_hash)
        )

    async def get_token_balance(self, token_address: str, owner: str) -> int:
        def _balance_of():
            contract = self._w3.eth.contract(
                address=Web3.to_checksum_address(token_address), abi=self._erc20_abi
            )
            return contract.functions.balanceOf(Web3.to_checksum_address(owner)).call()

        return int(await self._call("balanceOf", _balance_of))

    async def get_swap_logs(
        self, pool_address: str, from_block: int, to_block: int
    ) -> list[Mapping[str, Any]]:
        def _get_logs():
            return self._w3.eth.get_logs(
                {
                    "address": Web3.to_checksum_address(pool_address),
                    "fromBlock": from_block,
                    "toBlock": to_block,
                    "topics": [V3_SWAP_TOPIC],
                }
            )

        return list(await self._call("eth_getLogs", _get_logs))

    async def subscribe_swap_events(self, pool_address: str) -> SwapSubscription:
        return PollingSwapSubscription(self, pool_address)


# ============================================================================
# WEBSOCKET TRANSPORT
# ============================================================================


class SocketChainClient(ChainClient):
    """
    Raw JSON-RPC over one websocket connection.

    Requests are matched to responses by id; eth_subscription notifications
    are routed to their stream by subscription id. Keepalive pings run every
    keepalive_interval_seconds. When the transport closes, pending requests
    fail, every stream ends and a TransportFault is queued.
    """

    transport = TRANSPORT_WS

    def __init__(self, endpoint: str, fault_queue: asyncio.Queue | None = None) -> None:
        super().__init__(endpoint)
        ws_config = get_config().get_websocket_config()
        conn = ws_config.get("connection", {})
        self._keepalive = float(
            conn.get("keepalive_interval_seconds", DEFAULT_KEEPALIVE_INTERVAL_SECONDS)
        )
        self._ping_timeout = float(conn.get("ping_timeout_seconds", 20))
        self._close_timeout = float(conn.get("close_timeout_seconds", 10))
        self._max_size = int(conn.get("max_message_bytes", 10 * 1024 * 1024))
        self._call_timeout = float(
            _rpc_timing().get("call_timeout_seconds", DEFAULT_CALL_TIMEOUT_SECONDS)
        )
        self._fault_queue = fault_queue
        self._ws: Any = None
        self._reader_task: asyncio.Task | None = None
        self._next_id = 0
        self._pending: dict[int, asyncio.Future] = {}
        self._streams: dict[str, StreamSwapSubscription] = {}
        self._closing = False
        self._failed = False
        self._logger = _get_logger()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        try:
            self._ws = await websockets.connect(
                self.endpoint,
                ping_interval=self._keepalive,
                ping_timeout=self._ping_timeout,
                close_timeout=self._close_timeout,
                max_size=self._max_size,
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise ChainClientError(f"WebSocket connect to {self.endpoint} failed: {e}") from e

        self._closing = False
        self._failed = False
        self._reader_task = asyncio.create_task(self._read_loop())
        self._logger.info("WebSocket client connected to %s", self.endpoint)

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._fail_all("client closed")
        self._logger.info("WebSocket client on %s closed", self.endpoint)

    async def _read_loop(self) -> None:
        reason = "connection closed by peer"
        try:
            async for raw in self._ws:
                try:
                    self._dispatch(raw)
                except Exception as e:
                    self._logger.error(
                        "Failed to handle frame from %s: %s", self.endpoint, e, exc_info=True
                    )
        except asyncio.CancelledError:
            self._fail_all("client closed")
            raise
        except websockets.exceptions.ConnectionClosed as e:
            reason = f"connection closed: {e}"
        except Exception as e:
            reason = f"reader failed: {e!r}"

        self._fail_all(reason)
        if self._closing:
            return
        self._logger.critical("WebSocket transport to %s lost: %s", self.endpoint, reason)
        if self._fault_queue is not None:
            self._fault_queue.put_nowait(TransportFault(endpoint=self.endpoint, reason=reason))

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            self._logger.warning("Invalid JSON from %s: %s", self.endpoint, e)
            return
        if not isinstance(message, dict):
            self._logger.warning("Ignoring non-object frame from %s: %.200r", self.endpoint, message)
            return

        if message.get("method") == "eth_subscription":
            params = message.get("params")
            if not isinstance(params, dict) or not isinstance(params.get("result"), dict):
                self._logger.warning("Malformed subscription frame from %s", self.endpoint)
                return
            stream = self._streams.get(params.get("subscription"))
            if stream is not None:
                stream.feed(params["result"])
            return

        future = self._pending.pop(message.get("id"), None)
        if future is None or future.done():
            return
        if message.get("error") is not None:
            future.set_exception(ChainClientError(f"RPC error: {message['error']}"))
        else:
            future.set_result(message.get("result"))

    def _fail_all(self, reason: str) -> None:
        self._failed = True
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ChainClientError(reason))
        self._pending.clear()
        for stream in self._streams.values():
            stream.end()
        self._streams.clear()

    # ------------------------------------------------------------------
    # JSON-RPC plumbing
    # ------------------------------------------------------------------

    async def _request(self, method: str, params: Sequence[Any]) -> Any:
        if self._ws is None or self._failed:
            raise ChainClientError(f"{method}: WebSocket {self.endpoint} is not connected")

        self._next_id += 1
        request_id = self._next_id
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": list(params)}
        try:
            await self._ws.send(json.dumps(payload))
            return await asyncio.wait_for(future, timeout=self._call_timeout)
        except asyncio.TimeoutError as e:
            raise ChainClientError(
                f"{method} timed out after {self._call_timeout}s on {self.endpoint}"
            ) from e
        except websockets.exceptions.ConnectionClosed as e:
            raise ChainClientError(f"{method} failed, connection closed: {e}") from e
        finally:
            self._pending.pop(request_id, None)

    async def _eth_call(self, label: str, to: str, data: str) -> bytes:
        result = await self._request("eth_call", [{"to": to, "data": data}, "latest"])
        if not isinstance(result, str) or len(result) <= 2:
            raise ChainClientError(f"{label} returned empty data for {to}")
        return bytes.fromhex(result[2:])

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_block_number(self) -> int:
        return int(await self._request("eth_blockNumber", []), 16)

    async def get_token0(self, pool_address: str) -> str:
        raw = await self._eth_call("token0", pool_address, TOKEN0_SELECTOR)
        try:
            (address,) = abi_decode(["address"], raw)
        except Exception as e:
            raise ChainClientError(f"token0 returned malformed data: {e}") from e
        return Web3.to_checksum_address(address)

    async def get_transaction_receipt(self, tx_hash: str) -> Mapping[str, Any]:
        receipt = await self._request("eth_getTransactionReceipt", [tx_hash])
        if receipt is None:
            raise ChainClientError(f"receipt for {tx_hash} not found")
        return receipt

    async def get_token_balance(self, token_address: str, owner: str) -> int:
        try:
            encoded = abi_encode(["address"], [Web3.to_checksum_address(owner)])
        except Exception as e:
            raise ChainClientError(f"balanceOf: invalid owner {owner!r}: {e}") from e
        raw = await self._eth_call("balanceOf", token_address, BALANCE_OF_SELECTOR + encoded.hex())
        try:
            (balance,) = abi_decode(["uint256"], raw)
        except Exception as e:
            raise ChainClientError(f"balanceOf returned malformed data: {e}") from e
        return int(balance)

    async def get_swap_logs(
        self, pool_address: str, from_block: int, to_block: int
    ) -> list[Mapping[str, Any]]:
        logs = await self._request(
            "eth_getLogs",
            [
                {
                    "address": pool_address,
                    "fromBlock": hex(from_block),
                    "toBlock": hex(to_block),
                    "topics": [V3_SWAP_TOPIC],
                }
            ],
        )
        return list(logs or [])

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe_swap_events(self, pool_address: str) -> SwapSubscription:
        subscription_id = await self._request(
            "eth_subscribe", ["logs", {"address": pool_address, "topics": [V3_SWAP_TOPIC]}]
        )
        stream = StreamSwapSubscription(subscription_id, pool_address, self._unsubscribe)
        self._streams[subscription_id] = stream
        self._logger.info("Subscribed to swaps for %s (id %s)", pool_address, subscription_id)
        return stream

    async def _unsubscribe(self, subscription_id: str) -> None:
        self._streams.pop(subscription_id, None)
        if self._failed:
            return
        try:
            await self._request("eth_unsubscribe", [subscription_id])
        except ChainClientError as e:
            self._logger.warning("eth_unsubscribe %s failed: %s", subscription_id, e)


# ============================================================================
# MULTI-ENDPOINT AGGREGATOR
# ============================================================================


class MultiEndpointClient(ChainClient):
    """
    Several live clients in priority order.

    Each call tries the members in order under the call timeout and returns
    the first success; ChainClientError is raised only when every member
    failed.
    """

    transport = TRANSPORT_MULTI

    def __init__(self, clients: Sequence[ChainClient]) -> None:
        if not clients:
            raise ValueError("MultiEndpointClient needs at least one client")
        super().__init__(",".join(c.endpoint for c in clients))
        self.clients = list(clients)
        self._call_timeout = float(
            _rpc_timing().get("call_timeout_seconds", DEFAULT_CALL_TIMEOUT_SECONDS)
        )
        self._logger = _get_logger()

    async def _first_success(
        self, label: str, op: Callable[[ChainClient], Awaitable[Any]]
    ) -> Any:
        errors: list[str] = []
        for client in self.clients:
            try:
                return await asyncio.wait_for(op(client), timeout=self._call_timeout)
            except (ChainClientError, asyncio.TimeoutError) as e:
                errors.append(f"{client.endpoint}: {str(e) or type(e).__name__}")
                self._logger.warning("%s failed on %s, trying next: %s", label, client.endpoint, e)
        raise ChainClientError(
            f"{label} failed on all {len(self.clients)} endpoints: " + "; ".join(errors)
        )

    async def connect(self) -> None:
        """Members arrive already connected by the resolver."""

    async def close(self) -> None:
        for client in self.clients:
            try:
                await client.close()
            except Exception as e:
                self._logger.warning("Closing %s failed: %s", client.endpoint, e)

    async def get_block_number(self) -> int:
        return await self._first_success("eth_blockNumber", lambda c: c.get_block_number())

    async def get_token0(self, pool_address: str) -> str:
        return await self._first_success("token0", lambda c: c.get_token0(pool_address))

    async def get_transaction_receipt(self, tx_hash: str) -> Mapping[str, Any]:
        return await self._first_success(
            "getTransactionReceipt", lambda c: c.get_transaction_receipt(tx_hash)
        )

    async def get_token_balance(self, token_address: str, owner: str) -> int:
        return await self._first_success(
            "balanceOf", lambda c: c.get_token_balance(token_address, owner)
        )

    async def get_swap_logs(
        self, pool_address: str, from_block: int, to_block: int
    ) -> list[Mapping[str, Any]]:
        return await self._first_success(
            "eth_getLogs", lambda c: c.get_swap_logs(pool_address, from_block, to_block)
        )

    async def subscribe_swap_events(self, pool_address: str) -> SwapSubscription:
        if all(c.transport == TRANSPORT_HTTP for c in self.clients):
            # one poller, each poll fails over across members
            return PollingSwapSubscription(self, pool_address)

        for client in self.clients:
            try:
                return await client.subscribe_swap_events(pool_address)
            except ChainClientError as e:
                self._logger.warning(
                    "Swap subscription for %s failed on %s: %s", pool_address, client.endpoint, e
                )
        raise ChainClientError(f"no endpoint accepted a swap subscription for {pool_address}")
