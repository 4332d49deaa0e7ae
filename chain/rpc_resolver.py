"""
RPC endpoint resolution.

Probes every configured endpoint in priority order (connect, then
eth_blockNumber under the probe timeout) and returns a client over the ones
that answered: the client itself when exactly one is live, a
MultiEndpointClient when several are. No live endpoint is fatal.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence

from bot_logging.logger_manager import setup_module_logger
from chain.chain_client import (
    ChainClient,
    HttpChainClient,
    MultiEndpointClient,
    NoLiveEndpointError,
    SocketChainClient,
)
from config.loader import get_config
from shared.constants import DEFAULT_PROBE_TIMEOUT_SECONDS

ClientFactory = Callable[[str, "asyncio.Queue | None"], ChainClient]


def default_client_factory(endpoint: str, fault_queue: asyncio.Queue | None = None) -> ChainClient:
    """Pick the transport from the URL scheme."""
    scheme = endpoint.split("://", 1)[0].lower() if "://" in endpoint else ""
    if scheme in ("http", "https"):
        return HttpChainClient(endpoint)
    if scheme in ("ws", "wss"):
        return SocketChainClient(endpoint, fault_queue=fault_queue)
    raise ValueError(f"Unsupported RPC endpoint scheme: {endpoint!r}")


class RpcResolver:
    def __init__(
        self,
        endpoints: Sequence[str],
        fault_queue: asyncio.Queue | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._endpoints = [e for e in endpoints if e]
        self._fault_queue = fault_queue
        self._client_factory = client_factory or default_client_factory
        self._probe_timeout = float(
            get_config()
            .get_timing_config()
            .get("rpc", {})
            .get("probe_timeout_seconds", DEFAULT_PROBE_TIMEOUT_SECONDS)
        )
        self._logger = setup_module_logger(
            "rpc_resolver", "rpc_resolver.log", module_folder="Chain_Client_Logs"
        )

    async def _probe(self, client: ChainClient) -> int:
        await client.connect()
        return await client.get_block_number()

    async def resolve(self) -> ChainClient:
        """
        Return a chain client over every endpoint that answered the probe.

        Raises:
            NoLiveEndpointError: no endpoint connected and returned a block number.
        """
        live: list[ChainClient] = []

        for endpoint in self._endpoints:
            try:
                client = self._client_factory(endpoint, self._fault_queue)
            except ValueError as e:
                self._logger.warning("Skipping endpoint %s: %s", endpoint, e)
                continue

            try:
                block = await asyncio.wait_for(self._probe(client), timeout=self._probe_timeout)
            except asyncio.TimeoutError:
                self._logger.warning(
                    "Endpoint %s did not answer within %.1fs, skipping",
                    endpoint, self._probe_timeout,
                )
                await self._discard(client)
                continue
            except Exception as e:
                self._logger.warning("Endpoint %s failed probe: %s", endpoint, e)
                await self._discard(client)
                continue

            self._logger.info("Endpoint %s live at block %d", endpoint, block)
            live.append(client)

        if not live:
            self._logger.critical(
                "No live RPC endpoint among %d configured", len(self._endpoints)
            )
            raise NoLiveEndpointError(
                f"none of {len(self._endpoints)} RPC endpoints answered the probe"
            )
        if len(live) == 1:
            return live[0]

        self._logger.info("Using %d live endpoints with failover", len(live))
        return MultiEndpointClient(live)

    async def _discard(self, client: ChainClient) -> None:
        try:
            await client.close()
        except Exception as e:
            self._logger.debug("Closing failed endpoint %s: %s", client.endpoint, e)
