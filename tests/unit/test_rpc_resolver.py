"""
Unit tests for chain/rpc_resolver.py.

Clients are produced by an injected factory so no network is touched.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chain.chain_client import (
    ChainClientError,
    HttpChainClient,
    MultiEndpointClient,
    NoLiveEndpointError,
    SocketChainClient,
)
from chain.rpc_resolver import RpcResolver, default_client_factory

HTTP_A = "https://mainnet.base.org"
HTTP_B = "https://base.llamarpc.com"
WS_A = "wss://base-rpc.publicnode.com"


@pytest.fixture(autouse=True)
def patched_config(mock_config_loader):
    mock_config_loader.get_timing_config.return_value["rpc"]["probe_timeout_seconds"] = 0.05
    with (
        patch("chain.rpc_resolver.get_config", return_value=mock_config_loader),
        patch("chain.chain_client.get_config", return_value=mock_config_loader),
        patch("chain.rpc_resolver.setup_module_logger", return_value=MagicMock()),
        patch("chain.chain_client.setup_module_logger", return_value=MagicMock()),
    ):
        yield mock_config_loader


def _client(endpoint: str, block: int | None = 1_000, error: Exception | None = None):
    client = MagicMock()
    client.endpoint = endpoint
    client.transport = "http"
    client.connect = AsyncMock()
    if error is not None:
        client.get_block_number = AsyncMock(side_effect=error)
    else:
        client.get_block_number = AsyncMock(return_value=block)
    client.close = AsyncMock()
    return client


def _factory(clients: dict):
    return lambda endpoint, fault_queue: clients[endpoint]


class TestResolve:
    async def test_single_live_endpoint_returned_directly(self):
        client = _client(HTTP_A)
        resolver = RpcResolver([HTTP_A], client_factory=_factory({HTTP_A: client}))

        assert await resolver.resolve() is client
        client.connect.assert_awaited_once()

    async def test_several_live_endpoints_aggregated_in_order(self):
        a, b = _client(HTTP_A), _client(HTTP_B)
        resolver = RpcResolver([HTTP_A, HTTP_B], client_factory=_factory({HTTP_A: a, HTTP_B: b}))

        resolved = await resolver.resolve()

        assert isinstance(resolved, MultiEndpointClient)
        assert resolved.clients == [a, b]

    async def test_failed_endpoint_skipped_and_closed(self):
        dead = _client(HTTP_A, error=ChainClientError("connection refused"))
        live = _client(HTTP_B)
        resolver = RpcResolver([HTTP_A, HTTP_B], client_factory=_factory({HTTP_A: dead, HTTP_B: live}))

        assert await resolver.resolve() is live
        dead.close.assert_awaited_once()

    async def test_slow_endpoint_times_out(self):
        async def _hang():
            await asyncio.sleep(10)

        slow = _client(HTTP_A)
        slow.get_block_number = AsyncMock(side_effect=_hang)
        live = _client(HTTP_B)
        resolver = RpcResolver([HTTP_A, HTTP_B], client_factory=_factory({HTTP_A: slow, HTTP_B: live}))

        assert await resolver.resolve() is live
        slow.close.assert_awaited_once()

    async def test_no_live_endpoint_raises(self):
        dead = _client(HTTP_A, error=ChainClientError("503"))
        resolver = RpcResolver([HTTP_A], client_factory=_factory({HTTP_A: dead}))

        with pytest.raises(NoLiveEndpointError):
            await resolver.resolve()

    async def test_empty_endpoint_list_raises(self):
        with pytest.raises(NoLiveEndpointError):
            await RpcResolver(["", ""]).resolve()

    async def test_unsupported_scheme_skipped(self):
        live = _client(HTTP_A)

        def factory(endpoint, fault_queue):
            if endpoint.startswith("ipc"):
                raise ValueError("unsupported")
            return live

        resolver = RpcResolver(["ipc:///tmp/geth.ipc", HTTP_A], client_factory=factory)
        assert await resolver.resolve() is live

    async def test_fault_queue_passed_to_factory(self):
        queue: asyncio.Queue = asyncio.Queue()
        seen = []

        def factory(endpoint, fault_queue):
            seen.append(fault_queue)
            return _client(endpoint)

        await RpcResolver([WS_A], fault_queue=queue, client_factory=factory).resolve()
        assert seen == [queue]


class TestDefaultClientFactory:
    def test_http_scheme(self):
        assert isinstance(default_client_factory(HTTP_A), HttpChainClient)

    def test_ws_scheme(self):
        queue: asyncio.Queue = asyncio.Queue()
        client = default_client_factory(WS_A, queue)
        assert isinstance(client, SocketChainClient)
        assert client._fault_queue is queue

    def test_unknown_scheme_rejected(self):
        with pytest.raises(ValueError):
            default_client_factory("ftp://example.com")
