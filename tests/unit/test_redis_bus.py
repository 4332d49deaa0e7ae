"""
Unit tests for messaging/redis_bus.py.

The redis.asyncio client and its PubSub are replaced with mocks; the
subscriber loop is driven by a fake PubSub whose listen() yields canned
messages.
"""

from __future__ import annotations

import asyncio
import json
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from messaging.redis_bus import RedisBus, RedisBusError


class FakePubSub:
    """PubSub stand-in: listen() yields ``messages`` then raises ``error`` or blocks."""

    def __init__(
        self, messages: list[dict], block: bool = True, error: Exception | None = None
    ) -> None:
        self._messages = messages
        self._block = block
        self._error = error
        self.subscribe = AsyncMock()
        self.aclose = AsyncMock()

    async def listen(self):
        for message in self._messages:
            yield message
        if self._error is not None:
            raise self._error
        if self._block:
            await asyncio.Event().wait()


def _message(channel: str, data) -> dict:
    return {"type": "message", "channel": channel, "data": data, "pattern": None}


@pytest.fixture
def channel_logger():
    return MagicMock()


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.ping = AsyncMock(return_value=True)
    client.publish = AsyncMock(return_value=1)
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def bus(mock_config_loader, redis_client, channel_logger):
    mock_config_loader.get_timing_config.return_value["redis"]["reconnect_base_delay_seconds"] = 0.01
    with (
        patch("messaging.redis_bus.get_config", return_value=mock_config_loader),
        patch("messaging.redis_bus.setup_module_logger", return_value=MagicMock()),
        patch("messaging.redis_bus.setup_channel_logger", return_value=channel_logger),
    ):
        yield RedisBus(client=redis_client)


async def wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


class TestConnect:
    async def test_connect_pings(self, bus, redis_client):
        await bus.connect()
        redis_client.ping.assert_awaited_once()

    async def test_ping_failure_raises_bus_error(self, bus, redis_client):
        redis_client.ping = AsyncMock(side_effect=RedisConnectionError("refused"))
        with pytest.raises(RedisBusError):
            await bus.connect()

    async def test_client_built_from_url(self, mock_config_loader, redis_client):
        with (
            patch("messaging.redis_bus.get_config", return_value=mock_config_loader),
            patch("messaging.redis_bus.setup_module_logger", return_value=MagicMock()),
            patch("messaging.redis_bus.redis.Redis.from_url", return_value=redis_client) as from_url,
        ):
            bus = RedisBus()
            await bus.connect()

        from_url.assert_called_once_with("redis://localhost:6379/0", decode_responses=True)

    async def test_close_releases_client(self, bus, redis_client):
        await bus.connect()
        await bus.close()
        redis_client.aclose.assert_awaited_once()


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------


class TestPublish:
    async def test_dict_payload_serialized(self, bus, redis_client, channel_logger):
        ok = await bus.publish("buys", {"cost": Decimal("0.0077"), "pair": "0xabc"})

        assert ok is True
        channel, body = redis_client.publish.await_args.args
        assert channel == "buys"
        assert json.loads(body) == {"cost": "0.0077", "pair": "0xabc"}
        channel_logger.info.assert_called_once_with(body)

    async def test_string_payload_passes_through(self, bus, redis_client):
        await bus.publish("info", "added pair 0xabc")
        redis_client.publish.assert_awaited_once_with("info", "added pair 0xabc")

    async def test_redis_failure_returns_false(self, bus, redis_client, channel_logger):
        redis_client.publish = AsyncMock(side_effect=RedisError("READONLY"))

        assert await bus.publish("buys", {"a": 1}) is False
        channel_logger.info.assert_not_called()

    async def test_unserializable_payload_returns_false(self, bus):
        assert await bus.publish("buys", {"obj": object()}) is False

    async def test_not_connected_returns_false(self, mock_config_loader):
        with (
            patch("messaging.redis_bus.get_config", return_value=mock_config_loader),
            patch("messaging.redis_bus.setup_module_logger", return_value=MagicMock()),
        ):
            bus = RedisBus()
        assert await bus.publish("buys", {"a": 1}) is False


# ---------------------------------------------------------------------------
# Subscribing
# ---------------------------------------------------------------------------


class TestReconnectDelay:
    def test_doubles_and_caps(self, mock_config_loader):
        mock_config_loader.get_timing_config.return_value["redis"].update(
            {"reconnect_base_delay_seconds": 1.0, "reconnect_max_delay_seconds": 30.0}
        )
        with (
            patch("messaging.redis_bus.get_config", return_value=mock_config_loader),
            patch("messaging.redis_bus.setup_module_logger", return_value=MagicMock()),
        ):
            bus = RedisBus(client=MagicMock())

        assert [bus.reconnect_delay(n) for n in range(1, 8)] == [1, 2, 4, 8, 16, 30, 30]


class TestDispatch:
    async def test_json_payload_decoded(self, bus):
        handler = AsyncMock()
        bus._handlers["token-actions"] = handler

        await bus._dispatch(_message("token-actions", '{"action": "delete", "pair": "0xabc"}'))

        handler.assert_awaited_once_with({"action": "delete", "pair": "0xabc"})

    async def test_non_json_passed_raw(self, bus):
        handler = AsyncMock()
        bus._handlers["token-actions"] = handler

        await bus._dispatch(_message("token-actions", "not json"))

        handler.assert_awaited_once_with("not json")

    async def test_bytes_decoded(self, bus):
        handler = AsyncMock()
        bus._handlers["token-actions"] = handler

        await bus._dispatch(_message(b"token-actions", b'{"action": "create"}'))

        handler.assert_awaited_once_with({"action": "create"})

    async def test_handler_exception_contained(self, bus):
        bus._handlers["token-actions"] = AsyncMock(side_effect=RuntimeError("bad"))
        await bus._dispatch(_message("token-actions", "{}"))

    async def test_unknown_channel_ignored(self, bus):
        handler = AsyncMock()
        bus._handlers["token-actions"] = handler
        await bus._dispatch(_message("other", "{}"))
        handler.assert_not_awaited()


class TestListenLoop:
    async def test_messages_reach_handler(self, bus, redis_client):
        pubsub = FakePubSub(
            [
                {"type": "subscribe", "channel": "token-actions", "data": 1},
                _message("token-actions", '{"action": "delete", "pair": "0xabc"}'),
            ]
        )
        redis_client.pubsub = MagicMock(return_value=pubsub)
        handler = AsyncMock()

        await bus.subscribe("token-actions", handler)
        await wait_until(lambda: handler.await_count == 1)

        handler.assert_awaited_once_with({"action": "delete", "pair": "0xabc"})
        pubsub.subscribe.assert_awaited_once_with("token-actions")

        await bus.close()
        pubsub.aclose.assert_awaited_once()

    async def test_reconnects_after_stream_ends(self, bus, redis_client):
        dropped = FakePubSub([], block=False)
        recovered = FakePubSub([_message("token-actions", '{"action": "create"}')])
        redis_client.pubsub = MagicMock(side_effect=[dropped, recovered])
        handler = AsyncMock()

        await bus.subscribe("token-actions", handler)
        await wait_until(lambda: handler.await_count == 1)

        assert redis_client.pubsub.call_count == 2
        dropped.aclose.assert_awaited_once()
        recovered.subscribe.assert_awaited_once_with("token-actions")
        await bus.close()

    async def test_second_channel_added_to_running_listener(self, bus, redis_client):
        pubsub = FakePubSub([])
        redis_client.pubsub = MagicMock(return_value=pubsub)

        await bus.subscribe("token-actions", AsyncMock())
        await wait_until(lambda: bus._pubsub is not None)
        await bus.subscribe("info", AsyncMock())

        pubsub.subscribe.assert_any_await("info")
        assert redis_client.pubsub.call_count == 1
        await bus.close()

    @pytest.mark.parametrize(
        "error",
        [
            RedisTimeoutError("Timeout reading from socket"),
            ResponseError("NOPERM this user has no permissions"),
            RuntimeError("unexpected frame"),
        ],
        ids=["timeout", "response-error", "unexpected"],
    )
    async def test_listener_survives_other_failures(self, bus, redis_client, error):
        failing = FakePubSub([], error=error)
        recovered = FakePubSub([_message("token-actions", '{"action": "create"}')])
        redis_client.pubsub = MagicMock(side_effect=[failing, recovered])
        handler = AsyncMock()

        await bus.subscribe("token-actions", handler)
        await wait_until(lambda: handler.await_count == 1)

        assert not bus._listen_task.done()
        assert redis_client.pubsub.call_count == 2
        failing.aclose.assert_awaited_once()
        await bus.close()
