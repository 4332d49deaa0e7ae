"""
Redis pub/sub bus for Base Swap Watcher.

Publishes trade, info and error payloads (JSON via DecimalEncoder, mirrored to
a raw per-channel log) and runs one subscriber loop that dispatches inbound
messages to per-channel handlers. The subscriber reconnects on connection
loss with exponential backoff plus jitter.

Usage:
    from messaging.redis_bus import RedisBus

    bus = RedisBus()
    await bus.connect()
    await bus.subscribe("token-actions", handle_control)
    await bus.publish("buys", trade.to_message())
"""

from __future__ import annotations

import asyncio
import json
import random
from collections.abc import Awaitable, Callable
from typing import Any

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from bot_logging.logger_manager import setup_channel_logger, setup_module_logger
from config.loader import get_config
from shared.serialization_utils import dumps

MessageHandler = Callable[[Any], Awaitable[None]]


class RedisBusError(Exception):
    """Raised when the Redis connection cannot be established."""


class RedisBus:
    def __init__(self, redis_url: str | None = None, client: Any = None) -> None:
        cfg = get_config()
        self._url = redis_url or cfg.get_redis_url()
        self._redis = client

        redis_timing = cfg.get_timing_config().get("redis", {})
        self._base_delay = float(redis_timing.get("reconnect_base_delay_seconds", 1.0))
        self._max_delay = float(redis_timing.get("reconnect_max_delay_seconds", 30.0))
        self._jitter_max = float(redis_timing.get("jitter_max_seconds", 1.0))

        self._handlers: dict[str, MessageHandler] = {}
        self._pubsub: Any = None
        self._listen_task: asyncio.Task | None = None
        self._stopping = asyncio.Event()
        self._logger = setup_module_logger(
            "redis_bus", "redis_bus.log", module_folder="Messaging_Logs"
        )

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = redis.Redis.from_url(self._url, decode_responses=True)
        try:
            await self._redis.ping()
        except RedisError as e:
            self._logger.critical("Redis connection failed (%s): %s", self._url, e)
            raise RedisBusError(f"Redis ping failed for {self._url}: {e}") from e
        self._logger.info("Redis connected: %s", self._url)

    async def close(self) -> None:
        self._stopping.set()
        if self._listen_task is not None and not self._listen_task.done():
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
        self._listen_task = None
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except RedisError as e:
                self._logger.warning("Error closing Redis connection: %s", e)
        self._logger.info("Redis bus closed")

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(self, channel: str, payload: Any) -> bool:
        """
        Publish a payload on a channel. Returns False on failure.

        Failures are logged, never raised: a lost notification must not take
        down a swap handler or the control plane.
        """
        try:
            payload_str = dumps(payload)
            await self._redis.publish(channel, payload_str)
        except (RedisError, TypeError, ValueError, AttributeError) as e:
            self._logger.error("Failed to publish to %s: %s", channel, e)
            return False
        setup_channel_logger(channel).info(payload_str)
        return True

    # ------------------------------------------------------------------
    # Subscribing
    # ------------------------------------------------------------------

    async def subscribe(self, channel: str, handler: MessageHandler) -> None:
        """Register a handler for a channel and make sure the listener is running."""
        self._handlers[channel] = handler
        if self._listen_task is None or self._listen_task.done():
            self._stopping.clear()
            self._listen_task = asyncio.create_task(self._listen_loop())
        elif self._pubsub is not None:
            await self._pubsub.subscribe(channel)
        self._logger.info("Subscribed to %s", channel)

    def reconnect_delay(self, attempt: int) -> float:
        """Backoff before reconnect attempt ``attempt`` (1-based), without jitter."""
        return min(self._base_delay * (2 ** (attempt - 1)), self._max_delay)

    def _jittered_delay(self, attempt: int) -> float:
        return self.reconnect_delay(attempt) + random.uniform(0, self._jitter_max)

    async def _listen_loop(self) -> None:
        attempt = 0
        while not self._stopping.is_set():
            pubsub = self._redis.pubsub()
            try:
                await pubsub.subscribe(*self._handlers)
                self._pubsub = pubsub
                async for message in pubsub.listen():
                    attempt = 0
                    if self._stopping.is_set():
                        break
                    if message.get("type") != "message":
                        continue
                    await self._dispatch(message)
                else:
                    if not self._stopping.is_set():
                        raise RedisConnectionError("subscription stream ended")
            except (RedisConnectionError, RedisTimeoutError) as e:
                attempt += 1
                delay = self._jittered_delay(attempt)
                self._logger.warning(
                    "Redis subscriber connection lost: %s. Reconnect attempt %d in %.1fs",
                    e, attempt, delay,
                )
                await asyncio.sleep(delay)
            except Exception as e:
                attempt += 1
                delay = self._jittered_delay(attempt)
                self._logger.error(
                    "Redis subscriber failed: %r. Resubscribing (attempt %d) in %.1fs",
                    e, attempt, delay, exc_info=True,
                )
                await asyncio.sleep(delay)
            finally:
                self._pubsub = None
                try:
                    await pubsub.aclose()
                except RedisError as e:
                    self._logger.debug("Error closing pubsub: %s", e)

    async def _dispatch(self, message: dict[str, Any]) -> None:
        channel = message.get("channel")
        if isinstance(channel, bytes):
            channel = channel.decode("utf-8")
        raw = message.get("data")
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")

        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            payload = raw

        handler = self._handlers.get(channel)
        if handler is None:
            return
        try:
            await handler(payload)
        except Exception as e:
            self._logger.error("Handler for %s failed: %s", channel, e, exc_info=True)
