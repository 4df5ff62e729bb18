"""Redis pub/sub transport.

Lets several daemons and remote hook scripts share one event channel.
The ``redis`` package is optional: it is imported on start, and its
absence surfaces as TransportUnavailableError so the daemon can keep
running in local mode without it.

Two connections are used, one subscribed to the channel and one for
publishing, since a subscribed connection cannot issue other commands.
"""

from __future__ import annotations

import asyncio
import json
import logging
from types import ModuleType
from typing import Any

from vigil.config import RedisConfig
from vigil.core.callbacks import HandlerSet
from vigil.core.errors import MalformedMessageError, TransportUnavailableError
from vigil.transport.protocol import MessageHandler

logger = logging.getLogger(__name__)

MAX_CONNECT_ATTEMPTS = 10
BACKOFF_BASE = 0.1
BACKOFF_MAX = 3.0


def _load_redis_module() -> ModuleType:
    """Import redis.asyncio.

    Raises:
        TransportUnavailableError: If the redis package is not installed.
    """
    try:
        import redis.asyncio as redis_asyncio
    except ImportError as e:
        raise TransportUnavailableError(
            "Redis transport requires the redis package. "
            "Install with: pip install 'vigil-monitor[redis]'"
        ) from e
    return redis_asyncio


def calculate_backoff(
    attempt: int,
    base_delay: float = BACKOFF_BASE,
    max_delay: float = BACKOFF_MAX,
) -> float:
    """Exponential backoff delay for a reconnect attempt (0-indexed)."""
    return min(base_delay * (2**attempt), max_delay)


def decode_message(data: Any) -> dict[str, Any]:
    """Decode one broker message into a message dict.

    Raises:
        MalformedMessageError: If the payload is not a JSON object.
    """
    if isinstance(data, (bytes, bytearray)):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedMessageError(f"Invalid UTF-8: {e}") from e
    if not isinstance(data, str):
        raise MalformedMessageError(f"Unexpected payload type {type(data).__name__}")
    try:
        message = json.loads(data)
    except json.JSONDecodeError as e:
        raise MalformedMessageError(f"Invalid JSON: {e}") from e
    if not isinstance(message, dict):
        raise MalformedMessageError(f"Expected a JSON object, got {type(message).__name__}")
    return message


def _client_kwargs(config: RedisConfig) -> dict[str, Any]:
    return {
        "host": config.host,
        "port": config.port,
        "password": config.password or None,
    }


class RedisTransport:
    """Redis pub/sub transport.

    Example:
        >>> transport = RedisTransport(RedisConfig(host="redis.internal"))
        >>> transport.on_event(handle)
        >>> await transport.start()
        >>> await transport.publish({"id": "e1", "sessionId": "s1", ...})
        >>> await transport.stop()
    """

    mode = "redis"

    def __init__(
        self,
        config: RedisConfig | None = None,
        *,
        max_attempts: int = MAX_CONNECT_ATTEMPTS,
        base_delay: float = BACKOFF_BASE,
        max_delay: float = BACKOFF_MAX,
    ) -> None:
        self.config = config or RedisConfig()
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay

        self._redis: ModuleType | None = None
        self._subscriber: Any = None
        self._publisher: Any = None
        self._pubsub: Any = None
        self._listener: asyncio.Task[None] | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self._running = False
        self._last_error: str | None = None
        self._handlers: HandlerSet[dict[str, Any]] = HandlerSet("redis")

    @property
    def last_error(self) -> str | None:
        return self._last_error

    def is_running(self) -> bool:
        return self._running

    def on_event(self, handler: MessageHandler) -> None:
        self._handlers.add(handler)

    def off_event(self, handler: MessageHandler) -> None:
        self._handlers.remove(handler)

    async def start(self) -> None:
        """Connect both clients and subscribe to the channel.

        Raises:
            TransportUnavailableError: If redis is not installed, the broker
                stays unreachable after the bounded retries, or stop() is
                called while connecting.
        """
        if self._running:
            return

        try:
            self._redis = _load_redis_module()
        except TransportUnavailableError as e:
            self._last_error = str(e)
            raise

        self._connect_task = asyncio.create_task(self._connect())
        try:
            await asyncio.wait({self._connect_task})
        except asyncio.CancelledError:
            self._connect_task.cancel()
            raise
        task, self._connect_task = self._connect_task, None

        if task.cancelled():
            raise TransportUnavailableError("Redis transport stopped while connecting")
        task.result()

        self._running = True
        self._listener = asyncio.create_task(self._listen())
        logger.info(
            "Redis transport connected to %s:%d, channel %s",
            self.config.host,
            self.config.port,
            self.config.channel,
        )

    async def stop(self) -> None:
        """Unsubscribe and close both connections. Aborts any reconnect."""
        self._running = False

        if self._connect_task is not None:
            self._connect_task.cancel()

        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None

        had_clients = self._subscriber is not None or self._publisher is not None
        await self._close_clients()
        await self._handlers.drain()
        if had_clients:
            logger.info("Redis transport disconnected")

    async def publish(self, message: dict[str, Any]) -> None:
        """Publish a message on the channel.

        Raises:
            RuntimeError: If the transport is not started.
        """
        if self._publisher is None:
            raise RuntimeError("Redis transport not started")
        payload = message.to_dict() if hasattr(message, "to_dict") else message
        await self._publisher.publish(self.config.channel, json.dumps(payload, default=str))

    async def _connect(self) -> None:
        """Open clients with bounded exponential backoff."""
        if self._redis is None:
            raise TransportUnavailableError("Redis client library not loaded")

        last_error: Exception | None = None
        for attempt in range(self._max_attempts):
            if attempt:
                delay = calculate_backoff(attempt - 1, self._base_delay, self._max_delay)
                logger.info("Redis reconnect attempt %d in %.2fs", attempt + 1, delay)
                await asyncio.sleep(delay)

            try:
                self._subscriber = self._redis.Redis(**_client_kwargs(self.config))
                self._publisher = self._redis.Redis(**_client_kwargs(self.config))
                await self._publisher.ping()
                self._pubsub = self._subscriber.pubsub(ignore_subscribe_messages=True)
                await self._pubsub.subscribe(self.config.channel)
            except asyncio.CancelledError:
                await self._close_clients()
                raise
            except Exception as e:
                last_error = e
                self._last_error = str(e)
                logger.debug("Redis connect attempt %d failed: %s", attempt + 1, e)
                await self._close_clients()
                continue

            self._last_error = None
            return

        raise TransportUnavailableError(
            f"Redis at {self.config.host}:{self.config.port} unreachable "
            f"after {self._max_attempts} attempts: {last_error}"
        )

    async def _listen(self) -> None:
        """Deliver channel messages, reconnecting if the subscription drops."""
        while self._running:
            try:
                async for message in self._pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    self._deliver(message.get("data"))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._last_error = str(e)
                logger.warning("Redis subscription lost: %s", e)

            if not self._running:
                break

            await self._close_clients()
            try:
                await self._connect()
            except TransportUnavailableError as e:
                self._last_error = str(e)
                self._running = False
                logger.error("Redis transport giving up: %s", e)
                return
            logger.info("Redis subscription restored")

    def _deliver(self, data: Any) -> None:
        try:
            message = decode_message(data)
        except MalformedMessageError as e:
            logger.warning("Dropping malformed Redis message: %s", e)
            return
        self._handlers.dispatch(message)

    async def _close_clients(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        subscriber, self._subscriber = self._subscriber, None
        publisher, self._publisher = self._publisher, None

        if pubsub is not None:
            try:
                await pubsub.unsubscribe(self.config.channel)
                await pubsub.aclose()
            except Exception as e:
                logger.debug("Error closing Redis subscription: %s", e)
        for client in (subscriber, publisher):
            if client is None:
                continue
            try:
                await client.aclose()
            except Exception as e:
                logger.debug("Error closing Redis client: %s", e)

    def __repr__(self) -> str:
        return (
            f"RedisTransport({self.config.host}:{self.config.port}, "
            f"channel={self.config.channel!r}, running={self._running})"
        )


async def publish_event_to_redis(config: RedisConfig, event: dict[str, Any] | Any) -> None:
    """Publish one event without subscribing: connect, publish, disconnect.

    Raises:
        TransportUnavailableError: If the redis package is not installed.
    """
    redis_asyncio = _load_redis_module()
    payload = event.to_dict() if hasattr(event, "to_dict") else event

    client = redis_asyncio.Redis(**_client_kwargs(config))
    try:
        await client.publish(config.channel, json.dumps(payload, default=str))
    finally:
        await client.aclose()
