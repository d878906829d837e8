"""Redis pub/sub transport used to fan out events between server instances."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError

from app.monitoring.metrics import realtime_transport_restarts_total

logger = logging.getLogger(__name__)

_PUBLISH_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

_RECOVERY_BASE_DELAY = 0.5
_RECOVERY_MAX_DELAY = 30.0

# Single topic carrying every cross-node delivery envelope.
EVENTS_TOPIC = "events"

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass(slots=True)
class BrokerConfig:
    redis_url: str
    prefix: str = "aether.realtime"
    node_id: str | None = None


class TransportUnavailableError(RuntimeError):
    """Raised when the broker cannot be reached."""


class RedisTransport:
    """Publish JSON payloads to prefixed Redis channels and relay what arrives.

    One reader task per subscribed topic. If a reader dies the transport
    reconnects with exponential backoff and re-attaches every subscription.
    """

    def __init__(self, config: BrokerConfig) -> None:
        self._config = config
        self._redis: Any | None = None
        self._handlers: dict[str, MessageHandler] = {}
        self._readers: dict[str, asyncio.Task[Any]] = {}
        self._recovery_task: asyncio.Task[Any] | None = None
        self._closing = False

    @property
    def node_id(self) -> str | None:
        return self._config.node_id

    def _channel(self, topic: str) -> str:
        prefix = self._config.prefix.rstrip(".")
        return f"{prefix}.{topic}" if prefix else topic

    async def start(self) -> None:
        self._closing = False
        if self._redis is not None:
            return
        client = redis_asyncio.from_url(
            self._config.redis_url, encoding="utf-8", decode_responses=True
        )
        try:
            await client.ping()
        except (*_PUBLISH_ERRORS, OSError) as exc:
            with contextlib.suppress(Exception):
                await client.aclose()
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        self._redis = client

    async def stop(self) -> None:
        self._closing = True
        if self._recovery_task is not None:
            self._recovery_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._recovery_task
            self._recovery_task = None
        for topic in list(self._readers):
            await self._stop_reader(topic)
        self._handlers.clear()
        if self._redis is not None:
            with contextlib.suppress(Exception):
                await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not connected")
        channel = self._channel(topic)
        try:
            await self._redis.publish(channel, json.dumps(payload))
        except _PUBLISH_ERRORS as exc:
            self._schedule_recovery("publish_failed")
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        logger.debug("Published realtime payload", extra={"channel": channel})

    async def subscribe(self, topic: str, handler: MessageHandler) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not connected")
        self._handlers[topic] = handler
        await self._attach_reader(topic)

    async def _attach_reader(self, topic: str) -> None:
        channel = self._channel(topic)
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(channel)
        except _PUBLISH_ERRORS as exc:
            with contextlib.suppress(Exception):
                await pubsub.aclose()
            raise TransportUnavailableError("Redis backend is unavailable") from exc

        async def reader() -> None:
            try:
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    try:
                        payload = json.loads(message.get("data"))
                    except (TypeError, json.JSONDecodeError):
                        logger.warning("Discarded malformed realtime payload", extra={"channel": channel})
                        continue
                    handler = self._handlers.get(topic)
                    if handler is None:
                        continue
                    try:
                        await handler(payload)
                    except Exception:
                        logger.exception("Realtime handler failed", extra={"channel": channel})
            finally:
                with contextlib.suppress(Exception):
                    await pubsub.unsubscribe(channel)
                with contextlib.suppress(Exception):
                    await pubsub.aclose()

        task = asyncio.create_task(reader(), name=f"realtime-redis-{channel}")
        task.add_done_callback(lambda finished: self._on_reader_done(topic, finished))
        self._readers[topic] = task

    async def _stop_reader(self, topic: str) -> None:
        task = self._readers.pop(topic, None)
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _on_reader_done(self, topic: str, task: asyncio.Task[Any]) -> None:
        if self._readers.get(topic) is task:
            self._readers.pop(topic, None)
        if self._closing or task.cancelled():
            return
        exc = task.exception()
        logger.warning(
            "Redis subscription reader stopped; scheduling recovery",
            exc_info=exc,
            extra={"topic": topic},
        )
        self._schedule_recovery("reader_stopped")

    def _schedule_recovery(self, reason: str) -> None:
        if self._closing:
            return
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        logger.info("Scheduling Redis realtime recovery", extra={"reason": reason})
        realtime_transport_restarts_total.labels(reason).inc()
        self._recovery_task = asyncio.create_task(
            self._recover(reason), name="realtime-redis-recovery"
        )

    async def _recover(self, reason: str) -> None:
        attempt = 0
        while not self._closing:
            await asyncio.sleep(min(_RECOVERY_BASE_DELAY * (2**attempt), _RECOVERY_MAX_DELAY))
            try:
                for topic in list(self._readers):
                    await self._stop_reader(topic)
                if self._redis is not None:
                    with contextlib.suppress(Exception):
                        await self._redis.aclose()
                    self._redis = None
                await self.start()
                for topic in list(self._handlers):
                    await self._attach_reader(topic)
            except TransportUnavailableError:
                attempt += 1
                logger.warning(
                    "Redis realtime recovery attempt failed",
                    extra={"attempt": attempt, "reason": reason},
                )
                continue
            logger.info("Redis realtime backend recovered", extra={"reason": reason})
            break
