"""
Redis-backed pub/sub bus.

One connection publishes; one shared subscriber connection carries every
SUBSCRIBE/PSUBSCRIBE of this process. A Redis-level subscription is issued
when the first local handler for a topic (or pattern) appears and dropped
with the last one.
"""

import asyncio
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from cookmode.config.logging import get_logger
from cookmode.infra.pubsub.bus import PubSub, encode_event

logger = get_logger(__name__)


class RedisPubSub(PubSub):
    def __init__(
        self,
        publisher: Redis,
        subscriber: Redis | None = None,
        read_timeout: float = 1.0,
        owns_clients: bool = False,
    ):
        super().__init__()
        self.publisher = publisher
        self.subscriber = subscriber or publisher
        self.read_timeout = read_timeout
        self.owns_clients = owns_clients
        self._pubsub = self.subscriber.pubsub(ignore_subscribe_messages=True)
        self._reader: asyncio.Task | None = None

    async def publish(self, topic: str, event: Any) -> int:
        """
        PUBLISH to Redis; returns the server's receiver count.

        Redis counts subscribed connections, not handlers: every local
        handler of this process shares one connection and counts once.
        """
        return await self.publisher.publish(topic, encode_event(event))

    async def close(self) -> None:
        await super().close()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        await self._pubsub.aclose()
        if self.owns_clients:
            await self.publisher.aclose()
            if self.subscriber is not self.publisher:
                await self.subscriber.aclose()

    async def _on_first_subscriber(self, key: str, is_pattern: bool) -> None:
        if is_pattern:
            await self._pubsub.psubscribe(key)
        else:
            await self._pubsub.subscribe(key)

        if self._reader is None or self._reader.done():
            self._reader = asyncio.create_task(self._read(), name="redis-pubsub-reader")

    async def _on_last_unsubscribed(self, key: str, is_pattern: bool) -> None:
        if is_pattern:
            await self._pubsub.punsubscribe(key)
        else:
            await self._pubsub.unsubscribe(key)

    async def _read(self) -> None:
        while True:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self.read_timeout
                )
            except RedisError as e:
                logger.error("Redis subscriber connection failed", error=str(e))
                await asyncio.sleep(self.read_timeout)
                continue

            if message is None:
                continue

            channel = _text(message.get("channel"))
            if message["type"] == "message":
                self._dispatch(channel, message["data"])
            elif message["type"] == "pmessage":
                self._dispatch_pattern(
                    _text(message.get("pattern")), channel, message["data"]
                )


def _text(value: str | bytes | None) -> str:
    if isinstance(value, bytes):
        return value.decode()
    return value or ""
