"""
Topic-based publish/subscribe.

Delivery is best-effort: events reach the subscribers registered at publish
time and are never stored. Every subscription owns an ordered queue drained
by its own task, so events arrive in publish order per topic and a slow
handler only delays itself.
"""

import asyncio
import inspect
import json
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Callable
from fnmatch import fnmatchcase
from typing import Any
from uuid import uuid4

from cookmode.config.logging import get_logger

logger = get_logger(__name__)

EventHandler = Callable[..., Any]


def encode_event(event: Any) -> str:
    """Serialize an event (mapping or wire model) to its JSON message form."""
    if hasattr(event, "to_message"):
        event = event.to_message()
    return json.dumps(event, default=str)


async def publish_best_effort(pubsub: "PubSub", topic: str, event: Any) -> int:
    """Publish without letting a bus outage fail the caller."""
    try:
        return await pubsub.publish(topic, event)
    except Exception:
        logger.exception("Failed to publish event", topic=topic)
        return 0


class Subscription:
    """
    Handle returned by subscribe/subscribe_pattern.

    Exact-topic handlers are called as handler(event); pattern handlers as
    handler(topic, event). Handlers may be coroutine functions.
    """

    def __init__(self, key: str, handler: EventHandler, is_pattern: bool = False):
        self.id = uuid4().hex
        self.key = key
        self.is_pattern = is_pattern
        self.active = True
        self._handler = handler
        self._queue: asyncio.Queue[tuple[str, str | bytes]] = asyncio.Queue()
        self._task = asyncio.create_task(self._run(), name=f"subscription:{key}")

    def deliver(self, topic: str, raw: str | bytes) -> None:
        if self.active:
            self._queue.put_nowait((topic, raw))

    async def drain(self) -> None:
        """Wait until every event delivered so far has been handled."""
        if self.active:
            await self._queue.join()

    async def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            topic, raw = await self._queue.get()
            try:
                await self._handle(topic, raw)
            finally:
                self._queue.task_done()

    async def _handle(self, topic: str, raw: str | bytes) -> None:
        try:
            event = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.error("Dropping malformed event", topic=topic, error=str(e))
            return
        if not isinstance(event, dict):
            logger.error("Dropping non-object event", topic=topic)
            return

        try:
            if self.is_pattern:
                outcome = self._handler(topic, event)
            else:
                outcome = self._handler(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("Subscriber handler failed", topic=topic, key=self.key)


class PubSub(ABC):
    """Publish/subscribe bus interface."""

    def __init__(self) -> None:
        self._topics: dict[str, list[Subscription]] = defaultdict(list)
        self._patterns: dict[str, list[Subscription]] = defaultdict(list)

    @abstractmethod
    async def publish(self, topic: str, event: Any) -> int:
        """
        Send event to current subscribers of topic; returns how many were reached.

        What counts as reached is backend-specific: the in-memory bus counts
        handlers, Redis counts subscribed connections.
        """

    async def subscribe(self, topic: str, handler: EventHandler) -> Subscription:
        subscription = Subscription(topic, handler)
        first = not self._topics[topic]
        self._topics[topic].append(subscription)
        if first:
            await self._on_first_subscriber(topic, is_pattern=False)
        return subscription

    async def subscribe_pattern(
        self, pattern: str, handler: EventHandler
    ) -> Subscription:
        subscription = Subscription(pattern, handler, is_pattern=True)
        first = not self._patterns[pattern]
        self._patterns[pattern].append(subscription)
        if first:
            await self._on_first_subscriber(pattern, is_pattern=True)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        """Stop a subscription. Calling it again is a no-op."""
        if not subscription.active:
            return
        await subscription.cancel()

        table = self._patterns if subscription.is_pattern else self._topics
        subscribers = table.get(subscription.key, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            table.pop(subscription.key, None)
            await self._on_last_unsubscribed(
                subscription.key, is_pattern=subscription.is_pattern
            )

    async def drain(self) -> None:
        """Wait for all subscriptions to handle what they have received."""
        await asyncio.gather(*(s.drain() for s in self._all_subscriptions()))

    async def close(self) -> None:
        for subscription in self._all_subscriptions():
            await subscription.cancel()
        self._topics.clear()
        self._patterns.clear()

    def _dispatch(self, topic: str, raw: str | bytes) -> int:
        delivered = 0
        for subscription in list(self._topics.get(topic, ())):
            subscription.deliver(topic, raw)
            delivered += 1
        return delivered

    def _dispatch_pattern(self, pattern: str, topic: str, raw: str | bytes) -> int:
        delivered = 0
        for subscription in list(self._patterns.get(pattern, ())):
            subscription.deliver(topic, raw)
            delivered += 1
        return delivered

    def _all_subscriptions(self) -> list[Subscription]:
        return [
            subscription
            for table in (self._topics, self._patterns)
            for subscribers in table.values()
            for subscription in subscribers
        ]

    async def _on_first_subscriber(self, key: str, is_pattern: bool) -> None:
        pass

    async def _on_last_unsubscribed(self, key: str, is_pattern: bool) -> None:
        pass


class InMemoryPubSub(PubSub):
    """Process-local bus used by single-process deployments and tests."""

    async def publish(self, topic: str, event: Any) -> int:
        raw = encode_event(event)
        delivered = self._dispatch(topic, raw)
        for pattern in list(self._patterns):
            if fnmatchcase(topic, pattern):
                delivered += self._dispatch_pattern(pattern, topic, raw)
        return delivered
