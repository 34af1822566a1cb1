"""
Async pub/sub message bus.

Topic-based routing with wildcard support. Delivery is concurrent and each
handler is isolated: a failing handler is logged and counted, never
propagated to the publisher.
"""

from collections import defaultdict
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import anyio
import structlog
from ulid import ULID

from arbiter.bus.message import Message
from arbiter.bus.topics import Topic

logger = structlog.get_logger()

MessageHandler = Callable[[Message], Coroutine[Any, Any, None]]


@dataclass
class Subscription:
    """A subscription to a topic pattern."""

    id: str
    pattern: str
    handler: MessageHandler
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def matches(self, topic: str) -> bool:
        return Topic(topic).matches(self.pattern)


@dataclass
class MessageBusStats:
    total_messages_published: int = 0
    total_messages_delivered: int = 0
    total_subscriptions: int = 0
    total_errors: int = 0


class MessageBus:
    """
    Async pub/sub message bus with topic-based routing.

    - Hierarchical topics with dot-separated segments
    - Wildcard subscriptions (* for one segment, # for many)
    - Concurrent delivery bounded by ``max_concurrent_handlers``
    """

    def __init__(self, max_concurrent_handlers: int = 100) -> None:
        self._subscriptions: dict[str, list[Subscription]] = defaultdict(list)
        self._subscriptions_by_id: dict[str, Subscription] = {}
        self._stats = MessageBusStats()
        self._limiter = anyio.CapacityLimiter(max_concurrent_handlers)
        self._log = logger.bind(component="message_bus")

    @property
    def stats(self) -> MessageBusStats:
        return self._stats

    def subscribe(self, pattern: str | Topic, handler: MessageHandler) -> str:
        """Subscribe a handler to a topic pattern. Returns the subscription id."""
        pattern_str = str(pattern)
        subscription = Subscription(id=str(ULID()), pattern=pattern_str, handler=handler)

        self._subscriptions[pattern_str].append(subscription)
        self._subscriptions_by_id[subscription.id] = subscription
        self._stats.total_subscriptions += 1

        self._log.debug("subscribed", pattern=pattern_str, subscription_id=subscription.id)
        return subscription.id

    def unsubscribe(self, subscription_id: str) -> bool:
        subscription = self._subscriptions_by_id.pop(subscription_id, None)
        if subscription is None:
            return False
        remaining = [s for s in self._subscriptions[subscription.pattern] if s.id != subscription_id]
        if remaining:
            self._subscriptions[subscription.pattern] = remaining
        else:
            del self._subscriptions[subscription.pattern]
        self._stats.total_subscriptions -= 1
        self._log.debug("unsubscribed", subscription_id=subscription_id)
        return True

    async def publish(self, message: Message) -> int:
        """
        Publish a message to all matching subscribers.

        Returns:
            Number of handlers that completed without error
        """
        self._stats.total_messages_published += 1
        topic = Topic(message.topic)

        matching = [
            sub
            for pattern, subs in self._subscriptions.items()
            if topic.matches(pattern)
            for sub in subs
        ]
        if not matching:
            self._log.debug("no_subscribers", topic=message.topic)
            return 0

        results: list[bool] = []

        async def deliver(sub: Subscription) -> None:
            async with self._limiter:
                try:
                    await sub.handler(message)
                    results.append(True)
                except Exception:
                    self._stats.total_errors += 1
                    self._log.exception(
                        "handler_failed",
                        topic=message.topic,
                        subscription_id=sub.id,
                    )
                    results.append(False)

        async with anyio.create_task_group() as tg:
            for sub in matching:
                tg.start_soon(deliver, sub)

        delivered = sum(1 for r in results if r)
        self._stats.total_messages_delivered += delivered
        self._log.debug(
            "published",
            topic=message.topic,
            message_id=message.id,
            delivered=delivered,
            total_handlers=len(matching),
        )
        return delivered

    def get_subscriptions(self, pattern: str | None = None) -> list[Subscription]:
        if pattern is None:
            return list(self._subscriptions_by_id.values())
        return list(self._subscriptions.get(pattern, []))

    def clear(self) -> None:
        count = len(self._subscriptions_by_id)
        self._subscriptions.clear()
        self._subscriptions_by_id.clear()
        self._stats.total_subscriptions = 0
        self._log.info("cleared", removed_subscriptions=count)
