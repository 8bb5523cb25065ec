"""
In-process publish/subscribe bus for configuration notifications.

Delivery happens in-line during ``publish``: handlers run in subscription
order, sync or async, and a failing handler is logged without stopping
delivery to the rest.
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field

from .contracts import TOPIC_PAYLOADS, BasePayload, ConfigTopic, EventHandler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Subscription:
    """Handle for a topic subscription."""

    topic: str
    handler: EventHandler
    bus: EventBus | None = field(default=None, compare=False, repr=False)

    def cancel(self) -> None:
        if self.bus is not None:
            self.bus.unsubscribe(self)


class EventBus:
    """
    Minimal publish/subscribe bus with exact topic matching.

    Topics listed in ``ConfigTopic`` are typed: publishing the wrong payload
    class raises TypeError before any handler runs.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self._published_total = 0
        self._failed_total = 0

    def subscribe(self, topic: str, handler: EventHandler) -> Subscription:
        """Register a sync or async handler for a topic."""
        self._subscribers[str(topic)].append(handler)
        logger.debug("Subscribed handler %s to topic %s", handler, topic)
        return Subscription(topic=str(topic), handler=handler, bus=self)

    def unsubscribe(self, subscription: Subscription) -> None:
        """Detach a previously registered handler."""
        handlers = self._subscribers.get(subscription.topic, [])
        if subscription.handler in handlers:
            handlers.remove(subscription.handler)
            logger.debug(
                "Unsubscribed handler %s from topic %s", subscription.handler, subscription.topic
            )

    def clear(self) -> None:
        self._subscribers.clear()

    def subscriber_count(self, topic: str | None = None) -> int:
        if topic is not None:
            return len(self._subscribers.get(str(topic), []))
        return sum(len(handlers) for handlers in self._subscribers.values())

    @property
    def published_total(self) -> int:
        return self._published_total

    @property
    def failed_total(self) -> int:
        return self._failed_total

    async def publish(self, topic: str, payload: BasePayload) -> None:
        """Deliver ``payload`` to every handler of ``topic`` in registration order."""
        expected = TOPIC_PAYLOADS.get(ConfigTopic(topic)) if topic in _KNOWN_TOPICS else None
        if expected is not None and not isinstance(payload, expected):
            raise TypeError(
                f"Topic {topic} expects {expected.__name__}, got {type(payload).__name__}"
            )
        if not isinstance(payload, BasePayload):
            raise TypeError(f"Payload must be a BasePayload, got {type(payload).__name__}")

        self._published_total += 1
        handlers = list(self._subscribers.get(str(topic), []))
        logger.debug("Dispatching payload on topic %s to %d handlers", topic, len(handlers))
        for handler in handlers:
            await self._call_handler(handler, str(topic), payload)

    async def _call_handler(self, handler: EventHandler, topic: str, payload: BasePayload) -> None:
        """
        Invoke a handler that may be sync or async. If it returns an awaitable, await it;
        otherwise it has already run.
        """
        try:
            result = handler(topic, payload)
            if inspect.isawaitable(result):
                await result
        except Exception:
            self._failed_total += 1
            logger.exception("Subscriber handler %s failed on topic %s", handler, topic)


_KNOWN_TOPICS = frozenset(str(topic) for topic in ConfigTopic)


__all__ = ["EventBus", "Subscription"]
