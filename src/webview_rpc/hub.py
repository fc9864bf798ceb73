"""Event Hub - in-process pub/sub feeding streaming handlers.

Host-side code publishes UI events here (a button was clicked, text was
added to the input); streaming handlers turn hub streams into
subscription events.

Each hub is an instance owned by whoever builds the services; there is
no process-wide hub.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

logger = logging.getLogger(__name__)

# Callbacks are synchronous; they run inside publish()
EventCallback = Callable[[Any], None]

WILDCARD = "*"


class EventHub:
    """Topic-based pub/sub with wildcard subscription.

    Usage:
        hub = EventHub()
        hub.publish("chatButtonClicked", None)

        async for payload in hub.stream("chatButtonClicked"):
            ...
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[EventCallback]] = {}

    def publish(self, topic: str, payload: Any = None) -> int:
        """Publish a payload to every subscriber of a topic.

        Wildcard subscribers receive {"topic": ..., "payload": ...}.

        Returns:
            Number of callbacks notified
        """
        # Copies; callbacks may unsubscribe while we iterate
        specific = list(self._subscriptions.get(topic, []))
        wildcard = list(self._subscriptions.get(WILDCARD, []))

        for callback in specific:
            try:
                callback(payload)
            except Exception:
                logger.exception(f"Error in subscriber for {topic}")

        for callback in wildcard:
            try:
                callback({"topic": topic, "payload": payload})
            except Exception:
                logger.exception(f"Error in wildcard subscriber for {topic}")

        return len(specific) + len(wildcard)

    def subscribe(self, topic: str, callback: EventCallback) -> Callable[[], None]:
        """Subscribe to a topic ("*" for all topics).

        Returns:
            Unsubscribe function
        """
        self._subscriptions.setdefault(topic, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscriptions.get(topic)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._subscriptions[topic]

        return unsubscribe

    async def stream(self, topic: str) -> AsyncIterator[Any]:
        """Yield payloads published to a topic, until the consumer stops.

        The subscription is removed when the generator is closed or
        cancelled.
        """
        queue: asyncio.Queue[Any] = asyncio.Queue()
        unsubscribe = self.subscribe(topic, queue.put_nowait)
        try:
            while True:
                yield await queue.get()
        finally:
            unsubscribe()

    def subscriber_count(self, topic: str | None = None) -> int:
        """Number of callbacks registered for a topic (or overall)."""
        if topic is not None:
            return len(self._subscriptions.get(topic, []))
        return sum(len(callbacks) for callbacks in self._subscriptions.values())

    def reset(self) -> None:
        """Drop every subscription."""
        self._subscriptions = {}
