"""
larder/realtime/hub.py
In-memory pubsub hub for one household session.

Components never reach into each other's state; they publish events on named
topics and the hub fans them out to every subscribed coroutine.
Subscribers that raise are pruned.
"""

from typing import Any, Awaitable, Callable, Dict, Set
import asyncio
import logging

logger = logging.getLogger(__name__)

ROSTER_UPDATED = "roster.updated"
ROSTER_REFRESH_REQUESTED = "roster.refresh_requested"
ENTITLEMENT_CHANGED = "entitlement.changed"
HOUSEHOLD_SELECTION_REQUIRED = "household.selection_required"
NOTIFICATION_CREATED = "notification.created"

Subscriber = Callable[[str, Dict[str, Any]], Awaitable[None]]


class SessionHub:
    """
    In-memory topic -> subscribers broadcast hub.

    Maps topic -> Set[Subscriber], allows safe concurrent access.
    """

    def __init__(self):
        self._topics: Dict[str, Set[Subscriber]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, topic: str, subscriber: Subscriber) -> None:
        """
        Register a coroutine for a topic.

        Args:
            topic: Event topic name
            subscriber: ``async def fn(topic, payload)``
        """
        async with self._lock:
            self._topics.setdefault(topic, set()).add(subscriber)
            logger.debug(f"[HUB] Subscribed to {topic}. Total: {len(self._topics[topic])}")

    async def unsubscribe(self, topic: str, subscriber: Subscriber) -> None:
        async with self._lock:
            if topic in self._topics:
                self._topics[topic].discard(subscriber)
                if not self._topics[topic]:
                    del self._topics[topic]
                    logger.debug(f"[HUB] Cleaned up empty topic {topic}")

    async def publish(self, topic: str, payload: Dict[str, Any]) -> int:
        """
        Deliver payload to every subscriber of the topic.

        Subscribers run in registration-independent order, one after another.
        A subscriber that raises is logged and removed.

        Returns:
            Number of subscribers that received the event
        """
        async with self._lock:
            if not self._topics.get(topic):
                return 0
            subscribers = self._topics[topic].copy()

        delivered = 0
        failed = []
        for subscriber in subscribers:
            try:
                await subscriber(topic, payload)
                delivered += 1
            except Exception as e:
                logger.warning(f"[HUB] Subscriber failed on {topic}: {e}", exc_info=True)
                failed.append(subscriber)

        if failed:
            async with self._lock:
                for subscriber in failed:
                    self._topics.get(topic, set()).discard(subscriber)
                logger.debug(f"[HUB] Pruned {len(failed)} failing subscribers from {topic}")
        return delivered

    async def subscriber_count(self, topic: str) -> int:
        async with self._lock:
            return len(self._topics.get(topic, set()))

    async def clear(self) -> None:
        async with self._lock:
            self._topics.clear()
