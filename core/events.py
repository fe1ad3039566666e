"""Typed publish/subscribe channels used to decouple the tracker from its consumers.

Delivery is fire-and-forget: inside a running event loop callbacks are scheduled with
``call_soon`` so publishers never wait on subscribers; outside a loop they run inline.
"""

import asyncio
import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class Topic(str, Enum):
    PLACES_CHANGED = 'places-changed'
    LOCATION_UPDATED = 'location-updated'
    AUTHORIZATION_CHANGED = 'authorization-changed'
    SAMPLE_ERROR = 'sample-error'


@dataclass(frozen=True, slots=True)
class PlacesChanged:
    """Payload for Topic.PLACES_CHANGED"""

    reason: str
    place_ids: tuple[str, ...] = ()


@dataclass(eq=False)
class Subscription:
    bus: 'EventBus'
    topic: Topic
    callback: Callable[[Any], None]

    def unsubscribe(self) -> bool:
        return self.bus.unsubscribe(self)


class EventBus:
    """Per-topic subscriber registry"""

    def __init__(self):
        self._subscriptions: dict[Topic, list[Subscription]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, topic: Topic, callback: Callable[[Any], None]) -> Subscription:
        subscription = Subscription(self, topic, callback)
        with self._lock:
            self._subscriptions[topic].append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        with self._lock:
            subscriptions = self._subscriptions[subscription.topic]
            if subscription in subscriptions:
                subscriptions.remove(subscription)
                return True
        return False

    def subscriber_count(self, topic: Topic) -> int:
        with self._lock:
            return len(self._subscriptions[topic])

    def publish(self, topic: Topic, payload: Any = None) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions[topic])

        if not subscriptions:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        for subscription in subscriptions:
            if loop is not None:
                loop.call_soon(self._deliver, subscription, payload)
            else:
                self._deliver(subscription, payload)

    def _deliver(self, subscription: Subscription, payload: Any) -> None:
        try:
            subscription.callback(payload)
        except Exception as e:
            logger.error(f"Subscriber for {subscription.topic.value} failed: {e}")
