"""Publish/subscribe fan-out with bounded, non-blocking delivery

Each subscriber owns a bounded queue. Publishing never waits: when a
subscriber's queue is full the message is dropped for that subscriber
only, so a slow consumer sees gaps and never stalls the producer or
the other subscribers.
"""

import threading
import time
from collections import deque
from typing import Deque, Dict, Generic, Iterator, List, Optional, TypeVar

from .logging_setup import get_logger

T = TypeVar('T')

DEFAULT_CAPACITY = 10


class Subscription(Generic[T]):
    """Bounded queue handed to one consumer."""

    def __init__(self, subscription_id: str, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.id = subscription_id
        self.capacity = capacity
        self.dropped = 0
        self._items: Deque[T] = deque()
        self._closed = False
        self._cond = threading.Condition()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def offer(self, item: T) -> bool:
        """Enqueue without blocking. False if the queue is full or closed."""
        with self._cond:
            if self._closed:
                return False
            if len(self._items) >= self.capacity:
                self.dropped += 1
                return False
            self._items.append(item)
            self._cond.notify()
            return True

    def get(self, timeout: Optional[float] = None) -> Optional[T]:
        """Next item, or None on timeout or once closed and drained."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._items:
                if self._closed:
                    return None
                if deadline is None:
                    self._cond.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    self._cond.wait(remaining)
            return self._items.popleft()

    def close(self):
        """Stop accepting items and wake blocked consumers. Idempotent."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __iter__(self) -> Iterator[T]:
        while True:
            item = self.get()
            if item is None:
                return
            yield item


class SubscriptionHub(Generic[T]):
    """Registry of subscriptions keyed by id."""

    def __init__(self, name: str = "hub", capacity: int = DEFAULT_CAPACITY):
        self.name = name
        self.capacity = capacity
        self.log = get_logger()
        self._subscriptions: Dict[str, Subscription[T]] = {}
        self._lock = threading.Lock()
        self.messages_delivered = 0
        self.messages_dropped = 0

    def subscribe(self, subscription_id: str, capacity: Optional[int] = None) -> Subscription[T]:
        """Register a new queue. An existing subscription with the same id is replaced and closed."""
        subscription = Subscription(subscription_id, capacity or self.capacity)
        with self._lock:
            previous = self._subscriptions.get(subscription_id)
            self._subscriptions[subscription_id] = subscription
        if previous is not None:
            previous.close()
            self.log.debug(f"{self.name}: subscription '{subscription_id}' replaced")
        else:
            self.log.debug(f"{self.name}: subscription '{subscription_id}' added")
        return subscription

    def unsubscribe(self, subscription_id: str):
        """Close and remove a subscription. Unknown ids are ignored."""
        with self._lock:
            subscription = self._subscriptions.pop(subscription_id, None)
        if subscription is not None:
            subscription.close()
            self.log.debug(f"{self.name}: subscription '{subscription_id}' removed")

    def broadcast(self, item: T) -> int:
        """Offer an item to every subscriber without blocking.

        Returns:
            Number of subscribers that accepted the item
        """
        with self._lock:
            subscriptions = list(self._subscriptions.values())

        delivered = 0
        for subscription in subscriptions:
            if subscription.offer(item):
                delivered += 1
            else:
                self.log.debug(f"{self.name}: queue of '{subscription.id}' full, message dropped")

        with self._lock:
            self.messages_delivered += delivered
            self.messages_dropped += len(subscriptions) - delivered
        return delivered

    def subscriber_ids(self) -> List[str]:
        with self._lock:
            return list(self._subscriptions)

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def __contains__(self, subscription_id: str) -> bool:
        with self._lock:
            return subscription_id in self._subscriptions

    def close(self):
        """Close every subscription and empty the registry."""
        with self._lock:
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.close()
