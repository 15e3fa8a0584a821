"""
In-process change feed.

Routers publish the snapshots of a committed Result; WebSocket connections
subscribe to topics:

    ("incident", tenant_id, incident_id)      incident + tactical changes
    ("requests", tenant_id, user_id)          command requests to/from a user

Each subscription keeps only the latest snapshot per record, so a slow
consumer sees the current state rather than a backlog of intermediate
versions. Delivery is at-least-once within the process; consumers must be
idempotent.
"""

import asyncio
import logging
import threading
from collections import OrderedDict, defaultdict
from typing import Dict, Iterable, Set

logger = logging.getLogger(__name__)


def _record_key(snapshot) -> tuple:
    return (snapshot.kind, getattr(snapshot, "id", None) or getattr(snapshot, "record_id", None))


class FeedSubscription:
    """Async iterator of snapshots for a fixed set of topics."""

    def __init__(self, feed: "ChangeFeed", topics: tuple, loop: asyncio.AbstractEventLoop):
        self.topics = topics
        self._feed = feed
        self._loop = loop
        self._latest: "OrderedDict[tuple, object]" = OrderedDict()
        self._ready = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, snapshot):
        """Thread-safe: may be called from any thread."""
        if self._closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._offer, snapshot)
        except RuntimeError:
            # Event loop already closed; nobody is listening any more
            logger.warning(f"Dropping {snapshot.kind} snapshot for closed subscription {self.topics}")
            self._closed = True

    def _offer(self, snapshot):
        if self._closed:
            return
        key = _record_key(snapshot)
        self._latest.pop(key, None)
        self._latest[key] = snapshot
        self._ready.set()

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._feed._unsubscribe(self)
        if not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._ready.set)

    def __aiter__(self):
        return self

    async def __anext__(self):
        while not self._latest:
            if self._closed:
                raise StopAsyncIteration
            self._ready.clear()
            await self._ready.wait()
        if self._closed:
            raise StopAsyncIteration
        _, snapshot = self._latest.popitem(last=False)
        return snapshot


class ChangeFeed:
    def __init__(self):
        self._subscribers: Dict[tuple, Set[FeedSubscription]] = defaultdict(set)
        self._lock = threading.Lock()

    def subscribe(self, *topics: tuple) -> FeedSubscription:
        """Must be called from the event loop that will consume the subscription."""
        subscription = FeedSubscription(self, topics, asyncio.get_running_loop())
        with self._lock:
            for topic in topics:
                self._subscribers[topic].add(subscription)
        return subscription

    def _unsubscribe(self, subscription: FeedSubscription):
        with self._lock:
            for topic in subscription.topics:
                subscribers = self._subscribers.get(topic)
                if subscribers is None:
                    continue
                subscribers.discard(subscription)
                if not subscribers:
                    del self._subscribers[topic]

    def publish(self, snapshot):
        with self._lock:
            targets = set()
            for topic in snapshot.topics():
                targets.update(self._subscribers.get(topic, ()))
        for subscription in targets:
            subscription.deliver(snapshot)

    def publish_all(self, snapshots: Iterable):
        for snapshot in snapshots:
            self.publish(snapshot)

    def subscriber_count(self) -> int:
        with self._lock:
            return len({s for subs in self._subscribers.values() for s in subs})

    def close_all(self):
        with self._lock:
            subscriptions = {s for subs in self._subscribers.values() for s in subs}
        for subscription in subscriptions:
            subscription.close()
