"""In-process pub/sub used for the change feed and the peer channel.

Each subscriber owns an ``asyncio.Queue``; publishing never blocks and
delivery is best-effort to whoever is subscribed at publish time.
"""

import asyncio
from typing import Any, Dict, List, Optional

from ..utils.logging import get_logger

logger = get_logger(__name__)

_CLOSED = object()


class Subscription:
    """Handle for one subscriber on one topic.

    Iterate with ``async for`` to receive messages.  Iteration stops once
    the subscription is closed, either by its owner (:meth:`close`) or by
    the feed dropping the channel (``dropped`` is then True).
    """

    def __init__(self, feed: "ChangeFeed", topic: str) -> None:
        self.feed = feed
        self.topic = topic
        self.closed = False
        self.dropped = False
        self._queue: asyncio.Queue = asyncio.Queue()

    def deliver(self, message: Any) -> None:
        if not self.closed:
            self._queue.put_nowait(message)

    def close(self) -> None:
        """Unsubscribe. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        self.feed._remove(self)
        self._queue.put_nowait(_CLOSED)

    def drop(self) -> None:
        """Close from the feed side, as a lost connection would."""
        if self.closed:
            return
        self.dropped = True
        self.close()

    async def get(self, timeout: Optional[float] = None) -> Any:
        """Wait for the next message; returns None once closed or on timeout."""
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            return None
        return item

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Any:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def __repr__(self) -> str:
        state = "dropped" if self.dropped else "closed" if self.closed else "open"
        return f"<Subscription {self.feed.name}:{self.topic} {state}>"


class ChangeFeed:
    """Topic-keyed fan-out of messages to live subscriptions."""

    def __init__(self, name: str = "changes") -> None:
        self.name = name
        self._subscribers: Dict[str, List[Subscription]] = {}

    def subscribe(self, topic: str) -> Subscription:
        sub = Subscription(self, topic)
        self._subscribers.setdefault(topic, []).append(sub)
        logger.debug(f"Subscribed to {self.name}:{topic} ({len(self._subscribers[topic])} live)")
        return sub

    def publish(self, topic: str, message: Any) -> int:
        """Deliver ``message`` to every subscriber of ``topic``."""
        subs = list(self._subscribers.get(topic, []))
        for sub in subs:
            sub.deliver(message)
        return len(subs)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))

    def drop(self, topic: Optional[str] = None) -> int:
        """Drop every subscription (optionally only on ``topic``)."""
        topics = [topic] if topic is not None else list(self._subscribers)
        dropped = 0
        for t in topics:
            for sub in list(self._subscribers.get(t, [])):
                sub.drop()
                dropped += 1
        if dropped:
            logger.warning(f"Dropped {dropped} subscription(s) on {self.name}")
        return dropped

    def _remove(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.topic)
        if not subs:
            return
        if sub in subs:
            subs.remove(sub)
        if not subs:
            del self._subscribers[sub.topic]
