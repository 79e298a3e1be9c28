import asyncio
import inspect
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union
from uuid import uuid4

from app.core.logger import get_logger
from app.schemas.events import ChannelEvent, EventKind

logger = get_logger("channel")

Handler = Callable[[ChannelEvent], Union[None, Awaitable[None]]]


class SubscriptionState(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


class Subscription:
    """
    Cancellable handle for one subscriber on one topic.

    Events are queued by the transport and handed to the callbacks from this
    subscription's own task, in the order they were queued. Publishing never
    waits on a subscriber.
    """

    def __init__(self, topic: str, handlers: Dict[EventKind, Handler], on_close=None):
        self.id = uuid4().hex
        self.topic = topic
        self.state = SubscriptionState.CONNECTED
        self._handlers = handlers
        self._on_close = on_close
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run(), name=f"subscription:{topic}:{self.id[:8]}")

    @property
    def closed(self) -> bool:
        return self.state is SubscriptionState.CLOSED

    def deliver(self, event: ChannelEvent) -> None:
        if self.closed:
            return
        if event.kind is EventKind.DISCONNECTED:
            self.state = SubscriptionState.DISCONNECTED
        elif event.kind is EventKind.RESYNC:
            self.state = SubscriptionState.CONNECTED
        elif event.kind is EventKind.FAILED:
            self.state = SubscriptionState.FAILED
        self._queue.put_nowait(event)

    async def _run(self):
        while not self.closed:
            event = await self._queue.get()
            try:
                if self.closed:
                    break
                handler = self._handlers.get(event.kind)
                if handler is None:
                    continue
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                # One broken callback must not stop delivery of later events
                logger.exception(f"Subscriber callback failed on {self.topic} ({event.kind.value})")
            finally:
                self._queue.task_done()

    async def drain(self):
        """Wait until every queued event has been handed to its callback."""
        await self._queue.join()

    async def cancel(self):
        if self.closed:
            return
        self.state = SubscriptionState.CLOSED
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        if self._on_close is not None:
            await self._on_close(self)
        if self._worker is not asyncio.current_task():
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
        logger.debug(f"Subscription {self.id} on {self.topic} closed")


class TopicRegistry:
    """Subscriptions per topic, reference counted so topics are opened once and closed with the last subscriber."""

    def __init__(self):
        self._topics: Dict[str, Set[Subscription]] = {}

    def add(self, subscription: Subscription) -> bool:
        """Register; returns True when this is the topic's first subscriber."""
        subscribers = self._topics.get(subscription.topic)
        first = subscribers is None
        if first:
            subscribers = self._topics[subscription.topic] = set()
        subscribers.add(subscription)
        return first

    def remove(self, subscription: Subscription) -> bool:
        """Unregister; returns True when the topic has no subscribers left."""
        subscribers = self._topics.get(subscription.topic)
        if not subscribers or subscription not in subscribers:
            return False
        subscribers.remove(subscription)
        if not subscribers:
            del self._topics[subscription.topic]
            return True
        return False

    def subscribers(self, topic: str) -> List[Subscription]:
        return list(self._topics.get(topic, ()))

    def count(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))

    def topics(self) -> List[str]:
        return list(self._topics)

    def all(self) -> List[Subscription]:
        return [s for subscribers in self._topics.values() for s in subscribers]

    def __contains__(self, topic: str) -> bool:
        return topic in self._topics
