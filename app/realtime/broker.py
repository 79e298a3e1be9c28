"""
Transports for the consultation channel.

A broker owns the topic registry for this process and delivers published
ChannelEvents to the local subscriptions of a topic. ``InMemoryBroker`` fans
out inside the process; ``RedisBroker`` goes through Redis pub/sub so that
several API workers share the same topics.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Optional, Set

from pydantic import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from app.core.config import settings
from app.core.exceptions import ChannelUnavailable
from app.core.logger import get_logger
from app.core.redis import RedisClient
from app.realtime.subscription import Subscription, TopicRegistry
from app.schemas.events import ChannelEvent, EventKind

logger = get_logger("broker")


class Broker(ABC):
    def __init__(self):
        self.registry = TopicRegistry()
        self._lock = asyncio.Lock()

    async def attach(self, subscription: Subscription):
        async with self._lock:
            first = self.registry.add(subscription)
            if first:
                try:
                    await self._open_topic(subscription.topic)
                except Exception:
                    self.registry.remove(subscription)
                    raise
                logger.info(f"Opened topic {subscription.topic}")

    async def detach(self, subscription: Subscription):
        async with self._lock:
            if self.registry.remove(subscription):
                await self._close_topic(subscription.topic)
                logger.info(f"Closed topic {subscription.topic}")

    def dispatch(self, event: ChannelEvent):
        for subscription in self.registry.subscribers(event.topic):
            subscription.deliver(event)

    def broadcast_control(self, topic: str, kind: EventKind):
        self.dispatch(ChannelEvent(topic=topic, kind=kind))

    @abstractmethod
    async def publish(self, event: ChannelEvent): ...

    async def _open_topic(self, topic: str):
        pass

    async def _close_topic(self, topic: str):
        pass

    async def close(self):
        for subscription in self.registry.all():
            await subscription.cancel()


class InMemoryBroker(Broker):
    """Single-process transport. ``drop``/``restore`` simulate losing the transport for a topic."""

    def __init__(self):
        super().__init__()
        self._dropped: Set[str] = set()

    async def publish(self, event: ChannelEvent):
        if event.topic in self._dropped:
            logger.debug(f"Topic {event.topic} is down, {event.kind.value} event lost")
            return
        self.dispatch(event)

    def drop(self, topic: str):
        if topic in self._dropped:
            return
        self._dropped.add(topic)
        self.broadcast_control(topic, EventKind.DISCONNECTED)

    def restore(self, topic: str):
        if topic not in self._dropped:
            return
        self._dropped.discard(topic)
        self.broadcast_control(topic, EventKind.RESYNC)

    def fail(self, topic: str):
        self._dropped.add(topic)
        self.broadcast_control(topic, EventKind.FAILED)


class RedisBroker(Broker):
    """
    Redis pub/sub transport: one listener task (and one PubSub connection)
    per topic with local subscribers.

    When the connection drops, subscribers are told they are disconnected
    and the listener retries with a linear backoff. A successful reconnect
    sends a resync event to every subscriber; running out of attempts sends
    a failure event and stops the listener.
    """

    def __init__(self, client: Optional[RedisClient] = None, reconnect_attempts: Optional[int] = None,
                 backoff_seconds: Optional[float] = None):
        super().__init__()
        self.client = client or RedisClient()
        self.reconnect_attempts = reconnect_attempts if reconnect_attempts is not None else settings.CHANNEL_RECONNECT_ATTEMPTS
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.CHANNEL_RECONNECT_BACKOFF_SECONDS
        self._listeners: Dict[str, asyncio.Task] = {}

    async def publish(self, event: ChannelEvent):
        try:
            await self.client.publish(event.topic, event.model_dump_json())
        except (RedisConnectionError, RedisTimeoutError) as e:
            # The row is already committed; subscribers recover it on resync
            logger.warning(f"Failed to publish {event.kind.value} on {event.topic}: {e}")

    async def _subscribe(self, topic: str):
        pubsub = self.client.pubsub()
        try:
            await pubsub.subscribe(self.client.channel_key(topic))
        except (RedisConnectionError, RedisTimeoutError):
            await self._release(pubsub)
            raise
        return pubsub

    async def _open_topic(self, topic: str):
        try:
            pubsub = await self._subscribe(topic)
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise ChannelUnavailable(f"Live updates unavailable for {topic}") from e
        self._listeners[topic] = asyncio.create_task(self._listen(topic, pubsub), name=f"redis-listener:{topic}")

    async def _close_topic(self, topic: str):
        task = self._listeners.pop(topic, None)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _listen(self, topic: str, pubsub):
        failures = 0
        while True:
            try:
                if pubsub is None:
                    pubsub = await self._subscribe(topic)
                    logger.info(f"Topic {topic} reconnected after {failures} attempt(s)")
                    failures = 0
                    self.broadcast_control(topic, EventKind.RESYNC)
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    try:
                        event = ChannelEvent.model_validate_json(message["data"])
                    except ValidationError:
                        logger.warning(f"Dropping malformed event on {topic}")
                        continue
                    self.dispatch(event)
                return
            except (RedisConnectionError, RedisTimeoutError) as e:
                failures += 1
                logger.warning(f"Topic {topic} lost its connection ({failures}/{self.reconnect_attempts}): {e}")
                if failures == 1:
                    self.broadcast_control(topic, EventKind.DISCONNECTED)
                if failures > self.reconnect_attempts:
                    logger.error(f"Giving up on topic {topic}")
                    self.broadcast_control(topic, EventKind.FAILED)
                    return
                await asyncio.sleep(self.backoff_seconds * failures)
            finally:
                if pubsub is not None:
                    await self._release(pubsub)
                    pubsub = None

    async def _release(self, pubsub):
        try:
            await pubsub.aclose()
        except RedisError as e:
            logger.debug(f"Ignoring error while closing pubsub: {e}")

    async def close(self):
        await super().close()
        for topic in list(self._listeners):
            await self._close_topic(topic)
        await self.client.close()


_broker: Optional[Broker] = None


def get_broker() -> Broker:
    global _broker
    if _broker is None:
        if settings.CHANNEL_BACKEND == "redis":
            _broker = RedisBroker()
        elif settings.CHANNEL_BACKEND == "memory":
            _broker = InMemoryBroker()
        else:
            raise ValueError(f"Unknown CHANNEL_BACKEND {settings.CHANNEL_BACKEND!r}")
        logger.info(f"Channel backend: {settings.CHANNEL_BACKEND}")
    return _broker


async def shutdown_broker():
    global _broker
    if _broker is not None:
        await _broker.close()
        _broker = None
