from typing import Any, Callable, Dict, Optional, Type
from uuid import UUID

from pydantic import BaseModel

from app.realtime.broker import Broker, get_broker
from app.realtime.subscription import Handler, Subscription
from app.schemas.consultation import SessionState
from app.schemas.events import ChannelEvent, EventKind
from app.schemas.message import MessageResponse


def messages_topic(consultation_id: UUID) -> str:
    return f"consultation:{consultation_id}:messages"


def presence_topic(consultation_id: UUID) -> str:
    return f"consultation:{consultation_id}:presence"


def _payload_handler(callback: Callable[[Any], Any], model: Type[BaseModel]) -> Handler:
    def handle(event: ChannelEvent):
        return callback(model.model_validate(event.payload))
    return handle


def _control_handler(callback: Callable[[], Any]) -> Handler:
    def handle(event: ChannelEvent):
        return callback()
    return handle


def _control_handlers(on_resync, on_failure, on_disconnect) -> Dict[EventKind, Handler]:
    handlers = {}
    if on_resync is not None:
        handlers[EventKind.RESYNC] = _control_handler(on_resync)
    if on_failure is not None:
        handlers[EventKind.FAILED] = _control_handler(on_failure)
    if on_disconnect is not None:
        handlers[EventKind.DISCONNECTED] = _control_handler(on_disconnect)
    return handlers


class MessageChannel:
    """
    Pub/sub front for one process: message events per consultation and
    presence (phase and join flags) per consultation, on separate topics.

    Callbacks may be plain functions or coroutine functions. ``on_resync``
    fires after the transport came back; the subscriber must re-fetch the
    full message list before trusting incremental events again.
    """

    def __init__(self, broker: Optional[Broker] = None):
        self.broker = broker or get_broker()

    async def subscribe(self, consultation_id: UUID, on_insert, on_update, on_resync=None, on_failure=None,
                        on_disconnect=None) -> Subscription:
        handlers = {
            EventKind.INSERT: _payload_handler(on_insert, MessageResponse),
            EventKind.UPDATE: _payload_handler(on_update, MessageResponse),
        }
        handlers.update(_control_handlers(on_resync, on_failure, on_disconnect))
        return await self._open(messages_topic(consultation_id), handlers)

    async def subscribe_presence(self, consultation_id: UUID, on_phase, on_resync=None, on_failure=None,
                                 on_disconnect=None) -> Subscription:
        handlers = {EventKind.PHASE: _payload_handler(on_phase, SessionState)}
        handlers.update(_control_handlers(on_resync, on_failure, on_disconnect))
        return await self._open(presence_topic(consultation_id), handlers)

    async def _open(self, topic: str, handlers: Dict[EventKind, Handler]) -> Subscription:
        subscription = Subscription(topic, handlers, on_close=self.broker.detach)
        try:
            await self.broker.attach(subscription)
        except Exception:
            await subscription.cancel()
            raise
        return subscription

    async def unsubscribe(self, subscription: Subscription):
        await subscription.cancel()

    async def publish_insert(self, consultation_id: UUID, message: MessageResponse):
        await self._publish(messages_topic(consultation_id), EventKind.INSERT, message)

    async def publish_update(self, consultation_id: UUID, message: MessageResponse):
        await self._publish(messages_topic(consultation_id), EventKind.UPDATE, message)

    async def publish_phase(self, consultation_id: UUID, state: SessionState):
        await self._publish(presence_topic(consultation_id), EventKind.PHASE, state)

    async def _publish(self, topic: str, kind: EventKind, body: BaseModel):
        event = ChannelEvent(topic=topic, kind=kind, payload=body.model_dump(mode="json"))
        await self.broker.publish(event)

    def subscriber_count(self, consultation_id: UUID) -> int:
        return (self.broker.registry.count(messages_topic(consultation_id))
                + self.broker.registry.count(presence_topic(consultation_id)))
