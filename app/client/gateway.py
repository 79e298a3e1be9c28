from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.locks import KeyedLock, session_locks
from app.db.session import async_session_factory
from app.realtime.channel import MessageChannel
from app.realtime.subscription import Subscription
from app.schemas.auth import CallerIdentity
from app.schemas.consultation import SessionState
from app.schemas.message import AttachmentRef, MessageResponse
from app.db.models import MessageType
from app.services.consultation_service import ConsultationService
from app.services.message_service import MessageService
from app.services.presence_service import PresenceService


class ConsultationGateway(ABC):
    """Everything a client controller needs from the server, for one consultation and one caller."""

    def __init__(self, consultation_id: UUID, caller: CallerIdentity):
        self.consultation_id = consultation_id
        self.caller = caller

    @abstractmethod
    async def get_state(self) -> SessionState: ...

    @abstractmethod
    async def list_messages(self) -> List[MessageResponse]: ...

    @abstractmethod
    async def send_message(self, content: str, message_type: MessageType = MessageType.TEXT,
                           attachment: Optional[AttachmentRef] = None,
                           reply_to_message_id: Optional[UUID] = None,
                           client_message_id: Optional[UUID] = None) -> MessageResponse: ...

    @abstractmethod
    async def mark_read(self, message_id: UUID) -> MessageResponse: ...

    @abstractmethod
    async def mark_delivered(self, message_id: UUID) -> MessageResponse: ...

    @abstractmethod
    async def report_join(self) -> SessionState: ...

    @abstractmethod
    async def report_leave(self) -> SessionState: ...

    @abstractmethod
    async def report_end(self) -> SessionState: ...

    @abstractmethod
    async def subscribe_messages(self, on_insert, on_update, on_resync=None, on_failure=None) -> Subscription: ...

    @abstractmethod
    async def subscribe_presence(self, on_phase, on_resync=None, on_failure=None) -> Subscription: ...

    @abstractmethod
    async def unsubscribe(self, subscription: Subscription): ...


class LocalGateway(ConsultationGateway):
    """
    In-process gateway: each call opens its own database session and runs the
    same participant check the HTTP routes run.
    """

    def __init__(self, consultation_id: UUID, caller: CallerIdentity, channel: MessageChannel,
                 session_factory: async_sessionmaker = async_session_factory, locks: KeyedLock = session_locks,
                 clock: Callable[[], datetime] = datetime.utcnow):
        super().__init__(consultation_id, caller)
        self.channel = channel
        self.session_factory = session_factory
        self.locks = locks
        self.clock = clock

    async def _authorize(self, session: AsyncSession):
        service = ConsultationService(session, clock=self.clock)
        consultation = await service.get_consultation(self.consultation_id)
        return await service.role_of(consultation, self.caller.user_id)

    def _messages(self, session: AsyncSession) -> MessageService:
        return MessageService(session, self.channel, locks=self.locks, clock=self.clock)

    def _presence(self, session: AsyncSession) -> PresenceService:
        return PresenceService(session, self.channel, locks=self.locks, clock=self.clock)

    async def get_state(self) -> SessionState:
        async with self.session_factory() as session:
            await self._authorize(session)
            return await ConsultationService(session, clock=self.clock).get_state(self.consultation_id)

    async def list_messages(self) -> List[MessageResponse]:
        async with self.session_factory() as session:
            return await self._messages(session).list_by_session(self.consultation_id, reader_id=self.caller.user_id)

    async def send_message(self, content, message_type=MessageType.TEXT, attachment=None, reply_to_message_id=None,
                           client_message_id=None):
        async with self.session_factory() as session:
            return await self._messages(session).append(
                self.consultation_id,
                self.caller.user_id,
                content,
                message_type,
                attachment=attachment,
                reply_to_message_id=reply_to_message_id,
                client_message_id=client_message_id,
            )

    async def mark_read(self, message_id: UUID) -> MessageResponse:
        async with self.session_factory() as session:
            return await self._messages(session).mark_read(message_id, self.caller.user_id)

    async def mark_delivered(self, message_id: UUID) -> MessageResponse:
        async with self.session_factory() as session:
            return await self._messages(session).mark_delivered(message_id, self.caller.user_id)

    async def report_join(self) -> SessionState:
        async with self.session_factory() as session:
            role = await self._authorize(session)
            return await self._presence(session).report_join(self.consultation_id, role, actor_id=self.caller.user_id)

    async def report_leave(self) -> SessionState:
        async with self.session_factory() as session:
            role = await self._authorize(session)
            return await self._presence(session).report_leave(self.consultation_id, role, actor_id=self.caller.user_id)

    async def report_end(self) -> SessionState:
        async with self.session_factory() as session:
            await self._authorize(session)
            return await self._presence(session).report_end(self.consultation_id, actor_id=self.caller.user_id)

    async def subscribe_messages(self, on_insert, on_update, on_resync=None, on_failure=None) -> Subscription:
        return await self.channel.subscribe(
            self.consultation_id, on_insert, on_update, on_resync=on_resync, on_failure=on_failure
        )

    async def subscribe_presence(self, on_phase, on_resync=None, on_failure=None) -> Subscription:
        return await self.channel.subscribe_presence(
            self.consultation_id, on_phase, on_resync=on_resync, on_failure=on_failure
        )

    async def unsubscribe(self, subscription: Subscription):
        await self.channel.unsubscribe(subscription)
