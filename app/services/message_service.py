from datetime import datetime
from typing import Callable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.exceptions import (
    InvalidMessage,
    InvalidPhase,
    InvalidReference,
    MessageNotFound,
    Unauthorized,
)
from app.core.locks import KeyedLock, session_locks
from app.core.logger import get_logger
from app.db.models import Consultation, Message, MessageStatus, MessageType, STATUS_RANK, TERMINAL_PHASES, User
from app.realtime.channel import MessageChannel
from app.schemas.message import AttachmentRef, MessageResponse
from app.services.consultation_service import ConsultationService

logger = get_logger("messages")

ATTACHMENT_TYPES = (MessageType.FILE_ATTACHMENT, MessageType.IMAGE)

class MessageService:
    """
    Append-only, ordered message log per consultation.

    Writes for one consultation run under that consultation's lock and are
    published to the channel after commit, before the lock is released, so
    every subscriber sees them in commit order.
    """

    def __init__(self, session: AsyncSession, channel: MessageChannel, locks: KeyedLock = session_locks,
                 clock: Callable[[], datetime] = datetime.utcnow):
        self.session = session
        self.channel = channel
        self.locks = locks
        self.clock = clock
        self.consultations = ConsultationService(session, clock=clock)

    async def append(
        self,
        consultation_id: UUID,
        sender_id: UUID,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        attachment: Optional[AttachmentRef] = None,
        reply_to_message_id: Optional[UUID] = None,
        client_message_id: Optional[UUID] = None,
    ) -> MessageResponse:
        message_type = MessageType(message_type)
        async with self.locks.hold(consultation_id):
            consultation = await self.consultations.get_consultation(consultation_id, for_update=True)
            await self.consultations.role_of(consultation, sender_id)
            if client_message_id is not None:
                # Checked before the phase so a resend after the session ended still resolves
                existing = await self._find_resend(consultation_id, sender_id, client_message_id)
                if existing is not None:
                    logger.info(f"Message {existing.id} already stored for client message {client_message_id}")
                    return await self._respond(existing)
            self._ensure_accepting(consultation)
            self._validate_payload(content, message_type, attachment)
            if reply_to_message_id is not None:
                await self._resolve_reply(consultation_id, reply_to_message_id)

            seq, created_at = await self._next_position(consultation_id)
            message = Message(
                consultation_id=consultation_id,
                seq=seq,
                client_message_id=client_message_id,
                sender_id=sender_id,
                content=content,
                message_type=message_type,
                status=MessageStatus.SENT,
                attachment_url=attachment.url if attachment else None,
                attachment_name=attachment.name if attachment else None,
                attachment_size=attachment.size if attachment else None,
                reply_to_message_id=reply_to_message_id,
                created_at=created_at,
                updated_at=created_at,
            )
            self.session.add(message)
            await self.session.commit()
            await self.session.refresh(message)

            response = await self._respond(message)
            logger.info(f"Message {message.id} appended to consultation {consultation_id} (seq={seq})")
            await self.channel.publish_insert(consultation_id, response)
        return response

    async def list_by_session(self, consultation_id: UUID, reader_id: Optional[UUID] = None) -> List[MessageResponse]:
        consultation = await self.consultations.get_consultation(consultation_id)
        if reader_id is not None:
            await self.consultations.role_of(consultation, reader_id)
        stmt = select(Message, User).join(User, User.id == Message.sender_id).where(
            Message.consultation_id == consultation_id
        ).order_by(Message.created_at, Message.seq)
        result = await self.session.execute(stmt)
        return [MessageResponse.from_model(message, sender) for message, sender in result.all()]

    async def get_message(self, message_id: UUID, for_update: bool = False) -> Message:
        message = await self.session.get(
            Message,
            message_id,
            with_for_update=True if for_update else None,
            populate_existing=for_update,
        )
        if not message:
            raise MessageNotFound("Message not found", details={"message_id": str(message_id)})
        return message

    async def mark_read(self, message_id: UUID, reader_id: UUID) -> MessageResponse:
        return await self._acknowledge(message_id, reader_id, MessageStatus.READ)

    async def mark_delivered(self, message_id: UUID, reader_id: UUID) -> MessageResponse:
        return await self._acknowledge(message_id, reader_id, MessageStatus.DELIVERED)

    async def edit(self, message_id: UUID, editor_id: UUID, content: str) -> MessageResponse:
        consultation_id = (await self.get_message(message_id)).consultation_id
        async with self.locks.hold(consultation_id):
            message = await self.get_message(message_id, for_update=True)
            consultation = await self.consultations.get_consultation(consultation_id, for_update=True)
            await self.consultations.role_of(consultation, editor_id)
            if message.sender_id != editor_id:
                raise Unauthorized("Only the sender can edit a message")
            self._ensure_accepting(consultation)
            if message.message_type != MessageType.TEXT:
                raise InvalidMessage("Only text messages can be edited")
            if not content or not content.strip():
                raise InvalidMessage("Message content cannot be empty")

            now = self.clock()
            message.content = content
            message.is_edited = True
            message.edited_at = now
            message.updated_at = now
            return await self._save_and_publish(message)

    async def _acknowledge(self, message_id: UUID, reader_id: UUID, target: MessageStatus) -> MessageResponse:
        # consultation_id never changes, so it is safe to read before locking
        consultation_id = (await self.get_message(message_id)).consultation_id
        async with self.locks.hold(consultation_id):
            message = await self.get_message(message_id, for_update=True)
            consultation = await self.consultations.get_consultation(consultation_id)
            await self.consultations.role_of(consultation, reader_id)
            if message.sender_id == reader_id:
                raise Unauthorized(f"Senders cannot mark their own messages as {target.value}")
            if STATUS_RANK[message.status] >= STATUS_RANK[target]:
                return await self._respond(message)

            message.status = target
            message.updated_at = self.clock()
            return await self._save_and_publish(message)

    async def _save_and_publish(self, message: Message) -> MessageResponse:
        self.session.add(message)
        await self.session.commit()
        await self.session.refresh(message)
        response = await self._respond(message)
        logger.info(f"Message {message.id} updated (status={message.status.value}, edited={message.is_edited})")
        await self.channel.publish_update(message.consultation_id, response)
        return response

    async def _respond(self, message: Message) -> MessageResponse:
        sender = await self.session.get(User, message.sender_id)
        return MessageResponse.from_model(message, sender)

    async def _find_resend(self, consultation_id: UUID, sender_id: UUID, client_message_id: UUID) -> Optional[Message]:
        stmt = select(Message).where(
            Message.consultation_id == consultation_id,
            Message.client_message_id == client_message_id,
        )
        existing = (await self.session.execute(stmt)).scalars().first()
        if existing is not None and existing.sender_id != sender_id:
            raise InvalidMessage(
                "Client message id is already used by another sender",
                details={"client_message_id": str(client_message_id)},
            )
        return existing

    @staticmethod
    def _ensure_accepting(consultation: Consultation):
        if consultation.phase in TERMINAL_PHASES:
            raise InvalidPhase(
                f"Consultation is {consultation.phase.value}; messages can no longer be sent",
                details={"phase": consultation.phase.value},
            )

    @staticmethod
    def _validate_payload(content: str, message_type: MessageType, attachment: Optional[AttachmentRef]):
        if message_type == MessageType.TEXT and (not content or not content.strip()):
            raise InvalidMessage("Message content cannot be empty")
        if content is None:
            raise InvalidMessage("Message content is required")
        if attachment is not None and not all((attachment.url, attachment.name, attachment.size)):
            raise InvalidMessage("Attachment url, name and size must be provided together")
        if message_type in ATTACHMENT_TYPES and attachment is None:
            raise InvalidMessage(f"{message_type.value} messages require an attachment")

    async def _resolve_reply(self, consultation_id: UUID, reply_to_message_id: UUID):
        target = await self.session.get(Message, reply_to_message_id)
        if target is None or target.consultation_id != consultation_id:
            raise InvalidReference(
                "Reply target does not exist in this consultation",
                details={"reply_to_message_id": str(reply_to_message_id)},
            )

    async def _next_position(self, consultation_id: UUID) -> Tuple[int, datetime]:
        stmt = select(Message.seq, Message.created_at).where(
            Message.consultation_id == consultation_id
        ).order_by(Message.seq.desc()).limit(1)
        result = await self.session.execute(stmt)
        last = result.first()
        now = self.clock()
        if last is None:
            return 1, now
        # Never let created_at run backwards, so (created_at, seq) matches seq order
        return last.seq + 1, max(now, last.created_at)
