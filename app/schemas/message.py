from pydantic import BaseModel, Field
from uuid import UUID
from datetime import datetime
from typing import Optional

from app.db.models.message import Message, MessageStatus, MessageType
from app.db.models.user import User
from app.schemas.consultation import ParticipantRole

class AttachmentRef(BaseModel):
    url: str
    name: str
    size: str

class MessageCreate(BaseModel):
    consultation_id: UUID
    content: str = ""
    message_type: MessageType = MessageType.TEXT
    attachment: Optional[AttachmentRef] = None
    reply_to_message_id: Optional[UUID] = None
    # Resending with the same id returns the stored message instead of a copy
    client_message_id: Optional[UUID] = None

class MessageEdit(BaseModel):
    content: str = Field(min_length=1)

class MessageResponse(BaseModel):
    id: UUID
    consultation_id: UUID
    seq: int
    sender_id: UUID
    sender_name: Optional[str] = None
    sender_role: Optional[ParticipantRole] = None
    content: str
    message_type: MessageType
    status: MessageStatus
    attachment: Optional[AttachmentRef] = None
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    reply_to_message_id: Optional[UUID] = None
    client_message_id: Optional[UUID] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @property
    def order_key(self):
        return (self.created_at, self.seq)

    @classmethod
    def from_model(cls, message: Message, sender: Optional[User] = None) -> "MessageResponse":
        attachment = None
        if message.attachment_url:
            attachment = AttachmentRef(
                url=message.attachment_url,
                name=message.attachment_name,
                size=message.attachment_size,
            )
        return cls(
            id=message.id,
            consultation_id=message.consultation_id,
            seq=message.seq,
            sender_id=message.sender_id,
            sender_name=sender.name if sender else None,
            sender_role=sender.role if sender else None,
            content=message.content,
            message_type=message.message_type,
            status=message.status,
            attachment=attachment,
            is_edited=message.is_edited,
            edited_at=message.edited_at,
            reply_to_message_id=message.reply_to_message_id,
            client_message_id=message.client_message_id,
            created_at=message.created_at,
            updated_at=message.updated_at,
        )
