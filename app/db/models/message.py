from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import UniqueConstraint
from typing import Optional, TYPE_CHECKING
from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

if TYPE_CHECKING:
    from .consultation import Consultation

class MessageType(str, Enum):
    TEXT = "text"
    PRESCRIPTION = "prescription"
    SYSTEM = "system"
    FILE_ATTACHMENT = "file_attachment"
    IMAGE = "image"

class MessageStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

# Status only moves forward along this rank
STATUS_RANK = {
    MessageStatus.FAILED: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}

class Message(SQLModel, table=True):
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("consultation_id", "seq", name="uq_messages_consultation_seq"),
        # Set by clients so a resent message is stored once
        UniqueConstraint("consultation_id", "client_message_id", name="uq_messages_consultation_client_id"),
    )
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    consultation_id: UUID = Field(foreign_key="consultations.id", index=True)
    seq: int
    client_message_id: Optional[UUID] = None
    sender_id: UUID = Field(foreign_key="users.id")
    content: str
    message_type: MessageType = Field(default=MessageType.TEXT)
    status: MessageStatus = Field(default=MessageStatus.SENT)
    attachment_url: Optional[str] = None
    attachment_name: Optional[str] = None
    attachment_size: Optional[str] = None
    is_edited: bool = Field(default=False)
    edited_at: Optional[datetime] = None
    reply_to_message_id: Optional[UUID] = Field(default=None, foreign_key="messages.id")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    consultation: "Consultation" = Relationship(back_populates="messages")
