from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from app.schemas.consultation import ParticipantRole

class EventKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    PHASE = "phase"
    # Control events produced by the transport, never published by services
    DISCONNECTED = "disconnected"
    RESYNC = "resync"
    FAILED = "failed"

class ChannelEvent(BaseModel):
    topic: str
    kind: EventKind
    payload: Dict[str, Any] = {}
    published_at: datetime = Field(default_factory=datetime.utcnow)

class BridgeEventKind(str, Enum):
    JOINED = "joined"
    LEFT = "left"
    ENDED = "ended"

class BridgeEvent(BaseModel):
    consultation_id: UUID
    kind: BridgeEventKind
    role: Optional[ParticipantRole] = None
