from pydantic import BaseModel
from uuid import UUID
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from app.db.models.consultation import SessionPhase

class ParticipantRole(str, Enum):
    DOCTOR = "doctor"
    PATIENT = "patient"

class SessionState(BaseModel):
    id: UUID
    phase: SessionPhase
    doctor_joined: bool
    patient_joined: bool
    scheduled_at: datetime
    channel_name: str
    phase_started_at: Optional[datetime] = None
    phase_ended_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def joined(self, role: "ParticipantRole") -> bool:
        return self.doctor_joined if role == ParticipantRole.DOCTOR else self.patient_joined

    class Config:
        from_attributes = True

class ConsultationCreate(BaseModel):
    doctor_id: UUID
    patient_id: UUID
    scheduled_at: datetime
    duration_minutes: int = 30

class CancelRequest(BaseModel):
    reason: Optional[str] = None

class BridgeEventIn(BaseModel):
    # Raw payload as emitted by the video bridge widget
    event: str
    data: Dict[str, Any] = {}

class RoomConfig(BaseModel):
    domain: str
    room_name: str
    display_name: str
    start_with_audio_muted: bool
    start_with_video_muted: bool = False
