from sqlmodel import SQLModel, Field, Relationship
from typing import Optional, List, TYPE_CHECKING
from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

if TYPE_CHECKING:
    from .doctor import Doctor
    from .patient import Patient
    from .message import Message

class SessionPhase(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

TERMINAL_PHASES = (SessionPhase.COMPLETED, SessionPhase.CANCELLED)

class Consultation(SQLModel, table=True):
    __tablename__ = "consultations"
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    doctor_id: UUID = Field(foreign_key="doctors.id", index=True)
    patient_id: UUID = Field(foreign_key="patients.id", index=True)
    scheduled_at: datetime
    duration_minutes: int = Field(default=30)
    channel_name: Optional[str] = Field(default=None, unique=True, index=True)
    phase: SessionPhase = Field(default=SessionPhase.SCHEDULED)
    doctor_joined: bool = Field(default=False)
    patient_joined: bool = Field(default=False)
    phase_started_at: Optional[datetime] = None
    phase_ended_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    doctor: "Doctor" = Relationship(back_populates="consultations")
    patient: "Patient" = Relationship(back_populates="consultations")
    messages: List["Message"] = Relationship(back_populates="consultation")
