from datetime import datetime
from typing import Callable, Dict
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import NotFound, SessionNotFound, Unauthorized
from app.core.logger import get_logger
from app.core.utils import derive_channel_name, to_naive_utc
from app.db.models import Consultation, Doctor, Patient
from app.schemas.consultation import ConsultationCreate, ParticipantRole, SessionState

logger = get_logger("consultations")

class ConsultationService:
    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = datetime.utcnow):
        self.session = session
        self.clock = clock

    async def get_consultation(self, consultation_id: UUID, for_update: bool = False) -> Consultation:
        consultation = await self.session.get(
            Consultation,
            consultation_id,
            with_for_update=True if for_update else None,
            populate_existing=for_update,
        )
        if not consultation:
            raise SessionNotFound("Consultation not found", details={"consultation_id": str(consultation_id)})
        return consultation

    async def create_consultation(self, data: ConsultationCreate) -> Consultation:
        # Booking lives outside this service; this is used for seeding
        doctor = await self.session.get(Doctor, data.doctor_id)
        if not doctor:
            raise NotFound("Doctor not found")
        patient = await self.session.get(Patient, data.patient_id)
        if not patient:
            raise NotFound("Patient not found")

        consultation_id = uuid4()
        now = self.clock()
        consultation = Consultation(
            id=consultation_id,
            doctor_id=data.doctor_id,
            patient_id=data.patient_id,
            scheduled_at=to_naive_utc(data.scheduled_at),
            duration_minutes=data.duration_minutes,
            channel_name=derive_channel_name(settings.VIDEO_ROOM_PREFIX, consultation_id),
            created_at=now,
            updated_at=now,
        )
        self.session.add(consultation)
        await self.session.commit()
        await self.session.refresh(consultation)
        logger.info(f"Consultation {consultation.id} scheduled for {consultation.scheduled_at.isoformat()}")
        return consultation

    async def ensure_channel_name(self, consultation: Consultation) -> Consultation:
        """Rows created before channels existed get their name derived once, on first read."""
        if consultation.channel_name:
            return consultation
        consultation.channel_name = derive_channel_name(settings.VIDEO_ROOM_PREFIX, consultation.id)
        consultation.updated_at = self.clock()
        self.session.add(consultation)
        await self.session.commit()
        await self.session.refresh(consultation)
        return consultation

    async def participants(self, consultation: Consultation) -> Dict[ParticipantRole, UUID]:
        doctor = await self.session.get(Doctor, consultation.doctor_id)
        patient = await self.session.get(Patient, consultation.patient_id)
        return {
            ParticipantRole.DOCTOR: doctor.user_id if doctor else None,
            ParticipantRole.PATIENT: patient.user_id if patient else None,
        }

    async def role_of(self, consultation: Consultation, user_id: UUID) -> ParticipantRole:
        for role, participant_id in (await self.participants(consultation)).items():
            if participant_id is not None and participant_id == user_id:
                return role
        raise Unauthorized(
            "Not a participant of this consultation",
            details={"consultation_id": str(consultation.id)},
        )

    async def get_state(self, consultation_id: UUID) -> SessionState:
        consultation = await self.get_consultation(consultation_id)
        consultation = await self.ensure_channel_name(consultation)
        return self.to_state(consultation)

    @staticmethod
    def to_state(consultation: Consultation) -> SessionState:
        return SessionState.model_validate(consultation)
