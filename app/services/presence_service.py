"""
Session phase state machine driven by join/leave/end reports from the video bridge.

    scheduled   --join (window open)-->   in_progress
    in_progress --end-->                  completed
    scheduled | in_progress --cancel-->   cancelled

Join flags move independently of the phase; leaving never moves the phase
back. Every change is committed under the consultation's lock and pushed on
its presence topic before the lock is released.
"""
import math
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import InvalidPhase, OutOfWindow
from app.core.locks import KeyedLock, session_locks
from app.core.logger import get_logger
from app.db.models import Consultation, SessionPhase, TERMINAL_PHASES
from app.realtime.channel import MessageChannel
from app.schemas.consultation import ParticipantRole, SessionState
from app.services.audit_service import AuditService
from app.services.consultation_service import ConsultationService

logger = get_logger("presence")

PHASE_RANK = {
    SessionPhase.SCHEDULED: 0,
    SessionPhase.IN_PROGRESS: 1,
    SessionPhase.COMPLETED: 2,
    SessionPhase.CANCELLED: 2,
}

def join_window_opens_at(scheduled_at: datetime, window_minutes: Optional[int] = None) -> datetime:
    if window_minutes is None:
        window_minutes = settings.JOIN_WINDOW_MINUTES
    return scheduled_at - timedelta(minutes=window_minutes)

def join_window_open(scheduled_at: datetime, now: datetime, window_minutes: Optional[int] = None) -> bool:
    # Inclusive at the boundary, no upper bound
    return now >= join_window_opens_at(scheduled_at, window_minutes)

def seconds_until_join_window(scheduled_at: datetime, now: datetime, window_minutes: Optional[int] = None) -> int:
    remaining = (join_window_opens_at(scheduled_at, window_minutes) - now).total_seconds()
    return max(0, math.ceil(remaining))

class PresenceService:
    def __init__(self, session: AsyncSession, channel: MessageChannel, locks: KeyedLock = session_locks,
                 clock: Callable[[], datetime] = datetime.utcnow):
        self.session = session
        self.channel = channel
        self.locks = locks
        self.clock = clock
        self.consultations = ConsultationService(session, clock=clock)
        self.audit = AuditService(session)

    async def get_state(self, consultation_id: UUID) -> SessionState:
        return await self.consultations.get_state(consultation_id)

    async def report_join(self, consultation_id: UUID, role: ParticipantRole, actor_id: Optional[UUID] = None) -> SessionState:
        role = ParticipantRole(role)
        async with self.locks.hold(consultation_id):
            consultation = await self.consultations.get_consultation(consultation_id, for_update=True)
            if consultation.phase in TERMINAL_PHASES:
                raise InvalidPhase(
                    f"Cannot join a {consultation.phase.value} consultation",
                    details={"phase": consultation.phase.value},
                )
            now = self.clock()
            if not join_window_open(consultation.scheduled_at, now):
                remaining = seconds_until_join_window(consultation.scheduled_at, now)
                raise OutOfWindow(f"Consultation can be joined in {remaining} seconds", seconds_remaining=remaining)

            previous = consultation.phase
            changed = self._set_joined(consultation, role, True)
            if consultation.phase == SessionPhase.SCHEDULED:
                consultation.phase = SessionPhase.IN_PROGRESS
                consultation.phase_started_at = now
            return await self._commit(consultation, previous, changed, f"{role.value}_joined", actor_id, now)

    async def report_leave(self, consultation_id: UUID, role: ParticipantRole, actor_id: Optional[UUID] = None) -> SessionState:
        role = ParticipantRole(role)
        async with self.locks.hold(consultation_id):
            consultation = await self.consultations.get_consultation(consultation_id, for_update=True)
            if consultation.phase in TERMINAL_PHASES:
                # Flags were cleared when the session ended
                return self.consultations.to_state(consultation)
            previous = consultation.phase
            changed = self._set_joined(consultation, role, False)
            return await self._commit(consultation, previous, changed, f"{role.value}_left", actor_id, self.clock())

    async def report_end(self, consultation_id: UUID, actor_id: Optional[UUID] = None) -> SessionState:
        async with self.locks.hold(consultation_id):
            consultation = await self.consultations.get_consultation(consultation_id, for_update=True)
            if consultation.phase == SessionPhase.COMPLETED:
                return self.consultations.to_state(consultation)
            if consultation.phase != SessionPhase.IN_PROGRESS:
                raise InvalidPhase(
                    f"Cannot end a {consultation.phase.value} consultation",
                    details={"phase": consultation.phase.value},
                )
            now = self.clock()
            previous = consultation.phase
            self._clear_flags(consultation)
            consultation.phase = SessionPhase.COMPLETED
            consultation.phase_ended_at = now
            return await self._commit(consultation, previous, True, "ended", actor_id, now)

    async def cancel(self, consultation_id: UUID, actor_id: Optional[UUID] = None, reason: Optional[str] = None) -> SessionState:
        async with self.locks.hold(consultation_id):
            consultation = await self.consultations.get_consultation(consultation_id, for_update=True)
            if consultation.phase == SessionPhase.CANCELLED:
                return self.consultations.to_state(consultation)
            if consultation.phase == SessionPhase.COMPLETED:
                raise InvalidPhase("Cannot cancel a completed consultation", details={"phase": consultation.phase.value})
            now = self.clock()
            previous = consultation.phase
            self._clear_flags(consultation)
            consultation.phase = SessionPhase.CANCELLED
            consultation.phase_ended_at = now
            return await self._commit(consultation, previous, True, "cancelled", actor_id, now, reason=reason)

    @staticmethod
    def _set_joined(consultation: Consultation, role: ParticipantRole, joined: bool) -> bool:
        field = "doctor_joined" if role == ParticipantRole.DOCTOR else "patient_joined"
        if getattr(consultation, field) == joined:
            return False
        setattr(consultation, field, joined)
        return True

    @staticmethod
    def _clear_flags(consultation: Consultation):
        consultation.doctor_joined = False
        consultation.patient_joined = False

    async def _commit(self, consultation: Consultation, previous: SessionPhase, changed: bool, action: str,
                      actor_id: Optional[UUID], now: datetime, reason: Optional[str] = None) -> SessionState:
        phase_changed = consultation.phase != previous
        if not changed and not phase_changed:
            return self.consultations.to_state(consultation)

        consultation.updated_at = now
        self.session.add(consultation)
        if phase_changed:
            payload = {"from": previous.value, "to": consultation.phase.value}
            if reason:
                payload["reason"] = reason
            self.audit.record(f"consultation.{action}", consultation_id=consultation.id, actor_id=actor_id, payload=payload)
        await self.session.commit()
        await self.session.refresh(consultation)

        state = self.consultations.to_state(consultation)
        logger.info(
            f"Consultation {consultation.id} {action}: phase={state.phase.value} "
            f"doctor_joined={state.doctor_joined} patient_joined={state.patient_joined}"
        )
        await self.channel.publish_phase(consultation.id, state)
        return state
