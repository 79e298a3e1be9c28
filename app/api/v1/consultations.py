from fastapi import APIRouter, Depends
from uuid import UUID

from app.api.deps import get_consultation_service, get_current_caller, get_presence_service
from app.schemas.auth import CallerIdentity
from app.schemas.consultation import BridgeEventIn, CancelRequest, ParticipantRole, RoomConfig, SessionState
from app.services.bridge_service import BridgeService
from app.services.consultation_service import ConsultationService
from app.services.presence_service import PresenceService

router = APIRouter()

async def participant_role(
    consultation_id: UUID,
    caller: CallerIdentity,
    service: ConsultationService
) -> ParticipantRole:
    consultation = await service.get_consultation(consultation_id)
    return await service.role_of(consultation, caller.user_id)

@router.get("/{consultation_id}", response_model=SessionState)
async def read_session_state(
    consultation_id: UUID,
    caller: CallerIdentity = Depends(get_current_caller),
    service: ConsultationService = Depends(get_consultation_service)
):
    await participant_role(consultation_id, caller, service)
    return await service.get_state(consultation_id)

@router.get("/{consultation_id}/room", response_model=RoomConfig)
async def read_room_config(
    consultation_id: UUID,
    caller: CallerIdentity = Depends(get_current_caller),
    presence: PresenceService = Depends(get_presence_service)
):
    await participant_role(consultation_id, caller, presence.consultations)
    return await BridgeService(presence).room_config(consultation_id, caller)

@router.post("/{consultation_id}/join", response_model=SessionState)
async def join_consultation(
    consultation_id: UUID,
    caller: CallerIdentity = Depends(get_current_caller),
    presence: PresenceService = Depends(get_presence_service)
):
    role = await participant_role(consultation_id, caller, presence.consultations)
    return await presence.report_join(consultation_id, role, actor_id=caller.user_id)

@router.post("/{consultation_id}/leave", response_model=SessionState)
async def leave_consultation(
    consultation_id: UUID,
    caller: CallerIdentity = Depends(get_current_caller),
    presence: PresenceService = Depends(get_presence_service)
):
    role = await participant_role(consultation_id, caller, presence.consultations)
    return await presence.report_leave(consultation_id, role, actor_id=caller.user_id)

@router.post("/{consultation_id}/end", response_model=SessionState)
async def end_consultation(
    consultation_id: UUID,
    caller: CallerIdentity = Depends(get_current_caller),
    presence: PresenceService = Depends(get_presence_service)
):
    await participant_role(consultation_id, caller, presence.consultations)
    return await presence.report_end(consultation_id, actor_id=caller.user_id)

@router.post("/{consultation_id}/cancel", response_model=SessionState)
async def cancel_consultation(
    consultation_id: UUID,
    request: CancelRequest,
    caller: CallerIdentity = Depends(get_current_caller),
    presence: PresenceService = Depends(get_presence_service)
):
    await participant_role(consultation_id, caller, presence.consultations)
    return await presence.cancel(consultation_id, actor_id=caller.user_id, reason=request.reason)

@router.post("/{consultation_id}/bridge-events", response_model=SessionState)
async def report_bridge_event(
    consultation_id: UUID,
    request: BridgeEventIn,
    caller: CallerIdentity = Depends(get_current_caller),
    presence: PresenceService = Depends(get_presence_service)
):
    await participant_role(consultation_id, caller, presence.consultations)
    return await BridgeService(presence).handle(consultation_id, request, caller)
