from typing import Optional
from uuid import UUID

from app.core.config import settings
from app.core.exceptions import InvalidMessage
from app.core.logger import get_logger
from app.core.utils import display_name
from app.schemas.auth import CallerIdentity
from app.schemas.consultation import BridgeEventIn, ParticipantRole, RoomConfig, SessionState
from app.schemas.events import BridgeEvent, BridgeEventKind
from app.services.presence_service import PresenceService

logger = get_logger("bridge")

# Bridge event name -> (tagged kind, whether it concerns the reporting client itself)
BRIDGE_EVENTS = {
    "videoConferenceJoined": (BridgeEventKind.JOINED, True),
    "videoConferenceLeft": (BridgeEventKind.LEFT, True),
    "participantJoined": (BridgeEventKind.JOINED, False),
    "participantLeft": (BridgeEventKind.LEFT, False),
    "readyToClose": (BridgeEventKind.ENDED, None),
}

def other_role(role: ParticipantRole) -> ParticipantRole:
    return ParticipantRole.PATIENT if role == ParticipantRole.DOCTOR else ParticipantRole.DOCTOR

def translate(consultation_id: UUID, event: str, reporter_role: ParticipantRole) -> BridgeEvent:
    """
    Turn a raw bridge callback into a tagged event.

    ``videoConference*`` events describe the reporting client itself,
    ``participant*`` events describe the remote party, which in a two-party
    consultation is always the other role.
    """
    try:
        kind, about_self = BRIDGE_EVENTS[event]
    except KeyError:
        raise InvalidMessage(f"Unknown video bridge event {event!r}", details={"event": event})
    if kind is BridgeEventKind.ENDED:
        return BridgeEvent(consultation_id=consultation_id, kind=kind)
    role = reporter_role if about_self else other_role(reporter_role)
    return BridgeEvent(consultation_id=consultation_id, kind=kind, role=role)

class BridgeService:
    def __init__(self, presence: PresenceService):
        self.presence = presence

    async def handle(self, consultation_id: UUID, raw: BridgeEventIn, caller: CallerIdentity) -> SessionState:
        event = translate(consultation_id, raw.event, caller.role)
        logger.info(f"Bridge {raw.event} from {caller.role.value} -> {event.kind.value} ({event.role.value if event.role else '-'})")
        return await self.dispatch(event, actor_id=caller.user_id)

    async def dispatch(self, event: BridgeEvent, actor_id: Optional[UUID] = None) -> SessionState:
        if event.kind is BridgeEventKind.JOINED:
            return await self.presence.report_join(event.consultation_id, event.role, actor_id=actor_id)
        if event.kind is BridgeEventKind.LEFT:
            return await self.presence.report_leave(event.consultation_id, event.role, actor_id=actor_id)
        return await self.presence.report_end(event.consultation_id, actor_id=actor_id)

    async def room_config(self, consultation_id: UUID, caller: CallerIdentity) -> RoomConfig:
        state = await self.presence.get_state(consultation_id)
        return RoomConfig(
            domain=settings.VIDEO_BRIDGE_DOMAIN,
            room_name=state.channel_name,
            display_name=display_name(caller.role.value, caller.name),
            # Patients start muted
            start_with_audio_muted=caller.role == ParticipantRole.PATIENT,
        )
