from datetime import datetime
from typing import Callable

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_session
from app.realtime.broker import get_broker
from app.realtime.channel import MessageChannel
from app.schemas.auth import CallerIdentity
from app.services.consultation_service import ConsultationService
from app.services.identity_service import IdentityService
from app.services.message_service import MessageService
from app.services.presence_service import PresenceService

security = HTTPBearer(auto_error=False)

async def get_current_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    session: AsyncSession = Depends(get_session)
) -> CallerIdentity:
    token = credentials.credentials if credentials else None
    return await IdentityService(session).resolve_token(token)

def get_channel() -> MessageChannel:
    return MessageChannel(get_broker())

def get_clock() -> Callable[[], datetime]:
    return datetime.utcnow

async def get_consultation_service(
    session: AsyncSession = Depends(get_session),
    clock: Callable[[], datetime] = Depends(get_clock)
) -> ConsultationService:
    return ConsultationService(session, clock=clock)

async def get_message_service(
    session: AsyncSession = Depends(get_session),
    channel: MessageChannel = Depends(get_channel),
    clock: Callable[[], datetime] = Depends(get_clock)
) -> MessageService:
    return MessageService(session, channel, clock=clock)

async def get_presence_service(
    session: AsyncSession = Depends(get_session),
    channel: MessageChannel = Depends(get_channel),
    clock: Callable[[], datetime] = Depends(get_clock)
) -> PresenceService:
    return PresenceService(session, channel, clock=clock)
