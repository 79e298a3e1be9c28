import asyncio
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.api.deps import get_channel
from app.core.exceptions import ConsultationError
from app.core.logger import get_logger
from app.db.session import get_session_factory
from app.realtime.channel import MessageChannel
from app.services.consultation_service import ConsultationService
from app.services.identity_service import IdentityService

logger = get_logger("ws")
router = APIRouter()

# Application close codes: 4000 + the HTTP status of the rejection
def close_code(exc: ConsultationError) -> int:
    return 4000 + exc.status_code

async def _pump(websocket: WebSocket, outbox: asyncio.Queue):
    while True:
        frame = await outbox.get()
        await websocket.send_json(frame)

@router.websocket("/consultations/{consultation_id}")
async def consultation_socket(
    websocket: WebSocket,
    consultation_id: UUID,
    token: Optional[str] = Query(None),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    channel: MessageChannel = Depends(get_channel)
):
    """
    Live feed for one consultation. Frames are ``{"kind", "payload"}`` with
    kind insert/update (message payload), phase (session state payload) or
    resync/failed/disconnected (no payload). After ``resync`` the client
    must re-fetch the message list.
    """
    try:
        # Closed before accepting; an idle socket must not hold a pooled connection
        async with session_factory() as session:
            caller = await IdentityService(session).resolve_token(token)
            service = ConsultationService(session)
            consultation = await service.get_consultation(consultation_id)
            await service.role_of(consultation, caller.user_id)
    except ConsultationError as e:
        logger.warning(f"Rejected socket for consultation {consultation_id}: {e.message}")
        await websocket.close(code=close_code(e))
        return

    outbox: asyncio.Queue = asyncio.Queue()

    def forward(kind: str):
        def push(body=None):
            outbox.put_nowait({"kind": kind, "payload": body.model_dump(mode="json") if body is not None else None})
        return push

    subscriptions = []
    try:
        subscriptions.append(await channel.subscribe(
            consultation_id,
            on_insert=forward("insert"),
            on_update=forward("update"),
            on_resync=forward("resync"),
            on_failure=forward("failed"),
            on_disconnect=forward("disconnected"),
        ))
        subscriptions.append(await channel.subscribe_presence(
            consultation_id,
            on_phase=forward("phase"),
            on_resync=forward("resync"),
            on_failure=forward("failed"),
        ))
    except ConsultationError as e:
        for subscription in subscriptions:
            await channel.unsubscribe(subscription)
        logger.warning(f"No live feed for consultation {consultation_id}: {e.message}")
        await websocket.close(code=close_code(e))
        return
    # Subscribed before accepting, so nothing committed after the handshake is missed
    await websocket.accept()
    sender = asyncio.create_task(_pump(websocket, outbox))
    logger.info(f"{caller.role.value} {caller.user_id} connected to consultation {consultation_id}")
    try:
        while True:
            # Incoming frames are keep-alives only
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"{caller.role.value} {caller.user_id} disconnected from consultation {consultation_id}")
    finally:
        for subscription in subscriptions:
            await channel.unsubscribe(subscription)
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
