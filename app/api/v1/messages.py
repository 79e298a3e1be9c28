from fastapi import APIRouter, Depends
from typing import List
from uuid import UUID

from app.api.deps import get_current_caller, get_message_service
from app.schemas.auth import CallerIdentity
from app.schemas.message import MessageCreate, MessageEdit, MessageResponse
from app.services.message_service import MessageService

router = APIRouter()

@router.get("/{consultation_id}", response_model=List[MessageResponse])
async def list_messages(
    consultation_id: UUID,
    caller: CallerIdentity = Depends(get_current_caller),
    service: MessageService = Depends(get_message_service)
):
    return await service.list_by_session(consultation_id, reader_id=caller.user_id)

@router.post("/send", response_model=MessageResponse)
async def send_message(
    request: MessageCreate,
    caller: CallerIdentity = Depends(get_current_caller),
    service: MessageService = Depends(get_message_service)
):
    return await service.append(
        request.consultation_id,
        caller.user_id,
        request.content,
        request.message_type,
        attachment=request.attachment,
        reply_to_message_id=request.reply_to_message_id,
        client_message_id=request.client_message_id,
    )

@router.post("/{message_id}/read", response_model=MessageResponse)
async def mark_message_read(
    message_id: UUID,
    caller: CallerIdentity = Depends(get_current_caller),
    service: MessageService = Depends(get_message_service)
):
    return await service.mark_read(message_id, caller.user_id)

@router.post("/{message_id}/delivered", response_model=MessageResponse)
async def mark_message_delivered(
    message_id: UUID,
    caller: CallerIdentity = Depends(get_current_caller),
    service: MessageService = Depends(get_message_service)
):
    return await service.mark_delivered(message_id, caller.user_id)

@router.patch("/{message_id}", response_model=MessageResponse)
async def edit_message(
    message_id: UUID,
    request: MessageEdit,
    caller: CallerIdentity = Depends(get_current_caller),
    service: MessageService = Depends(get_message_service)
):
    return await service.edit(message_id, caller.user_id, request.content)
