from fastapi import APIRouter
from app.api.v1 import consultations, messages, ws

api_router = APIRouter()

api_router.include_router(consultations.router, prefix="/consultations", tags=["consultations"])
api_router.include_router(messages.router, prefix="/messages", tags=["messages"])
api_router.include_router(ws.router, prefix="/ws", tags=["realtime"])
