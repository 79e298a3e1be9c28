from typing import List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.logger import get_logger
from app.db.models import AuditLog

logger = get_logger("audit")

class AuditService:
    def __init__(self, session: AsyncSession):
        self.session = session

    def record(self, action: str, consultation_id: Optional[UUID] = None, actor_id: Optional[UUID] = None,
               payload: Optional[dict] = None) -> AuditLog:
        # Added to the caller's unit of work; committed together with the change it describes
        entry = AuditLog(
            action=action,
            consultation_id=consultation_id,
            actor_id=actor_id,
            payload=payload or {},
        )
        self.session.add(entry)
        logger.info(f"{action} consultation={consultation_id} actor={actor_id} payload={entry.payload}")
        return entry

    async def list_for_consultation(self, consultation_id: UUID) -> List[AuditLog]:
        stmt = select(AuditLog).where(
            AuditLog.consultation_id == consultation_id
        ).order_by(AuditLog.created_at)
        result = await self.session.execute(stmt)
        return result.scalars().all()
