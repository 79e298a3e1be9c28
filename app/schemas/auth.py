from pydantic import BaseModel
from uuid import UUID

from app.schemas.consultation import ParticipantRole

class CallerIdentity(BaseModel):
    user_id: UUID
    role: ParticipantRole
    # doctors.id or patients.id depending on role
    profile_id: UUID
    name: str

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
