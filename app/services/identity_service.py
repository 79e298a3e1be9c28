from typing import Optional
from uuid import UUID

from jwt.exceptions import PyJWTError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.exceptions import Unauthenticated
from app.core.security import create_access_token, decode_access_token
from app.db.models import Doctor, Patient, User
from app.schemas.auth import CallerIdentity
from app.schemas.consultation import ParticipantRole

class IdentityService:
    """Resolves "who is calling" from a bearer token into a user and role profile."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def resolve_token(self, token: Optional[str]) -> CallerIdentity:
        if not token:
            raise Unauthenticated("Please sign in")
        try:
            payload = decode_access_token(token)
            user_id = UUID(payload["sub"])
        except (PyJWTError, KeyError, TypeError, ValueError):
            raise Unauthenticated("Could not validate credentials")
        return await self.resolve_user(user_id)

    async def resolve_user(self, user_id: UUID) -> CallerIdentity:
        user = await self.session.get(User, user_id)
        if user is None:
            raise Unauthenticated("User not found")

        try:
            role = ParticipantRole(user.role)
        except ValueError:
            raise Unauthenticated(f"Unsupported user role {user.role!r}")

        profile_model = Doctor if role == ParticipantRole.DOCTOR else Patient
        stmt = select(profile_model).where(profile_model.user_id == user.id)
        result = await self.session.execute(stmt)
        profile = result.scalars().first()
        if profile is None:
            raise Unauthenticated(f"No {role.value} profile for this user")

        return CallerIdentity(user_id=user.id, role=role, profile_id=profile.id, name=profile.name)

    @staticmethod
    def issue_token(user: User) -> str:
        return create_access_token(data={"sub": str(user.id), "role": user.role})
