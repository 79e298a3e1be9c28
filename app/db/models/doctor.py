from sqlmodel import SQLModel, Field, Relationship
from typing import Optional, List, TYPE_CHECKING
from datetime import datetime
from uuid import UUID, uuid4

if TYPE_CHECKING:
    from .consultation import Consultation

class Doctor(SQLModel, table=True):
    __tablename__ = "doctors"
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="users.id", index=True)
    name: str
    specialty: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    consultations: List["Consultation"] = Relationship(back_populates="doctor")
