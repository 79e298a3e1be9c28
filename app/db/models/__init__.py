from sqlmodel import SQLModel
from .user import User
from .doctor import Doctor
from .patient import Patient
from .consultation import Consultation, SessionPhase, TERMINAL_PHASES
from .message import Message, MessageType, MessageStatus, STATUS_RANK
from .audit_log import AuditLog

__all__ = [
    "SQLModel",
    "User",
    "Doctor",
    "Patient",
    "Consultation",
    "SessionPhase",
    "TERMINAL_PHASES",
    "Message",
    "MessageType",
    "MessageStatus",
    "STATUS_RANK",
    "AuditLog",
]
