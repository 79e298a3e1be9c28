from datetime import datetime, timezone
from uuid import UUID

def to_naive_utc(value: datetime) -> datetime:
    # Timestamps are stored naive UTC
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value

def derive_channel_name(prefix: str, consultation_id: UUID) -> str:
    return f"{prefix}-{consultation_id}"

def display_name(role: str, name: str) -> str:
    # Doctors are shown by surname, patients by first name
    parts = name.split()
    if not parts:
        return name
    if role == "doctor":
        return f"Dr. {parts[-1]}"
    return parts[0]
