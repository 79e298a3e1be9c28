"""
Error taxonomy for the consultation core.

Services raise these; the HTTP edge turns them into JSON error bodies using
``status_code``. Nothing in the core retries a ``ConsultationError``.
"""
from typing import Any, Dict, Optional


class ConsultationError(Exception):
    """Base class for every error the consultation core raises."""
    status_code = 500
    error_code = "consultation_error"

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class Unauthenticated(ConsultationError):
    """Caller identity could not be resolved."""
    status_code = 401
    error_code = "unauthenticated"


class Unauthorized(ConsultationError):
    """Caller is not a participant of the target session."""
    status_code = 403
    error_code = "unauthorized"


class NotFound(ConsultationError):
    status_code = 404
    error_code = "not_found"


class SessionNotFound(NotFound):
    error_code = "session_not_found"


class MessageNotFound(NotFound):
    error_code = "message_not_found"


class InvalidMessage(ConsultationError):
    """Malformed append or edit request."""
    status_code = 422
    error_code = "invalid_message"


class InvalidReference(ConsultationError):
    """Reply reference does not resolve inside the same session."""
    status_code = 422
    error_code = "invalid_reference"


class InvalidPhase(ConsultationError):
    """Operation forbidden in the session's current phase."""
    status_code = 409
    error_code = "invalid_phase"


class OutOfWindow(ConsultationError):
    """Join attempted before the join window opened. Recoverable."""
    status_code = 425
    error_code = "out_of_window"

    def __init__(self, message: str, seconds_remaining: int):
        super().__init__(message, details={"seconds_remaining": seconds_remaining})
        self.seconds_remaining = seconds_remaining


class ChannelUnavailable(ConsultationError):
    """Live updates could not be re-established after repeated attempts."""
    status_code = 503
    error_code = "channel_unavailable"


class SessionBusy(ConsultationError):
    """Another worker held the consultation's write lock for too long."""
    status_code = 503
    error_code = "session_busy"
