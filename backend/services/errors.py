from typing import Optional

class TelemedicineError(Exception):
    """Base class for typed session lifecycle failures"""

    code = "telemedicine_error"

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.session_id = session_id

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "session_id": self.session_id}

class SessionNotFound(TelemedicineError):
    code = "session_not_found"

class InvalidTransition(TelemedicineError):
    """State machine guard violated; never retried"""

    code = "invalid_transition"

    def __init__(self, session_id: str, current: Optional[str], target: str, message: Optional[str] = None):
        super().__init__(message or f"Cannot move session from {current} to {target}", session_id)
        self.current = current
        self.target = target

class NotPending(TelemedicineError):
    """Review attempted on a session that was already decided"""

    code = "not_pending"

    def __init__(self, session_id: str, current: Optional[str]):
        super().__init__(f"Session already decided (status: {current})", session_id)
        self.current = current

class Unauthorized(TelemedicineError):
    code = "unauthorized"

class MediaAccessDenied(TelemedicineError):
    code = "media_access_denied"

class NegotiationFailed(TelemedicineError):
    code = "negotiation_failed"

class AlreadyInCall(TelemedicineError):
    code = "already_in_call"

class SessionClosed(TelemedicineError):
    code = "session_closed"

class InfrastructureError(TelemedicineError):
    """Storage or collaborator unavailable"""

    code = "infrastructure_error"

class IssueNotFound(TelemedicineError):
    code = "issue_not_found"
