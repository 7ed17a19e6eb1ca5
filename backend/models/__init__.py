from .actor import Actor, Role
from .chat import Message, MessageKind, SenderRole, ChatMessageCreate
from .session import (
    Session, SessionStatus, SessionType, ReviewDecision, ReviewMetadata,
    CallMetadata, ClinicalOutput, TechnicalIssue, SessionCreate, ReviewRequest,
    EndSessionRequest, RatingRequest, TechnicalIssueCreate, SessionResponse,
)
from .events import SessionStatusChanged, ChatMessageAppended, FinalizeEvent, SessionEvent

__all__ = [
    "Actor", "Role",
    "Message", "MessageKind", "SenderRole", "ChatMessageCreate",
    "Session", "SessionStatus", "SessionType", "ReviewDecision", "ReviewMetadata",
    "CallMetadata", "ClinicalOutput", "TechnicalIssue", "SessionCreate", "ReviewRequest",
    "EndSessionRequest", "RatingRequest", "TechnicalIssueCreate", "SessionResponse",
    "SessionStatusChanged", "ChatMessageAppended", "FinalizeEvent", "SessionEvent",
]
