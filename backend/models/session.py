from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field, model_validator
from models.chat import Message

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

class SessionStatus(str, Enum):
    """Telemedicine session lifecycle states"""
    PENDING = "pending"
    SCHEDULED = "scheduled"
    REJECTED = "rejected"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

TERMINAL_STATUSES = frozenset({
    SessionStatus.REJECTED.value,
    SessionStatus.COMPLETED.value,
    SessionStatus.CANCELLED.value,
})

class SessionType(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"
    CHAT = "chat"
    CONSULTATION = "consultation"
    FOLLOW_UP = "follow-up"
    EMERGENCY = "emergency"

class ReviewDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"

class ReviewMetadata(BaseModel):
    """Reviewer decision record, present only after review"""
    reviewer_id: str
    reviewer_role: str
    decision: ReviewDecision
    note: Optional[str] = None
    reviewed_at: datetime

    model_config = {"use_enum_values": True, "validate_default": True}

class CallMetadata(BaseModel):
    """Actual call timing and who has joined"""
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    patient_joined: bool = False
    provider_joined: bool = False

class ClinicalOutput(BaseModel):
    """End-of-session clinical data, written once"""
    doctor_notes: Optional[str] = None
    prescription_notes: Optional[str] = None
    follow_up_required: bool = False
    follow_up_date: Optional[datetime] = None

    @model_validator(mode="after")
    def _drop_date_without_follow_up(self) -> "ClinicalOutput":
        # A follow-up date only means something when follow-up is required
        if not self.follow_up_required:
            self.follow_up_date = None
        return self

class TechnicalIssue(BaseModel):
    issue: str = Field(..., min_length=1)
    reported_by: str
    timestamp: datetime = Field(default_factory=utc_now)
    resolved: bool = False

class Session(BaseModel):
    """Canonical telemedicine session record"""
    session_id: str
    room_id: str
    patient_id: str
    provider_id: str
    session_type: SessionType = SessionType.CONSULTATION
    scheduled_time: datetime
    duration: int = Field(30, gt=0, description="Planned duration in minutes")
    fee: float = Field(..., ge=0)
    status: SessionStatus = SessionStatus.PENDING

    review: Optional[ReviewMetadata] = None
    call: CallMetadata = Field(default_factory=CallMetadata)
    clinical: Optional[ClinicalOutput] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None

    chat_history: List[Message] = Field(default_factory=list)
    technical_issues: List[TechnicalIssue] = Field(default_factory=list)
    patient_rating: Optional[int] = Field(None, ge=1, le=5)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    model_config = {"use_enum_values": True, "validate_default": True}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_document(self) -> dict:
        """Serialize for storage; chat sequence is positional so it is not stored"""
        doc = self.model_dump(exclude={"chat_history"})
        doc["chat_history"] = [m.model_dump(exclude={"sequence"}) for m in self.chat_history]
        doc["chat_count"] = len(self.chat_history)
        doc["issue_count"] = len(self.technical_issues)
        return doc

    @classmethod
    def from_document(cls, doc: dict) -> "Session":
        data = {k: v for k, v in doc.items() if k not in ("_id", "chat_count", "issue_count")}
        session = cls.model_validate(data)
        for index, message in enumerate(session.chat_history, start=1):
            message.sequence = index
        return session

class SessionCreate(BaseModel):
    """Model for requesting a new session"""
    patient_id: Optional[str] = Field(None, description="Required when an admin creates the session")
    provider_id: str
    session_type: SessionType = SessionType.CONSULTATION
    scheduled_time: datetime
    duration: Optional[int] = Field(None, gt=0)
    fee: float = Field(..., ge=0, description="Fee quoted by the billing collaborator")

class ReviewRequest(BaseModel):
    decision: ReviewDecision
    note: Optional[str] = Field(None, max_length=2000)

class EndSessionRequest(BaseModel):
    clinical_output: ClinicalOutput

class RatingRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)

class TechnicalIssueCreate(BaseModel):
    issue: str = Field(..., min_length=1, max_length=2000)

class SessionResponse(BaseModel):
    """Session view returned to clients"""
    session: Session
    chat: List[Message] = Field(default_factory=list)
