from datetime import datetime
from typing import Optional, Literal, Union
from pydantic import BaseModel, Field
from models.chat import Message
from models.session import utc_now

class SessionStatusChanged(BaseModel):
    """Emitted after every applied transition"""
    type: Literal["session_status_changed"] = "session_status_changed"
    session_id: str
    previous_status: str
    status: str
    actor: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utc_now)

class ChatMessageAppended(BaseModel):
    type: Literal["chat_message_appended"] = "chat_message_appended"
    session_id: str
    message: Message
    occurred_at: datetime = Field(default_factory=utc_now)

class FinalizeEvent(BaseModel):
    """Emitted exactly once when a session reaches completed"""
    type: Literal["session_finalized"] = "session_finalized"
    session_id: str
    fee: float
    completed_at: datetime
    prescription_notes: Optional[str] = None
    follow_up_required: bool = False
    follow_up_date: Optional[datetime] = None

    def billing_payload(self) -> dict:
        return {"session_id": self.session_id, "fee": self.fee, "completed_at": self.completed_at}

    def records_payload(self) -> dict:
        return {
            "session_id": self.session_id,
            "prescription_notes": self.prescription_notes,
            "follow_up": {
                "required": self.follow_up_required,
                "date": self.follow_up_date,
            },
        }

SessionEvent = Union[SessionStatusChanged, ChatMessageAppended, FinalizeEvent]
