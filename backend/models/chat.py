from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

class SenderRole(str, Enum):
    """Who wrote a chat entry"""
    PATIENT = "patient"
    PROVIDER = "provider"

class MessageKind(str, Enum):
    """Chat entry kind"""
    TEXT = "text"
    SYSTEM = "system"

class Message(BaseModel):
    """One chat entry in a session's log"""
    sender: SenderRole
    body: str = Field(..., min_length=1)
    kind: MessageKind = MessageKind.TEXT
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    sequence: Optional[int] = Field(None, ge=1, description="Position assigned by the chat log")

    model_config = {"use_enum_values": True, "validate_default": True}

class ChatMessageCreate(BaseModel):
    """Request body for sending a chat message"""
    body: str = Field(..., min_length=1)
    kind: MessageKind = MessageKind.TEXT
