from enum import Enum
from pydantic import BaseModel, Field

class Role(str, Enum):
    """Caller role"""
    PATIENT = "patient"
    PROVIDER = "provider"
    ADMIN = "admin"

class Actor(BaseModel):
    """Authenticated caller: role tag plus the identity it carries"""
    role: Role
    identity: str = Field(..., min_length=1)

    model_config = {"frozen": True}

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_participant(self) -> bool:
        return self.role in (Role.PATIENT, Role.PROVIDER)

    def __str__(self) -> str:
        return f"{self.role.value}:{self.identity}"

    @classmethod
    def patient(cls, identity: str) -> "Actor":
        return cls(role=Role.PATIENT, identity=identity)

    @classmethod
    def provider(cls, identity: str) -> "Actor":
        return cls(role=Role.PROVIDER, identity=identity)

    @classmethod
    def admin(cls, identity: str) -> "Actor":
        return cls(role=Role.ADMIN, identity=identity)
