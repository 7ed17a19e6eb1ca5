from .errors import TelemedicineError
from .event_bus import EventBus
from .media_session import MediaSession, MediaState
from .signaling import InProcessSignalingHub

# Storage-backed services are imported by module path: database.repository imports services.errors

__all__ = [
    "TelemedicineError",
    "EventBus",
    "MediaSession",
    "MediaState",
    "InProcessSignalingHub",
]
