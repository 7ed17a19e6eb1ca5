from .sessions import router as sessions_router
from .signaling import router as signaling_router

__all__ = ["sessions_router", "signaling_router"]
