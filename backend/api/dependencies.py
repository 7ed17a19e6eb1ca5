import logging
from typing import Optional
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from config.settings import settings
from database.connection import get_database
from database.repository import InMemorySessionRepository, MongoSessionRepository, SessionRepository
from models.actor import Actor
from services.collaborators import MongoBillingOutbox, MongoRecordsOutbox, StaticTokenIdentityProvider
from services.coordinator import SessionCoordinator
from services.errors import Unauthorized
from services.event_bus import EventBus
from services.signaling import get_signaling_hub

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

_identity: Optional[StaticTokenIdentityProvider] = None
_coordinator: Optional[SessionCoordinator] = None

def get_identity_provider() -> StaticTokenIdentityProvider:
    """Get identity provider instance"""
    global _identity
    if _identity is None:
        _identity = StaticTokenIdentityProvider(settings.auth_tokens)
    return _identity

async def get_coordinator() -> SessionCoordinator:
    """Get the server-side coordinator (no local media; clients negotiate over the relay)"""
    global _coordinator
    if _coordinator is None:
        repository: SessionRepository
        billing = records = None
        if settings.storage_backend == "memory":
            logger.warning("Using in-memory session storage; data is lost on restart")
            repository = InMemorySessionRepository()
        else:
            db = await get_database()
            repository = MongoSessionRepository(db)
            billing = MongoBillingOutbox(db)
            records = MongoRecordsOutbox(db)
        _coordinator = SessionCoordinator(
            repository=repository,
            identity=get_identity_provider(),
            event_bus=EventBus(),
            relay=await get_signaling_hub(),
            billing=billing,
            records=records,
        )
    return _coordinator

def reset_coordinator() -> None:
    global _coordinator, _identity
    _coordinator = None
    _identity = None

def resolve_actor(token: Optional[str]) -> Actor:
    return get_identity_provider().resolve(token)

async def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Actor:
    """Resolve the bearer credential to an actor"""
    if credentials is None:
        raise Unauthorized("Missing bearer credential")
    return resolve_actor(credentials.credentials)
