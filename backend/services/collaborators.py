"""
Narrow interfaces to the systems around the session core: identity,
billing and clinical records. The core never computes fees or stores
prescription documents; it only hands finalize events across.
"""

import logging
from typing import Dict, Optional, Protocol
from pymongo.errors import DuplicateKeyError, PyMongoError
from database.connection import DatabaseManager
from models.actor import Actor, Role
from models.events import FinalizeEvent
from models.session import Session
from services.errors import InfrastructureError, Unauthorized

logger = logging.getLogger(__name__)

class IdentityProvider(Protocol):
    def resolve(self, credential: str) -> Actor:
        ...

    def is_authorized_reviewer(self, actor: Actor, session: Session) -> bool:
        ...

class BillingCollaborator(Protocol):
    async def finalize(self, event: FinalizeEvent) -> None:
        ...

class RecordsCollaborator(Protocol):
    async def finalize(self, event: FinalizeEvent) -> None:
        ...

class StaticTokenIdentityProvider:
    """Resolves bearer tokens from a configured token -> "role:identity" table"""

    def __init__(self, tokens: Dict[str, str]):
        self._actors: Dict[str, Actor] = {}
        for token, entry in tokens.items():
            role, _, identity = entry.partition(":")
            self._actors[token] = Actor(role=Role(role), identity=identity)

    def resolve(self, credential: Optional[str]) -> Actor:
        actor = self._actors.get(credential or "")
        if actor is None:
            raise Unauthorized("Unknown or missing credential")
        return actor

    def is_authorized_reviewer(self, actor: Actor, session: Session) -> bool:
        if actor.role == Role.ADMIN:
            return True
        return actor.role == Role.PROVIDER and actor.identity == session.provider_id

class MongoBillingOutbox:
    """Queues billing finalize records for the external invoicing service"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def finalize(self, event: FinalizeEvent) -> None:
        await _write_once(self.db.billing_outbox, event.billing_payload(), "billing")

class MongoRecordsOutbox:
    """Queues clinical output for the external prescription/records service"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def finalize(self, event: FinalizeEvent) -> None:
        await _write_once(self.db.records_outbox, event.records_payload(), "records")

async def _write_once(collection, payload: dict, label: str) -> None:
    try:
        await collection.insert_one({**payload, "delivered": False})
        logger.info(f"Queued {label} finalize record for session {payload['session_id']}")
    except DuplicateKeyError:
        logger.warning(f"{label} finalize record already queued for session {payload['session_id']}")
    except PyMongoError as e:
        raise InfrastructureError(f"{label} outbox unavailable: {e}", payload["session_id"]) from e
