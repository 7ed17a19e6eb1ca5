import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from functools import wraps
from typing import Any, Dict, Iterable, List, Optional
from pymongo import ReturnDocument, DESCENDING
from pymongo.errors import PyMongoError, DuplicateKeyError
from models.session import Session, utc_now
from services.errors import InfrastructureError, TelemedicineError
from database.connection import DatabaseManager

logger = logging.getLogger(__name__)

# Array fields that keep a positional counter beside them
_COUNTERS = {
    "chat_history": "chat_count",
    "technical_issues": "issue_count",
}

class SessionRepository(ABC):
    """
    Persistence contract for session records.

    Every mutation is a single atomic compare-and-set against the stored
    status, so concurrent actors serialize on the record itself.
    """

    @abstractmethod
    async def insert(self, session: Session) -> None:
        ...

    @abstractmethod
    async def get(self, session_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def find(
        self,
        patient_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 200,
    ) -> List[Session]:
        """Sessions matching every given filter, newest scheduled time first"""

    @abstractmethod
    async def compare_and_set(
        self,
        session_id: str,
        expected_statuses: Iterable[str],
        updates: Dict[str, Any],
        require_absent: Iterable[str] = (),
    ) -> Optional[Session]:
        """
        Apply dotted-path updates only if status is one of expected_statuses
        and every require_absent field is still null.

        Returns:
            The updated session, or None when the guard did not hold
        """

    @abstractmethod
    async def push(
        self,
        session_id: str,
        field: str,
        value: Dict[str, Any],
        expected_statuses: Optional[Iterable[str]] = None,
    ) -> Optional[int]:
        """
        Append value to an array field.

        Returns:
            The new array length (1-based position of value), or None when
            the session is missing or the status guard did not hold
        """

def _wrap_storage_errors(func):
    """Surface driver faults as InfrastructureError"""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except TelemedicineError:
            raise
        except PyMongoError as e:
            logger.error(f"Storage failure in {func.__name__}: {e}")
            raise InfrastructureError(f"Session storage unavailable: {e}") from e
    return wrapper

class MongoSessionRepository(SessionRepository):
    """Session repository backed by the telemedicine_sessions collection"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    @property
    def collection(self):
        return self.db.telemedicine_sessions

    @_wrap_storage_errors
    async def insert(self, session: Session) -> None:
        try:
            await self.collection.insert_one(session.to_document())
        except DuplicateKeyError as e:
            raise InfrastructureError(f"Duplicate session id {session.session_id}", session.session_id) from e

    @_wrap_storage_errors
    async def get(self, session_id: str) -> Optional[Session]:
        doc = await self.collection.find_one({"session_id": session_id})
        return Session.from_document(doc) if doc else None

    @_wrap_storage_errors
    async def find(self, patient_id=None, provider_id=None, status=None, limit=200) -> List[Session]:
        query: Dict[str, Any] = {}
        if patient_id:
            query["patient_id"] = patient_id
        if provider_id:
            query["provider_id"] = provider_id
        if status:
            query["status"] = status
        docs = await self.collection.find(query).sort("scheduled_time", DESCENDING).to_list(limit)
        return [Session.from_document(doc) for doc in docs]

    @_wrap_storage_errors
    async def compare_and_set(self, session_id, expected_statuses, updates, require_absent=()) -> Optional[Session]:
        query: Dict[str, Any] = {
            "session_id": session_id,
            "status": {"$in": list(expected_statuses)},
        }
        for field in require_absent:
            query[field] = None
        doc = await self.collection.find_one_and_update(
            query,
            {"$set": {**updates, "updated_at": utc_now()}},
            return_document=ReturnDocument.AFTER,
        )
        return Session.from_document(doc) if doc else None

    @_wrap_storage_errors
    async def push(self, session_id, field, value, expected_statuses=None) -> Optional[int]:
        counter = _COUNTERS[field]
        query: Dict[str, Any] = {"session_id": session_id}
        if expected_statuses is not None:
            query["status"] = {"$in": list(expected_statuses)}
        doc = await self.collection.find_one_and_update(
            query,
            {
                "$push": {field: value},
                "$inc": {counter: 1},
                "$set": {"updated_at": utc_now()},
            },
            projection={counter: 1},
            return_document=ReturnDocument.AFTER,
        )
        return doc[counter] if doc else None

def _get_path(doc: Dict[str, Any], path: str) -> Any:
    node: Any = doc
    for part in path.split("."):
        if isinstance(node, list):
            node = node[int(part)]
        elif isinstance(node, dict):
            node = node.get(part)
        else:
            return None
        if node is None:
            return None
    return node

def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    node: Any = doc
    for part in parts[:-1]:
        if isinstance(node, list):
            node = node[int(part)]
        else:
            if node.get(part) is None:
                node[part] = {}
            node = node[part]
    if isinstance(node, list):
        node[int(parts[-1])] = value
    else:
        node[parts[-1]] = value

class InMemorySessionRepository(SessionRepository):
    """
    Memory-based session repository with per-session locks.
    Used for local runs without MongoDB and by the test suite.
    """

    def __init__(self):
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def insert(self, session: Session) -> None:
        async with self._lock_for(session.session_id):
            if session.session_id in self._documents:
                raise InfrastructureError(f"Duplicate session id {session.session_id}", session.session_id)
            self._documents[session.session_id] = session.to_document()

    async def get(self, session_id: str) -> Optional[Session]:
        if session_id not in self._documents:
            return None
        async with self._lock_for(session_id):
            return Session.from_document(copy.deepcopy(self._documents[session_id]))

    async def find(self, patient_id=None, provider_id=None, status=None, limit=200) -> List[Session]:
        matches = []
        for doc in list(self._documents.values()):
            if patient_id and doc["patient_id"] != patient_id:
                continue
            if provider_id and doc["provider_id"] != provider_id:
                continue
            if status and doc["status"] != status:
                continue
            matches.append(Session.from_document(copy.deepcopy(doc)))
        matches.sort(key=lambda s: s.scheduled_time, reverse=True)
        return matches[:limit]

    async def compare_and_set(self, session_id, expected_statuses, updates, require_absent=()) -> Optional[Session]:
        if session_id not in self._documents:
            return None
        async with self._lock_for(session_id):
            doc = self._documents[session_id]
            if doc["status"] not in set(expected_statuses):
                return None
            if any(_get_path(doc, field) is not None for field in require_absent):
                return None
            updated = copy.deepcopy(doc)
            for path, value in updates.items():
                _set_path(updated, path, copy.deepcopy(value))
            updated["updated_at"] = utc_now()
            # Validate before committing so a bad update leaves the record untouched
            session = Session.from_document(copy.deepcopy(updated))
            self._documents[session_id] = updated
            return session

    async def push(self, session_id, field, value, expected_statuses=None) -> Optional[int]:
        if session_id not in self._documents:
            return None
        async with self._lock_for(session_id):
            doc = self._documents[session_id]
            if expected_statuses is not None and doc["status"] not in set(expected_statuses):
                return None
            doc.setdefault(field, []).append(copy.deepcopy(value))
            counter = _COUNTERS[field]
            doc[counter] = doc.get(counter, 0) + 1
            doc["updated_at"] = utc_now()
            return doc[counter]
