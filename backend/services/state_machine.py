import logging
from typing import Any, Dict, Iterable, Optional
from database.repository import SessionRepository
from models.events import SessionStatusChanged
from models.session import Session, SessionStatus, TERMINAL_STATUSES
from services.errors import InvalidTransition, SessionNotFound
from services.event_bus import EventBus

logger = logging.getLogger(__name__)

PENDING = SessionStatus.PENDING.value
SCHEDULED = SessionStatus.SCHEDULED.value
REJECTED = SessionStatus.REJECTED.value
ONGOING = SessionStatus.ONGOING.value
COMPLETED = SessionStatus.COMPLETED.value
CANCELLED = SessionStatus.CANCELLED.value

# target -> legal sources
TRANSITIONS: Dict[str, frozenset] = {
    SCHEDULED: frozenset({PENDING}),
    REJECTED: frozenset({PENDING}),
    ONGOING: frozenset({SCHEDULED}),
    COMPLETED: frozenset({ONGOING}),
    CANCELLED: frozenset({PENDING, SCHEDULED, ONGOING}),
}

def is_legal(current: str, target: str) -> bool:
    return current in TRANSITIONS.get(target, frozenset())

class SessionStateMachine:
    """
    Owns the canonical session status.

    Every transition is one compare-and-set on the stored status, so the
    status and its accompanying fields land together or not at all, and of
    two racing callers exactly one wins.
    """

    def __init__(self, repository: SessionRepository, event_bus: EventBus):
        self.repository = repository
        self.event_bus = event_bus

    async def get(self, session_id: str) -> Session:
        session = await self.repository.get(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found", session_id)
        return session

    async def transition(
        self,
        session_id: str,
        target: SessionStatus,
        fields: Optional[Dict[str, Any]] = None,
        from_statuses: Optional[Iterable[str]] = None,
        require_absent: Iterable[str] = (),
        actor: Optional[str] = None,
    ) -> Session:
        """
        Move a session to target, writing fields in the same atomic update.

        Args:
            session_id: Session identifier
            target: Desired status
            fields: Dotted-path fields written together with the status
            from_statuses: Narrow the legal sources further (never widen)
            require_absent: Fields that must still be unset (write-once guards)
            actor: Caller description for the emitted event

        Returns:
            The session as stored after the transition

        Raises:
            SessionNotFound: Unknown session
            InvalidTransition: Current status is not a legal source for target
        """
        target_value = SessionStatus(target).value
        sources = TRANSITIONS[target_value]
        if from_statuses is not None:
            sources = sources & frozenset(from_statuses)

        updates = dict(fields or {})
        updates["status"] = target_value

        while True:
            current = await self.get(session_id)
            if current.status not in sources:
                logger.warning(f"Rejected transition {current.status} -> {target_value} for session {session_id}")
                reason = None
                if current.status in TERMINAL_STATUSES:
                    reason = f"Session is {current.status}; no transition out of a terminal state"
                raise InvalidTransition(session_id, current.status, target_value, reason)

            # Guard on the status just observed; a concurrent change forces a re-read
            updated = await self.repository.compare_and_set(
                session_id, [current.status], updates, require_absent
            )
            if updated is not None:
                break
            if require_absent and (await self.get(session_id)).status == current.status:
                raise InvalidTransition(
                    session_id, current.status, target_value,
                    f"Write-once field already set on session {session_id}",
                )

        previous = current.status
        logger.info(f"Session {session_id}: {previous} -> {target_value}" + (f" by {actor}" if actor else ""))
        await self.event_bus.publish(SessionStatusChanged(
            session_id=session_id,
            previous_status=previous,
            status=target_value,
            actor=actor,
        ))
        return updated


    async def annotate(
        self,
        session_id: str,
        allowed_statuses: Iterable[str],
        fields: Dict[str, Any],
        require_absent: Iterable[str] = (),
    ) -> Session:
        """
        Write non-status fields while the session is in one of allowed_statuses.

        Raises:
            SessionNotFound: Unknown session
            InvalidTransition: Status guard or write-once guard did not hold
        """
        updated = await self.repository.compare_and_set(session_id, allowed_statuses, fields, require_absent)
        if updated is None:
            current = await self.get(session_id)
            raise InvalidTransition(
                session_id, current.status, current.status,
                f"Cannot update {', '.join(fields)} while session is {current.status}",
            )
        return updated
