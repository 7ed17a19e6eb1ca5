import logging
from typing import Iterable, List, Optional
from database.repository import SessionRepository
from models.chat import Message
from models.events import ChatMessageAppended
from services.errors import SessionClosed, SessionNotFound
from services.event_bus import EventBus

logger = logging.getLogger(__name__)

class ChatLog:
    """Append-only, per-session message sequence"""

    def __init__(self, repository: SessionRepository, event_bus: EventBus):
        self.repository = repository
        self.event_bus = event_bus

    async def append(
        self, session_id: str, message: Message, allowed_statuses: Optional[Iterable[str]] = None
    ) -> Message:
        """
        Store a message at the next sequence position.

        The storage push is atomic per session and checks allowed_statuses
        in the same write, so the returned position is the message's
        permanent place in every later replay.

        Raises:
            SessionNotFound: Unknown session
            SessionClosed: Status left allowed_statuses before the write
        """
        sequence = await self.repository.push(
            session_id, "chat_history", message.model_dump(exclude={"sequence"}), allowed_statuses
        )
        if sequence is None:
            session = await self.repository.get(session_id)
            if session is None:
                raise SessionNotFound(f"Session {session_id} not found", session_id)
            raise SessionClosed(f"Chat is closed for a {session.status} session", session_id)

        stored = message.model_copy(update={"sequence": sequence})
        logger.debug(f"Chat #{sequence} appended to session {session_id} by {stored.sender}")
        await self.event_bus.publish(ChatMessageAppended(session_id=session_id, message=stored))
        return stored

    async def replay(self, session_id: str) -> List[Message]:
        """Full ordered history, including messages sent before the viewer joined"""
        session = await self.repository.get(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found", session_id)
        return session.chat_history
