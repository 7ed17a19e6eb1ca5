import asyncio
import logging
import weakref
from typing import Awaitable, Callable, List, Optional, Tuple
from models.events import SessionEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[SessionEvent], Awaitable[None]]

class EventBus:
    """
    Publish/subscribe for session events.

    Delivery for one session is sequential and in publish order; different
    sessions are delivered concurrently.
    """

    def __init__(self):
        self._subscribers: List[Tuple[Optional[str], Optional[Tuple[str, ...]], EventHandler]] = []
        # A lock lives only while a publish for its session holds or awaits it
        self._session_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def subscribe(
        self,
        handler: EventHandler,
        session_id: Optional[str] = None,
        event_types: Optional[Tuple[str, ...]] = None,
    ) -> Callable[[], None]:
        """
        Register a handler, optionally scoped to one session and/or event types.

        Returns:
            A callable that removes the subscription
        """
        entry = (session_id, event_types, handler)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    async def publish(self, event: SessionEvent) -> None:
        lock = self._session_locks.get(event.session_id)
        if lock is None:
            lock = self._session_locks[event.session_id] = asyncio.Lock()
        async with lock:
            for session_id, event_types, handler in list(self._subscribers):
                if session_id is not None and session_id != event.session_id:
                    continue
                if event_types is not None and event.type not in event_types:
                    continue
                try:
                    await handler(event)
                except Exception as e:
                    # A failing view must not stall delivery to the others
                    logger.error(f"Event handler failed for {event.type} on {event.session_id}: {e}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
