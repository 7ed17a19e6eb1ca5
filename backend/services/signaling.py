import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

SignalHandler = Callable[[Dict[str, Any]], Awaitable[None]]

class SignalingRelay(Protocol):
    """Point-to-point channel for offer/answer/candidate/chat payloads"""

    async def send(self, session_id: str, peer_role: str, payload: Dict[str, Any]) -> None:
        ...

    def on_message(self, session_id: str, role: str, handler: SignalHandler) -> Callable[[], None]:
        """Receive payloads addressed to role in session_id; returns an unsubscribe callable"""

class _Mailbox:
    """Ordered delivery to one subscriber, decoupled from the sender's task"""

    def __init__(self, key: Tuple[str, str], handler: SignalHandler):
        self.key = key
        self.handler = handler
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        while not self.closed:
            payload = await self.queue.get()
            try:
                await self.handler(payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Signal handler failed for {self.key}: {e}")
            finally:
                self.queue.task_done()

    def close(self) -> None:
        self.closed = True
        while not self.queue.empty():
            self.queue.get_nowait()
            self.queue.task_done()
        # A handler may close its own mailbox; let it finish instead of cancelling it
        if self.task is not asyncio.current_task():
            self.task.cancel()

class InProcessSignalingHub:
    """
    Room-per-session relay used by the WebSocket endpoint and by tests.

    Payloads addressed to a role with no subscriber are dropped; the
    negotiation handshake re-announces each side, so nothing waits on them.
    """

    def __init__(self):
        self._mailboxes: Dict[Tuple[str, str], _Mailbox] = {}
        self._stats = {"delivered": 0, "dropped": 0}

    async def send(self, session_id: str, peer_role: str, payload: Dict[str, Any]) -> None:
        mailbox = self._mailboxes.get((session_id, peer_role))
        if mailbox is None:
            self._stats["dropped"] += 1
            logger.debug(f"No {peer_role} on session {session_id}; dropped {payload.get('type')}")
            return
        self._stats["delivered"] += 1
        await mailbox.queue.put(payload)

    def on_message(self, session_id: str, role: str, handler: SignalHandler) -> Callable[[], None]:
        key = (session_id, role)
        previous = self._mailboxes.get(key)
        if previous is not None:
            # A reconnecting client replaces its stale subscription
            previous.close()
        mailbox = _Mailbox(key, handler)
        self._mailboxes[key] = mailbox
        logger.info(f"📡 {role} subscribed to signaling for session {session_id}")

        def unsubscribe() -> None:
            if self._mailboxes.get(key) is mailbox:
                del self._mailboxes[key]
            mailbox.close()

        return unsubscribe

    async def drain(self, session_id: Optional[str] = None) -> None:
        """Wait until queued payloads (optionally for one session) are handled"""
        for key, mailbox in list(self._mailboxes.items()):
            if session_id is None or key[0] == session_id:
                await mailbox.queue.join()

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, "subscribers": len(self._mailboxes)}

# Global relay instance
signaling_hub = InProcessSignalingHub()

async def get_signaling_hub() -> InProcessSignalingHub:
    """Get signaling hub instance"""
    return signaling_hub
