"""
WebSocket signaling client for client processes.
Connects to the relay endpoint and exposes the SignalingRelay interface.
"""

import asyncio
import json
import logging
import websockets
from typing import Any, Callable, Dict, Optional
from services.signaling import SignalHandler

logger = logging.getLogger(__name__)

class WebSocketSignalingClient:
    """Relay client bound to one session and one role"""

    def __init__(self, base_url: str, session_id: str, role: str, token: str):
        self.base_url = base_url.rstrip("/")
        self.session_id = session_id
        self.role = role
        self.token = token
        self.websocket: Optional[Any] = None
        self.is_connected = False
        self._handler: Optional[SignalHandler] = None
        self._listener: Optional[asyncio.Task] = None

    @property
    def url(self) -> str:
        return f"{self.base_url}/api/telemedicine/signaling/{self.session_id}?role={self.role}&token={self.token}"

    async def connect(self):
        """Connect to the signaling relay"""
        try:
            self.websocket = await websockets.connect(self.url)
            self.is_connected = True
            logger.info(f"📡 Connected to signaling relay for session {self.session_id} as {self.role}")
            self._listener = asyncio.create_task(self._listen())
        except Exception as e:
            logger.error(f"Failed to connect to signaling relay: {e}")
            self.is_connected = False
            raise

    async def disconnect(self):
        """Disconnect from the signaling relay"""
        try:
            if self._listener:
                self._listener.cancel()
            if self.websocket and self.is_connected:
                await self.websocket.close()
                self.is_connected = False
                logger.info(f"🔌 Disconnected from signaling relay for session {self.session_id}")
        except Exception as e:
            logger.error(f"Error disconnecting from signaling relay: {e}")

    async def send(self, session_id: str, peer_role: str, payload: Dict[str, Any]) -> None:
        if session_id != self.session_id:
            raise ValueError(f"Client is bound to session {self.session_id}, not {session_id}")
        if not (self.websocket and self.is_connected):
            raise ConnectionError("Signaling relay not connected")
        await self.websocket.send(json.dumps({"to": peer_role, "payload": payload}, default=str))

    def on_message(self, session_id: str, role: str, handler: SignalHandler) -> Callable[[], None]:
        self._handler = handler

        def unsubscribe() -> None:
            if self._handler is handler:
                self._handler = None

        return unsubscribe

    async def _listen(self):
        """Dispatch relayed payloads to the registered handler"""
        try:
            async for raw in self.websocket:
                try:
                    envelope = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(f"Discarding malformed relay frame on session {self.session_id}")
                    continue
                if envelope.get("type") == "error":
                    logger.error(f"Relay error: {envelope.get('data')}")
                    continue
                payload = envelope.get("payload")
                if payload is not None and self._handler:
                    await self._handler(payload)
        except websockets.exceptions.ConnectionClosed:
            logger.info(f"🔌 Signaling relay closed for session {self.session_id}")
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Error in signaling listener: {e}")
        finally:
            self.is_connected = False
