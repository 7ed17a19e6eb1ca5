"""
Client-side media channel for one call.

The WebRTC engine itself (capture devices, peer connection) is injected
through the small protocols below, so the same sequencing runs against a
browser bridge, an aiortc stack or test doubles.

Negotiation contract over the signaling relay:
    ready      -> sent by each side on entering negotiating; the responder
                  answers every ready with its own so a late initiator
                  learns it is there
    offer      -> created by the initiator (provider) on seeing the peer
    answer     -> created by the responder after applying the offer
    candidate  -> applied as it arrives; buffered until a remote
                  description exists
    chat       -> best-effort mirror of a message already in the chat log
    bye        -> the peer left or the session was closed
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol
from config.settings import settings
from models.chat import Message, MessageKind, SenderRole
from services.errors import (
    AlreadyInCall, InvalidTransition, MediaAccessDenied, NegotiationFailed, TelemedicineError,
)
from services.signaling import SignalingRelay

logger = logging.getLogger(__name__)

class MediaState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    ENDED = "ended"

class MediaTrack(Protocol):
    kind: str
    enabled: bool

    def stop(self) -> None:
        ...

class LocalStream(Protocol):
    tracks: List[MediaTrack]

class MediaDevices(Protocol):
    async def get_user_media(self, audio: bool, video: bool) -> LocalStream:
        """Raises PermissionError when the user or OS refuses access"""

class PeerConnection(Protocol):
    def add_track(self, track: MediaTrack) -> None:
        ...

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        """Events: track, icecandidate, connectionstatechange"""

    async def create_offer(self) -> Dict[str, Any]:
        ...

    async def create_answer(self) -> Dict[str, Any]:
        ...

    async def set_local_description(self, description: Dict[str, Any]) -> None:
        ...

    async def set_remote_description(self, description: Dict[str, Any]) -> None:
        ...

    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None:
        ...

    async def close(self) -> None:
        ...

PeerConnectionFactory = Callable[[List[str]], PeerConnection]
ChatSink = Callable[[Message], Awaitable[Message]]

ACTIVE_STATES = (MediaState.CAPTURING, MediaState.NEGOTIATING, MediaState.CONNECTED)

class MediaSession:
    """Capture, negotiation and teardown of one peer-to-peer call"""

    def __init__(
        self,
        session_id: str,
        role: SenderRole,
        devices: MediaDevices,
        peer_factory: PeerConnectionFactory,
        relay: SignalingRelay,
        chat_sink: ChatSink,
        on_connected: Optional[Callable[["MediaSession"], Awaitable[None]]] = None,
        on_ended: Optional[Callable[["MediaSession", str], Awaitable[None]]] = None,
        on_remote_chat: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None,
        video: bool = True,
    ):
        self.session_id = session_id
        self.role = SenderRole(role)
        self.peer_role = SenderRole.PATIENT if self.role == SenderRole.PROVIDER else SenderRole.PROVIDER
        self.is_initiator = self.role == SenderRole.PROVIDER
        self.devices = devices
        self.peer_factory = peer_factory
        self.relay = relay
        self.chat_sink = chat_sink
        self.on_connected = on_connected
        self.on_ended = on_ended
        self.on_remote_chat = on_remote_chat
        self.video = video

        self.state = MediaState.IDLE
        self.muted = False
        self.video_enabled = video
        self.end_reason: Optional[str] = None
        self.failure: Optional[TelemedicineError] = None

        self._stream: Optional[LocalStream] = None
        self._pc: Optional[PeerConnection] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._offered = False
        self._remote_description_set = False
        self._pending_candidates: List[Dict[str, Any]] = []
        self._settled = asyncio.Event()
        self._watchdog: Optional[asyncio.Task] = None
        self._tasks: set = set()

    async def __aenter__(self) -> "MediaSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.teardown("scope_exit")

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    async def join(self) -> None:
        """
        Acquire local media and start negotiation.

        Returns once negotiation is under way; use wait_connected() to wait
        for the remote stream.

        Raises:
            AlreadyInCall: This MediaSession was already used
            MediaAccessDenied: Capture refused; state returns to idle
            NegotiationFailed: Torn down before negotiation could start
        """
        if self.state != MediaState.IDLE:
            raise AlreadyInCall(f"Media for session {self.session_id} is already {self.state.value}", self.session_id)

        self.state = MediaState.CAPTURING
        logger.info(f"📷 Requesting capture for session {self.session_id} ({self.role.value})")
        try:
            stream = await asyncio.wait_for(
                self.devices.get_user_media(audio=True, video=self.video),
                timeout=settings.capture_timeout_seconds,
            )
        except (PermissionError, MediaAccessDenied, asyncio.TimeoutError) as e:
            if self.state == MediaState.CAPTURING:
                self.state = MediaState.IDLE
            logger.warning(f"Capture refused for session {self.session_id}: {e!r}")
            raise MediaAccessDenied(
                "Camera/microphone access was not granted; allow access and join again",
                self.session_id,
            ) from e

        if self.state != MediaState.CAPTURING:
            # Torn down while waiting for permission
            self._release_stream(stream)
            raise NegotiationFailed(f"Call ended before negotiation ({self.end_reason})", self.session_id)

        self._stream = stream
        try:
            await self._start_negotiation()
        except Exception as e:
            failure = NegotiationFailed(f"Could not start negotiation: {e}", self.session_id)
            await self._fail(failure)
            raise failure from e

    async def _start_negotiation(self) -> None:
        self.state = MediaState.NEGOTIATING
        self._pc = self.peer_factory(list(settings.ice_servers))
        for track in self._stream.tracks:
            self._pc.add_track(track)
        self._pc.on("track", self._on_remote_track)
        self._pc.on("icecandidate", self._on_local_candidate)
        self._pc.on("connectionstatechange", self._on_connection_state)

        self._unsubscribe = self.relay.on_message(self.session_id, self.role.value, self._on_signal)
        self._watchdog = asyncio.create_task(self._negotiation_watchdog())
        logger.info(f"🤝 Negotiating session {self.session_id} as {'initiator' if self.is_initiator else 'responder'}")
        await self._send({"type": "ready"})

    async def wait_connected(self, timeout: Optional[float] = None) -> None:
        """
        Wait until the remote stream arrives.

        Raises:
            NegotiationFailed: The call ended before connecting
        """
        await asyncio.wait_for(self._settled.wait(), timeout=timeout)
        if self.state != MediaState.CONNECTED:
            raise self.failure or NegotiationFailed(
                f"Call ended before connecting ({self.end_reason})", self.session_id
            )

    async def _negotiation_watchdog(self) -> None:
        try:
            await asyncio.sleep(settings.negotiation_timeout_seconds)
        except asyncio.CancelledError:
            return
        if self.state == MediaState.NEGOTIATING:
            await self._fail(NegotiationFailed(
                f"No remote stream within {settings.negotiation_timeout_seconds}s", self.session_id
            ))

    async def _on_signal(self, payload: Dict[str, Any]) -> None:
        kind = payload.get("type")
        if kind == "chat":
            if self.on_remote_chat:
                await self.on_remote_chat(payload)
            return
        if kind == "bye":
            logger.info(f"👋 Peer left session {self.session_id}: {payload.get('reason')}")
            await self.teardown(payload.get("reason") or "remote_left", notify_peer=False)
            return
        if self.state not in (MediaState.NEGOTIATING, MediaState.CONNECTED):
            return

        try:
            if kind == "ready":
                await self._handle_ready()
            elif kind == "offer" and not self.is_initiator:
                await self._pc.set_remote_description(payload["description"])
                await self._mark_remote_description()
                answer = await self._pc.create_answer()
                await self._pc.set_local_description(answer)
                await self._send({"type": "answer", "description": answer})
            elif kind == "answer" and self.is_initiator:
                await self._pc.set_remote_description(payload["description"])
                await self._mark_remote_description()
            elif kind == "candidate":
                if self._remote_description_set:
                    await self._pc.add_ice_candidate(payload["candidate"])
                else:
                    self._pending_candidates.append(payload["candidate"])
        except Exception as e:
            logger.error(f"❌ Negotiation error on session {self.session_id}: {e}")
            await self._fail(NegotiationFailed(f"Negotiation failed: {e}", self.session_id))

    async def _handle_ready(self) -> None:
        if not self.is_initiator:
            await self._send({"type": "ready"})
            return
        if self._offered:
            return
        self._offered = True
        offer = await self._pc.create_offer()
        await self._pc.set_local_description(offer)
        await self._send({"type": "offer", "description": offer})

    async def _mark_remote_description(self) -> None:
        self._remote_description_set = True
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self._pc.add_ice_candidate(candidate)

    def _on_local_candidate(self, candidate: Optional[Dict[str, Any]]) -> None:
        if candidate is not None and self.is_active:
            self._spawn(self._send({"type": "candidate", "candidate": candidate}))

    def _on_connection_state(self, state: str) -> None:
        if state in ("failed", "closed") and self.is_active:
            reason = "connection_failed" if state == "failed" else "connection_closed"
            if self.state == MediaState.NEGOTIATING:
                self._spawn(self._fail(NegotiationFailed(f"Peer connection {state}", self.session_id)))
            else:
                self._spawn(self.teardown(reason))

    def _on_remote_track(self, track: Any = None) -> None:
        # Only the first remote stream flips the call to connected
        if self.state != MediaState.NEGOTIATING:
            return
        self.state = MediaState.CONNECTED
        if self._watchdog:
            self._watchdog.cancel()
        self._settled.set()
        logger.info(f"✅ Remote stream received for session {self.session_id} ({self.role.value})")
        if self.on_connected:
            self._spawn(self.on_connected(self))

    def toggle_mute(self) -> bool:
        self._require_connected("mute")
        self.muted = not self.muted
        for track in self._tracks("audio"):
            track.enabled = not self.muted
        return self.muted

    def toggle_video(self) -> bool:
        self._require_connected("video")
        self.video_enabled = not self.video_enabled
        for track in self._tracks("video"):
            track.enabled = self.video_enabled
        return self.video_enabled

    def _require_connected(self, control: str) -> None:
        if self.state != MediaState.CONNECTED:
            raise InvalidTransition(
                self.session_id, self.state.value, control,
                f"Call controls need a connected call (media is {self.state.value})",
            )

    def _tracks(self, kind: str) -> List[MediaTrack]:
        if self._stream is None:
            return []
        return [t for t in self._stream.tracks if t.kind == kind]

    async def send_chat(self, body: str, kind: MessageKind = MessageKind.TEXT) -> Message:
        """Append to the chat log first, then mirror to the peer without retry"""
        if not self.is_active:
            raise InvalidTransition(
                self.session_id, self.state.value, "chat",
                f"Chat through the call needs an active call (media is {self.state.value})",
            )
        stored = await self.chat_sink(Message(sender=self.role, body=body, kind=kind))
        try:
            await self.relay.send(self.session_id, self.peer_role.value, {
                "type": "chat",
                "message": stored.model_dump(mode="json"),
            })
        except Exception as e:
            logger.warning(f"Chat mirror to peer failed for session {self.session_id}: {e}")
        return stored

    async def _send(self, payload: Dict[str, Any]) -> None:
        await self.relay.send(self.session_id, self.peer_role.value, payload)

    async def _fail(self, failure: TelemedicineError) -> None:
        if self.failure is None:
            self.failure = failure
        await self.teardown("negotiation_failed")

    async def teardown(self, reason: str = "ended", notify_peer: bool = True) -> None:
        """
        The single exit routine: stop capture, close the peer connection and
        detach from the relay. Safe to call from any state, any number of times.
        """
        if self.state == MediaState.ENDED:
            return
        previous = self.state
        self.state = MediaState.ENDED
        self.end_reason = reason

        if self._watchdog and self._watchdog is not asyncio.current_task():
            self._watchdog.cancel()
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

        if self._stream is not None:
            self._release_stream(self._stream)
            self._stream = None

        if self._pc is not None:
            pc, self._pc = self._pc, None
            try:
                await pc.close()
            except Exception as e:
                logger.warning(f"Peer connection close failed for session {self.session_id}: {e}")

        self._settled.set()
        logger.info(f"🛑 Media ended for session {self.session_id} ({self.role.value}): {previous.value} -> ended, {reason}")

        if notify_peer and previous in (MediaState.NEGOTIATING, MediaState.CONNECTED):
            try:
                await self._send({"type": "bye", "reason": reason})
            except Exception as e:
                logger.warning(f"Could not notify peer on session {self.session_id}: {e}")

        if self.on_ended:
            try:
                await self.on_ended(self, reason)
            except Exception as e:
                logger.error(f"on_ended callback failed for session {self.session_id}: {e}")

    def _release_stream(self, stream: LocalStream) -> None:
        for track in stream.tracks:
            try:
                track.stop()
            except Exception as e:
                logger.warning(f"Track stop failed for session {self.session_id}: {e}")

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
