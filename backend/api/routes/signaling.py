import asyncio
import json
import logging
from typing import Optional
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from api.dependencies import get_coordinator, resolve_actor
from models.actor import Actor
from models.events import SessionEvent
from services.call_registry import get_call_registry
from services.errors import TelemedicineError
from services.signaling import get_signaling_hub
from utils.helpers import validate_session_id

router = APIRouter()
logger = logging.getLogger(__name__)

PEER_OF = {"patient": "provider", "provider": "patient"}

async def _authenticate(websocket: WebSocket, session_id: str, token: Optional[str]) -> Optional[Actor]:
    """Resolve the caller and check it may see the session; closes the socket otherwise"""
    if not validate_session_id(session_id):
        await websocket.close(code=4004, reason="Unknown session")
        return None
    try:
        actor = resolve_actor(token)
        coordinator = await get_coordinator()
        await coordinator.get_session(session_id, actor)
        return actor
    except TelemedicineError as e:
        logger.warning(f"Rejected websocket for session {session_id}: {e.message}")
        await websocket.close(code=4003 if e.code == "unauthorized" else 4004, reason=e.message)
        return None

@router.websocket("/api/telemedicine/signaling/{session_id}")
async def signaling_relay(
    websocket: WebSocket,
    session_id: str,
    role: str = Query(...),
    token: Optional[str] = Query(None)
):
    """Relay offer/answer/candidate/chat payloads between the two parties"""
    await websocket.accept()

    actor = await _authenticate(websocket, session_id, token)
    if actor is None:
        return
    if role not in PEER_OF or actor.role.value != role:
        await websocket.close(code=4003, reason="Role does not match credential")
        return

    registry = await get_call_registry()
    hub = await get_signaling_hub()
    try:
        await registry.connect(session_id, role)
    except RuntimeError as e:
        await websocket.close(code=4029, reason=str(e))
        return

    async def forward(payload: dict) -> None:
        await websocket.send_text(json.dumps({"type": "signal", "payload": payload}, default=str))

    unsubscribe = hub.on_message(session_id, role, forward)
    peer_role = PEER_OF[role]

    try:
        logger.info(f"📡 {role} relay open for session {session_id}")
        while True:
            raw = await websocket.receive_text()
            try:
                envelope = json.loads(raw)
                payload = envelope["payload"]
            except (json.JSONDecodeError, KeyError, TypeError):
                await websocket.send_json({"type": "error", "data": {"message": "Malformed relay frame"}})
                continue
            await hub.send(session_id, peer_role, payload)

    except WebSocketDisconnect:
        logger.info(f"🔌 {role} relay closed for session {session_id}")
    except Exception as e:
        logger.error(f"❌ Relay error on session {session_id}: {e}")
    finally:
        unsubscribe()
        await registry.disconnect(session_id, role)

@router.websocket("/api/telemedicine/events/{session_id}")
async def session_events(
    websocket: WebSocket,
    session_id: str,
    token: Optional[str] = Query(None)
):
    """Push status-changed and chat-appended events for one session"""
    await websocket.accept()

    actor = await _authenticate(websocket, session_id, token)
    if actor is None:
        return

    coordinator = await get_coordinator()
    queue: asyncio.Queue = asyncio.Queue()

    async def enqueue(event: SessionEvent) -> None:
        await queue.put(event)

    unsubscribe = coordinator.subscribe(
        enqueue,
        session_id=session_id,
        event_types=("session_status_changed", "chat_message_appended"),
    )

    async def pump() -> None:
        while True:
            event = await queue.get()
            await websocket.send_json(event.model_dump(mode="json"))

    pump_task = asyncio.create_task(pump())
    try:
        await websocket.send_json({
            "type": "connection_status",
            "data": {"status": "connected", "session_id": session_id}
        })
        # Client frames are ignored; reading detects disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"🔌 Event stream closed for session {session_id} ({actor})")
    finally:
        unsubscribe()
        pump_task.cancel()
