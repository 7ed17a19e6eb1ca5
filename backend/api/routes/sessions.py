from typing import List, Optional
from fastapi import APIRouter, Depends
from api.dependencies import get_coordinator, get_current_actor
from models.actor import Actor
from models.chat import ChatMessageCreate, Message
from models.session import (
    EndSessionRequest, RatingRequest, ReviewRequest, Session, SessionCreate, SessionResponse,
    TechnicalIssueCreate,
)
from services.call_registry import CallRegistry, get_call_registry
from services.coordinator import SessionCoordinator
from services.signaling import InProcessSignalingHub, get_signaling_hub

router = APIRouter(prefix="/api/telemedicine", tags=["telemedicine"])

@router.post("/sessions", response_model=Session, status_code=201)
async def create_session(
    request: SessionCreate,
    actor: Actor = Depends(get_current_actor),
    coordinator: SessionCoordinator = Depends(get_coordinator)
):
    """Request a new telemedicine session (starts pending review)"""
    return await coordinator.create_session(actor, request)

@router.get("/sessions", response_model=List[Session])
async def list_sessions(
    patient_id: Optional[str] = None,
    provider_id: Optional[str] = None,
    actor: Actor = Depends(get_current_actor),
    coordinator: SessionCoordinator = Depends(get_coordinator)
):
    """Patients and providers see their own sessions; admins may filter all"""
    return await coordinator.list_sessions(actor, patient_id=patient_id, provider_id=provider_id)

@router.get("/sessions/pending", response_model=List[Session])
async def list_pending_sessions(
    actor: Actor = Depends(get_current_actor),
    coordinator: SessionCoordinator = Depends(get_coordinator)
):
    """Sessions awaiting this reviewer's decision"""
    return await coordinator.list_pending_reviews(actor)

@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    actor: Actor = Depends(get_current_actor),
    coordinator: SessionCoordinator = Depends(get_coordinator)
):
    """Get a session with its chat replay"""
    session, chat = await coordinator.get_session(session_id, actor)
    return SessionResponse(session=session, chat=chat)

@router.post("/sessions/{session_id}/review", response_model=Session)
async def review_session(
    session_id: str,
    request: ReviewRequest,
    actor: Actor = Depends(get_current_actor),
    coordinator: SessionCoordinator = Depends(get_coordinator)
):
    return await coordinator.review(session_id, actor, request.decision, request.note)

@router.post("/sessions/{session_id}/join", response_model=Session)
async def join_session(
    session_id: str,
    actor: Actor = Depends(get_current_actor),
    coordinator: SessionCoordinator = Depends(get_coordinator)
):
    """Record a party's join; media negotiation then runs over the signaling relay"""
    return await coordinator.register_join(session_id, actor)

@router.post("/sessions/{session_id}/connected", response_model=Session)
async def report_connected(
    session_id: str,
    actor: Actor = Depends(get_current_actor),
    coordinator: SessionCoordinator = Depends(get_coordinator)
):
    """Client received the remote stream; the first report starts the session"""
    return await coordinator.confirm_connected(session_id, actor)

@router.post("/sessions/{session_id}/end", response_model=Session)
async def end_session(
    session_id: str,
    request: EndSessionRequest,
    actor: Actor = Depends(get_current_actor),
    coordinator: SessionCoordinator = Depends(get_coordinator)
):
    return await coordinator.end_session(session_id, actor, request.clinical_output)

@router.post("/sessions/{session_id}/cancel", response_model=Session)
async def cancel_session(
    session_id: str,
    actor: Actor = Depends(get_current_actor),
    coordinator: SessionCoordinator = Depends(get_coordinator)
):
    return await coordinator.cancel(session_id, actor)

@router.get("/sessions/{session_id}/messages", response_model=List[Message])
async def replay_messages(
    session_id: str,
    actor: Actor = Depends(get_current_actor),
    coordinator: SessionCoordinator = Depends(get_coordinator)
):
    _, chat = await coordinator.get_session(session_id, actor)
    return chat

@router.post("/sessions/{session_id}/messages", response_model=Message, status_code=201)
async def send_message(
    session_id: str,
    request: ChatMessageCreate,
    actor: Actor = Depends(get_current_actor),
    coordinator: SessionCoordinator = Depends(get_coordinator)
):
    return await coordinator.send_chat_message(session_id, actor, request.body, request.kind)

@router.post("/sessions/{session_id}/rating", response_model=Session)
async def rate_session(
    session_id: str,
    request: RatingRequest,
    actor: Actor = Depends(get_current_actor),
    coordinator: SessionCoordinator = Depends(get_coordinator)
):
    return await coordinator.rate_session(session_id, actor, request.rating)

@router.post("/sessions/{session_id}/issues", response_model=Session, status_code=201)
async def report_issue(
    session_id: str,
    request: TechnicalIssueCreate,
    actor: Actor = Depends(get_current_actor),
    coordinator: SessionCoordinator = Depends(get_coordinator)
):
    return await coordinator.report_technical_issue(session_id, actor, request.issue)

@router.post("/sessions/{session_id}/issues/{index}/resolve", response_model=Session)
async def resolve_issue(
    session_id: str,
    index: int,
    actor: Actor = Depends(get_current_actor),
    coordinator: SessionCoordinator = Depends(get_coordinator)
):
    return await coordinator.resolve_technical_issue(session_id, actor, index)

@router.get("/stats", response_model=dict)
async def get_call_stats(
    registry: CallRegistry = Depends(get_call_registry),
    hub: InProcessSignalingHub = Depends(get_signaling_hub)
):
    """Live call and relay statistics for monitoring"""
    return {
        "calls": await registry.get_stats(),
        "active_calls": await registry.get_active_calls(),
        "signaling": hub.get_stats()
    }
