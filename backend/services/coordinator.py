import logging
import time
import uuid
from typing import Dict, List, Optional, Tuple
from config.settings import settings
from database.repository import SessionRepository
from models.actor import Actor, Role
from models.chat import Message, MessageKind, SenderRole
from models.events import ChatMessageAppended, FinalizeEvent
from models.session import (
    Session, SessionCreate, SessionStatus, ClinicalOutput, ReviewDecision, TechnicalIssue, utc_now,
)
from services.approval import ApprovalWorkflow
from services.chat_log import ChatLog
from services.collaborators import BillingCollaborator, IdentityProvider, RecordsCollaborator
from services.errors import (
    AlreadyInCall, InvalidTransition, IssueNotFound, SessionClosed, Unauthorized,
)
from services.event_bus import EventBus, EventHandler
from services.media_session import MediaDevices, MediaSession, PeerConnectionFactory
from services.signaling import SignalingRelay
from services.state_machine import SessionStateMachine, PENDING, SCHEDULED, ONGOING, COMPLETED
from utils.helpers import format_duration

logger = logging.getLogger(__name__)

ALL_STATUSES = [s.value for s in SessionStatus]
CHAT_STATUSES = (SCHEDULED, ONGOING)
JOINABLE_STATUSES = (SCHEDULED, ONGOING)
ISSUE_STATUSES = (PENDING, SCHEDULED, ONGOING, COMPLETED)

def _new_room_id() -> str:
    return f"room_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"

class SessionCoordinator:
    """
    Single entry point for patient, provider and admin clients.

    Holds no session state of its own: status lives in the repository and
    every change goes through the state machine. The only local state is
    the media channel owned by this client process, if any.
    """

    def __init__(
        self,
        repository: SessionRepository,
        identity: IdentityProvider,
        event_bus: Optional[EventBus] = None,
        relay: Optional[SignalingRelay] = None,
        devices: Optional[MediaDevices] = None,
        peer_factory: Optional[PeerConnectionFactory] = None,
        billing: Optional[BillingCollaborator] = None,
        records: Optional[RecordsCollaborator] = None,
    ):
        self.repository = repository
        self.identity = identity
        self.event_bus = event_bus or EventBus()
        self.relay = relay
        self.devices = devices
        self.peer_factory = peer_factory
        self.billing = billing
        self.records = records

        self.state_machine = SessionStateMachine(repository, self.event_bus)
        self.approval = ApprovalWorkflow(self.state_machine, identity)
        self.chat_log = ChatLog(repository, self.event_bus)
        self._media: Dict[str, MediaSession] = {}

    def subscribe(self, handler: EventHandler, session_id: Optional[str] = None, event_types=None):
        """Status-changed, chat-appended and finalize events for views"""
        return self.event_bus.subscribe(handler, session_id=session_id, event_types=event_types)

    # Queries

    async def get_session(self, session_id: str, actor: Actor) -> Tuple[Session, List[Message]]:
        session = await self.state_machine.get(session_id)
        self._require_party_or_admin(session, actor)
        return session, session.chat_history

    async def list_pending_reviews(self, actor: Actor) -> List[Session]:
        if actor.role == Role.ADMIN:
            return await self.repository.find(status=PENDING)
        if actor.role == Role.PROVIDER:
            return await self.repository.find(provider_id=actor.identity, status=PENDING)
        raise Unauthorized(f"{actor} cannot review sessions")

    async def list_sessions(
        self,
        actor: Actor,
        patient_id: Optional[str] = None,
        provider_id: Optional[str] = None,
    ) -> List[Session]:
        if actor.role == Role.PATIENT:
            return await self.repository.find(patient_id=actor.identity)
        if actor.role == Role.PROVIDER:
            return await self.repository.find(provider_id=actor.identity)
        return await self.repository.find(patient_id=patient_id, provider_id=provider_id)

    # Commands

    async def create_session(self, actor: Actor, request: SessionCreate) -> Session:
        """Open a pending session request; fee is quoted externally and fixed here"""
        if actor.role == Role.PATIENT:
            if request.patient_id and request.patient_id != actor.identity:
                raise Unauthorized(f"{actor} cannot request sessions for another patient")
            patient_id = actor.identity
        elif actor.role == Role.ADMIN:
            if not request.patient_id:
                raise ValueError("patient_id is required when an admin creates a session")
            patient_id = request.patient_id
        else:
            raise Unauthorized(f"{actor} cannot create session requests")

        session = Session(
            session_id=str(uuid.uuid4()),
            room_id=_new_room_id(),
            patient_id=patient_id,
            provider_id=request.provider_id,
            session_type=request.session_type,
            scheduled_time=request.scheduled_time,
            duration=request.duration or settings.default_session_duration_minutes,
            fee=request.fee,
        )
        await self.repository.insert(session)
        logger.info(f"📝 Created session {session.session_id} for {patient_id} with {request.provider_id}")
        return session

    async def review(
        self, session_id: str, reviewer: Actor, decision: ReviewDecision, note: Optional[str] = None
    ) -> Session:
        return await self.approval.review(session_id, reviewer, decision, note)

    async def register_join(self, session_id: str, actor: Actor) -> Session:
        """
        Validate a join and record which party joined, without touching status.

        Raises:
            Unauthorized: Caller is not a party to the session
            InvalidTransition: Session is not scheduled (or already ongoing, for a rejoin)
        """
        session = await self.state_machine.get(session_id)
        role = self._require_party(session, actor)
        if session.status not in JOINABLE_STATUSES:
            raise InvalidTransition(session_id, session.status, ONGOING)
        return await self.state_machine.annotate(
            session_id, JOINABLE_STATUSES, {f"call.{role.value}_joined": True}
        )

    async def request_join(self, session_id: str, actor: Actor, video: bool = True) -> MediaSession:
        """
        Capture local media and start negotiating the call.

        Returns as soon as negotiation is under way; the session becomes
        ongoing when the first side receives the remote stream.

        Raises:
            InvalidTransition: Session is not joinable
            Unauthorized: Caller is not a party to the session
            AlreadyInCall: This client already holds an active call
            MediaAccessDenied: Capture refused; session status unchanged
        """
        if self.devices is None or self.peer_factory is None or self.relay is None:
            raise RuntimeError("This coordinator has no media stack; use register_join")

        session = await self.state_machine.get(session_id)
        role = self._require_party(session, actor)
        if session.status not in JOINABLE_STATUSES:
            raise InvalidTransition(session_id, session.status, ONGOING)

        active = next((m for m in self._media.values() if m.is_active), None)
        if active is not None:
            raise AlreadyInCall(f"Already in call for session {active.session_id}", session_id)

        media = MediaSession(
            session_id=session_id,
            role=role,
            devices=self.devices,
            peer_factory=self.peer_factory,
            relay=self.relay,
            chat_sink=lambda message: self.chat_log.append(session_id, message, CHAT_STATUSES),
            on_connected=lambda m: self._on_media_connected(m, actor),
            on_ended=self._on_media_ended,
            on_remote_chat=lambda payload: self._on_remote_chat(session_id, payload),
            video=video,
        )
        self._media[session_id] = media

        try:
            await media.join()
            await self.register_join(session_id, actor)
        except Exception:
            await media.teardown("join_failed")
            raise

        logger.info(f"📞 {actor} joined session {session_id}")
        return media

    async def confirm_connected(self, session_id: str, actor: Actor) -> Session:
        """
        Record that actor's side received the remote stream.

        First caller moves scheduled -> ongoing; later callers see ongoing and
        return unchanged. The compare-and-set makes the move happen once.
        """
        session = await self.state_machine.get(session_id)
        self._require_party(session, actor)
        try:
            return await self.state_machine.transition(
                session_id,
                SessionStatus.ONGOING,
                fields={"call.actual_start": utc_now()},
                actor=str(actor),
            )
        except InvalidTransition as e:
            if e.current == ONGOING:
                logger.info(f"Session {session_id} already ongoing; {actor} connected")
                return await self.state_machine.get(session_id)
            raise

    async def _on_media_connected(self, media: MediaSession, actor: Actor) -> None:
        try:
            await self.confirm_connected(media.session_id, actor)
        except InvalidTransition as e:
            # Cancelled (or otherwise closed) while negotiating
            logger.warning(f"Connected after session {media.session_id} became {e.current}; tearing down")
            await media.teardown(f"session_{e.current}")

    async def _on_remote_chat(self, session_id: str, payload: dict) -> None:
        # Already persisted by the sender; surface it to local views
        try:
            message = Message.model_validate(payload["message"])
        except (KeyError, ValueError) as e:
            logger.warning(f"Ignoring malformed chat mirror on session {session_id}: {e}")
            return
        await self.event_bus.publish(ChatMessageAppended(session_id=session_id, message=message))

    async def _on_media_ended(self, media: MediaSession, reason: str) -> None:
        if self._media.get(media.session_id) is media:
            del self._media[media.session_id]

    async def leave_call(self, session_id: str, actor: Actor) -> None:
        """Drop this client's media without changing session status"""
        session = await self.state_machine.get(session_id)
        self._require_party(session, actor)
        media = self._media.get(session_id)
        if media is not None:
            await media.teardown("left")

    async def end_session(self, session_id: str, actor: Actor, clinical_output: ClinicalOutput) -> Session:
        """
        Complete an ongoing session and write its clinical output once.

        Raises:
            Unauthorized: Caller is not the assigned provider or an admin
            InvalidTransition: Session is not ongoing
        """
        session = await self.state_machine.get(session_id)
        if not (actor.is_admin or (actor.role == Role.PROVIDER and actor.identity == session.provider_id)):
            raise Unauthorized(f"{actor} cannot end session {session_id}", session_id)

        completed_at = utc_now()
        try:
            updated = await self.state_machine.transition(
                session_id,
                SessionStatus.COMPLETED,
                fields={
                    "clinical": clinical_output.model_dump(),
                    "call.actual_end": completed_at,
                },
                require_absent=["clinical"],
                actor=str(actor),
            )
        except InvalidTransition as e:
            if e.current in (COMPLETED, SessionStatus.CANCELLED.value):
                await self._close_call(session_id, f"session_{e.current}")
            raise

        await self._close_call(session_id, "session_completed", notify_roles=[r.value for r in SenderRole])

        event = FinalizeEvent(
            session_id=session_id,
            fee=updated.fee,
            completed_at=completed_at,
            prescription_notes=clinical_output.prescription_notes,
            follow_up_required=clinical_output.follow_up_required,
            follow_up_date=clinical_output.follow_up_date,
        )
        await self.event_bus.publish(event)
        if self.billing:
            await self.billing.finalize(event)
        if self.records:
            await self.records.finalize(event)
        started = updated.call.actual_start
        duration = format_duration((completed_at - started).total_seconds()) if started else "n/a"
        logger.info(f"🏁 Session {session_id} completed after {duration} and finalized")
        return updated

    async def cancel(self, session_id: str, actor: Actor) -> Session:
        """
        Cancel from any non-terminal state, pre-empting joins in flight.

        Admins may cancel at any point; a party may withdraw only before the
        call starts.
        """
        session = await self.state_machine.get(session_id)
        from_statuses = None
        if not actor.is_admin:
            self._require_party(session, actor)
            from_statuses = [PENDING, SCHEDULED]

        updated = await self.state_machine.transition(
            session_id,
            SessionStatus.CANCELLED,
            fields={"cancelled_by": str(actor), "cancelled_at": utc_now()},
            from_statuses=from_statuses,
            actor=str(actor),
        )
        await self._close_call(session_id, "session_cancelled", notify_roles=[r.value for r in SenderRole])
        return updated

    async def _close_call(self, session_id: str, reason: str, notify_roles: Optional[List[str]] = None) -> None:
        media = self._media.get(session_id)
        if media is not None:
            await media.teardown(reason)
        if self.relay is not None and notify_roles:
            for role in notify_roles:
                if media is not None and role == media.role.value:
                    continue
                try:
                    await self.relay.send(session_id, role, {"type": "bye", "reason": reason})
                except Exception as e:
                    logger.warning(f"Could not notify {role} on session {session_id}: {e}")

    async def send_chat_message(
        self, session_id: str, actor: Actor, body: str, kind: MessageKind = MessageKind.TEXT
    ) -> Message:
        """Append to the session's chat log, mirroring through the call when one is active"""
        session = await self.state_machine.get(session_id)
        role = self._require_party(session, actor)
        if session.status not in CHAT_STATUSES:
            raise SessionClosed(f"Chat is closed for a {session.status} session", session_id)
        if len(body) > settings.max_chat_message_length:
            raise ValueError(f"Message exceeds {settings.max_chat_message_length} characters")

        media = self._media.get(session_id)
        if media is not None and media.is_active:
            return await media.send_chat(body, kind)
        return await self.chat_log.append(
            session_id, Message(sender=role, body=body, kind=kind), CHAT_STATUSES
        )

    def toggle_mute(self, session_id: str) -> bool:
        return self._require_media(session_id).toggle_mute()

    def toggle_video(self, session_id: str) -> bool:
        return self._require_media(session_id).toggle_video()

    def media_for(self, session_id: str) -> Optional[MediaSession]:
        return self._media.get(session_id)

    async def rate_session(self, session_id: str, actor: Actor, rating: int) -> Session:
        session = await self.state_machine.get(session_id)
        if not (actor.role == Role.PATIENT and actor.identity == session.patient_id):
            raise Unauthorized("Only the session's patient may rate it", session_id)
        if not 1 <= rating <= 5:
            raise ValueError("Rating must be between 1 and 5")
        return await self.state_machine.annotate(
            session_id, [COMPLETED], {"patient_rating": rating}, require_absent=["patient_rating"]
        )

    async def report_technical_issue(self, session_id: str, actor: Actor, issue: str) -> Session:
        session = await self.state_machine.get(session_id)
        self._require_party_or_admin(session, actor)
        record = TechnicalIssue(issue=issue, reported_by=str(actor))
        position = await self.repository.push(
            session_id, "technical_issues", record.model_dump(), ISSUE_STATUSES
        )
        if position is None:
            current = await self.state_machine.get(session_id)
            raise SessionClosed(f"Cannot report issues on a {current.status} session", session_id)
        logger.warning(f"⚠️ Technical issue #{position} on session {session_id}: {issue}")
        return await self.state_machine.get(session_id)

    async def resolve_technical_issue(self, session_id: str, actor: Actor, index: int) -> Session:
        if not actor.is_admin:
            raise Unauthorized(f"{actor} cannot resolve technical issues", session_id)
        session = await self.state_machine.get(session_id)
        if not 0 <= index < len(session.technical_issues):
            raise IssueNotFound(f"No technical issue #{index} on session {session_id}", session_id)
        return await self.state_machine.annotate(
            session_id, ALL_STATUSES, {f"technical_issues.{index}.resolved": True}
        )

    async def shutdown(self) -> None:
        """Release every call held by this client (navigation away, process exit)"""
        for media in list(self._media.values()):
            await media.teardown("shutdown")

    def _require_media(self, session_id: str) -> MediaSession:
        media = self._media.get(session_id)
        if media is None:
            raise InvalidTransition(session_id, None, "control", f"No active call for session {session_id}")
        return media

    @staticmethod
    def _require_party(session: Session, actor: Actor) -> SenderRole:
        if actor.role == Role.PATIENT and actor.identity == session.patient_id:
            return SenderRole.PATIENT
        if actor.role == Role.PROVIDER and actor.identity == session.provider_id:
            return SenderRole.PROVIDER
        raise Unauthorized(f"{actor} is not a party to session {session.session_id}", session.session_id)

    @staticmethod
    def _require_party_or_admin(session: Session, actor: Actor) -> None:
        if actor.is_admin:
            return
        SessionCoordinator._require_party(session, actor)
