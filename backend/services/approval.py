import logging
from typing import Optional
from models.actor import Actor
from models.session import Session, SessionStatus, ReviewDecision, utc_now
from services.collaborators import IdentityProvider
from services.errors import InvalidTransition, NotPending, Unauthorized
from services.state_machine import SessionStateMachine, PENDING

logger = logging.getLogger(__name__)

class ApprovalWorkflow:
    """Lets an admin or the assigned provider accept or decline a pending session"""

    def __init__(self, state_machine: SessionStateMachine, identity: IdentityProvider):
        self.state_machine = state_machine
        self.identity = identity

    async def review(
        self,
        session_id: str,
        reviewer: Actor,
        decision: ReviewDecision,
        note: Optional[str] = None,
    ) -> Session:
        """
        Approve (-> scheduled) or reject (-> rejected) a pending session.

        Raises:
            SessionNotFound: Unknown session
            NotPending: Session was already decided, including by a racing reviewer
            Unauthorized: Reviewer is neither admin nor the assigned provider
        """
        decision = ReviewDecision(decision)
        session = await self.state_machine.get(session_id)

        if not self.identity.is_authorized_reviewer(reviewer, session):
            logger.warning(f"Unauthorized review of {session_id} by {reviewer}")
            raise Unauthorized(f"{reviewer} may not review session {session_id}", session_id)

        if session.status != PENDING:
            raise NotPending(session_id, session.status)

        target = SessionStatus.SCHEDULED if decision == ReviewDecision.APPROVE else SessionStatus.REJECTED
        review = {
            "reviewer_id": reviewer.identity,
            "reviewer_role": reviewer.role.value,
            "decision": decision.value,
            "note": note,
            "reviewed_at": utc_now(),
        }

        try:
            updated = await self.state_machine.transition(
                session_id,
                target,
                fields={"review": review},
                from_statuses=[PENDING],
                actor=str(reviewer),
            )
        except InvalidTransition as e:
            # Lost the race to another reviewer or a cancellation
            raise NotPending(session_id, e.current) from e

        logger.info(f"Session {session_id} {decision.value}d by {reviewer}")
        return updated
