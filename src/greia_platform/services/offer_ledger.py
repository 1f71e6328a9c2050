"""Offer Ledger - competing agent offers against private listing submissions.

Guarantees at most one live offer per (submission, agent) and at most one
accepted offer per submission. Acceptance, sibling rejection, the owner/agent
conversation and the commission land in a single transaction.

Ranking is not automatic: the owner accepts whichever offer they like and the
ledger guarantees exclusivity.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from greia_platform.domain.enums import (
    NotificationType,
    OfferDecision,
    OfferStatus,
    SubmissionStatus,
    UserRole,
    VerificationStatus,
)
from greia_platform.domain.errors import (
    AuthorizationError,
    ConflictError,
    DuplicateOfferError,
    NotEligibleError,
    NotFoundError,
    OfferAlreadyDecidedError,
    SubmissionAlreadyAssignedError,
    SubmissionClosedError,
)
from greia_platform.domain.models import (
    Commission,
    Conversation,
    ConversationMessage,
    Offer,
    Submission,
    User,
)
from greia_platform.domain.schemas import NotificationEvent, OfferPayload, SubmissionCreate
from greia_platform.infra.realtime import RealtimeBus
from greia_platform.services.commission_engine import CommissionEngine
from greia_platform.services.notification_service import NotificationFanout

logger = logging.getLogger(__name__)

SIBLING_REJECTION_REASON = "The owner selected another agent for this listing"
CLOSED_REJECTION_REASON = "Submission closed"


@dataclass
class DecisionResult:
    """Outcome of an owner decision on one offer."""

    offer: Offer
    submission: Submission
    commission: Optional[Commission] = None
    conversation_id: Optional[str] = None
    rejected_offer_ids: list[str] = field(default_factory=list)


def outward_code(postcode: str) -> str:
    """Outward part of a UK postcode: "SW1A 1AA" -> "SW1A"."""
    compact = postcode.strip().upper()
    if " " in compact:
        return compact.split()[0]
    # Inward code is always three characters
    return compact[:-3] if len(compact) > 4 else compact


def is_eligible_agent(user: Optional[User]) -> bool:
    return (
        user is not None
        and user.role == UserRole.AGENT.value
        and user.verification_status == VerificationStatus.VERIFIED.value
        and bool(user.is_active)
    )


class OfferLedger:
    """Submission and offer operations over one AsyncSession."""

    def __init__(self, db: AsyncSession, bus: Optional[RealtimeBus] = None):
        self.db = db
        self.notifier = NotificationFanout(db, bus)
        self.commissions = CommissionEngine(db, notifier=self.notifier)

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    async def get_submission(self, submission_id: str, for_update: bool = False) -> Submission:
        stmt = (
            select(Submission)
            .where(Submission.id == submission_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        submission = (await self.db.execute(stmt)).scalar_one_or_none()
        if submission is None:
            raise NotFoundError("Submission", submission_id)
        return submission

    async def create_submission(self, owner_id: str, payload: SubmissionCreate) -> Submission:
        """Persist a PENDING submission and broadcast it to agents in the area."""
        submission = Submission(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            title=payload.title,
            description=payload.description,
            price=payload.price,
            postcode=payload.postcode,
            property_type=payload.property_type,
            details=payload.details,
            status=SubmissionStatus.PENDING.value,
        )
        self.db.add(submission)

        area = outward_code(payload.postcode)
        result = await self.db.execute(
            select(User).where(
                User.role == UserRole.AGENT.value,
                User.verification_status == VerificationStatus.VERIFIED.value,
                User.is_active.is_(True),
                User.id != owner_id,
            )
        )
        agents = [
            agent for agent in result.scalars().all()
            if area in {a.strip().upper() for a in (agent.service_areas or [])}
        ]
        for agent in agents:
            self.notifier.stage(NotificationEvent(
                user_id=agent.id,
                type=NotificationType.NEW_PRIVATE_LISTING,
                title="New private listing in your area",
                message=f"{payload.title} ({payload.postcode}) is looking for an agent.",
                data={"submission_id": submission.id, "postcode": payload.postcode,
                      "price": str(payload.price)},
            ))

        await self.db.commit()
        await self.notifier.dispatch()
        logger.info(
            "Submission %s created by %s; broadcast to %d agents in %s",
            submission.id, owner_id, len(agents), area,
        )
        return submission

    async def close_submission(self, submission_id: str, owner_id: str) -> Submission:
        """Close a submission; remaining PENDING offers are rejected."""
        submission = await self.get_submission(submission_id, for_update=True)
        if submission.owner_id != owner_id:
            raise AuthorizationError("Only the submission owner can close it")
        if submission.status == SubmissionStatus.CLOSED.value:
            raise SubmissionClosedError(f"Submission {submission_id} is already closed")

        now = datetime.now(timezone.utc)
        rejected = await self._reject_pending_offers(submission, CLOSED_REJECTION_REASON, now)

        submission.status = SubmissionStatus.CLOSED.value
        submission.closed_at = now
        await self.db.commit()
        await self.notifier.dispatch()
        logger.info("Submission %s closed; %d pending offers rejected", submission_id, len(rejected))
        return submission

    # ------------------------------------------------------------------
    # Offers
    # ------------------------------------------------------------------

    async def submit_offer(self, submission_id: str, agent_id: str, payload: OfferPayload) -> Offer:
        """Record an agent's offer as PENDING and tell the owner."""
        submission = await self.get_submission(submission_id)
        if submission.status != SubmissionStatus.PENDING.value:
            raise SubmissionClosedError(
                f"Submission {submission_id} is {submission.status} and no longer takes offers"
            )

        agent = await self.db.get(User, agent_id)
        if not is_eligible_agent(agent):
            raise NotEligibleError("Only verified agents can make offers")
        if submission.owner_id == agent_id:
            raise NotEligibleError("Owners cannot make offers on their own submission")

        existing = await self.db.execute(
            select(Offer.id).where(
                Offer.submission_id == submission_id,
                Offer.agent_id == agent_id,
                Offer.status != OfferStatus.REJECTED.value,
            )
        )
        if existing.first() is not None:
            raise DuplicateOfferError("You already have an active offer on this submission")

        offer = Offer(
            id=str(uuid.uuid4()),
            submission_id=submission_id,
            agent_id=agent_id,
            kind=payload.kind.value,
            proposed_value=payload.proposed_value,
            confidence=payload.confidence,
            message=payload.message,
            status=OfferStatus.PENDING.value,
            created_at=datetime.now(timezone.utc),
        )
        self.db.add(offer)
        try:
            await self.db.flush()
        except IntegrityError:
            # Lost the race to a concurrent submit from the same agent
            await self.db.rollback()
            raise DuplicateOfferError("You already have an active offer on this submission")

        self.notifier.stage(NotificationEvent(
            user_id=submission.owner_id,
            type=NotificationType.OFFER_RECEIVED,
            title="New agent offer",
            message=f"{agent.name} made an offer on {submission.title}.",
            data={"submission_id": submission_id, "offer_id": offer.id, "agent_id": agent_id,
                  "kind": offer.kind,
                  "proposed_value": str(offer.proposed_value) if offer.proposed_value else None},
        ))
        await self.db.commit()
        await self.notifier.dispatch()
        logger.info("Offer %s submitted: submission=%s agent=%s", offer.id, submission_id, agent_id)
        return offer

    async def decide_offer(
        self,
        submission_id: str,
        offer_id: str,
        owner_id: str,
        decision: OfferDecision,
        reason: Optional[str] = None,
    ) -> DecisionResult:
        """Accept or reject a PENDING offer.

        ACCEPT assigns the submission, rejects every PENDING sibling, opens
        the owner/agent conversation and creates the commission, all in one
        transaction.
        """
        decision = OfferDecision(decision)
        submission = await self.get_submission(submission_id, for_update=True)
        if submission.owner_id != owner_id:
            raise AuthorizationError("Only the submission owner can decide offers")

        offer = await self.db.get(Offer, offer_id, populate_existing=True)
        if offer is None or offer.submission_id != submission_id:
            raise NotFoundError("Offer", offer_id)
        if offer.status != OfferStatus.PENDING.value:
            raise OfferAlreadyDecidedError(f"Offer {offer_id} is already {offer.status}")
        if submission.status == SubmissionStatus.CLOSED.value:
            raise SubmissionClosedError(f"Submission {submission_id} is closed")
        if submission.status == SubmissionStatus.ASSIGNED.value:
            raise SubmissionAlreadyAssignedError(
                f"Submission {submission_id} is already assigned to an agent"
            )

        if decision == OfferDecision.REJECT:
            return await self._reject_offer(submission, offer, reason)
        return await self._accept_offer(submission, offer, reason)

    async def _reject_offer(
        self, submission: Submission, offer: Offer, reason: Optional[str]
    ) -> DecisionResult:
        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            update(Offer)
            .where(Offer.id == offer.id, Offer.status == OfferStatus.PENDING.value)
            .values(status=OfferStatus.REJECTED.value, decision_reason=reason, decided_at=now)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            raise OfferAlreadyDecidedError(f"Offer {offer.id} was decided concurrently")

        self._stage_rejection(submission, offer.id, offer.agent_id, reason or "Offer declined by owner")
        await self.db.commit()
        await self.db.refresh(offer)
        await self.notifier.dispatch()
        logger.info("Offer %s rejected on submission %s", offer.id, submission.id)
        return DecisionResult(offer=offer, submission=submission)

    async def _accept_offer(
        self, submission: Submission, offer: Offer, reason: Optional[str]
    ) -> DecisionResult:
        now = datetime.now(timezone.utc)

        # Serialize acceptance per submission: only one CAS can win
        assigned = await self.db.execute(
            update(Submission)
            .where(
                Submission.id == submission.id,
                Submission.status == SubmissionStatus.PENDING.value,
            )
            .values(
                status=SubmissionStatus.ASSIGNED.value,
                assigned_agent_id=offer.agent_id,
                agreed_commission=offer.proposed_value,
                updated_at=now,
            )
        )
        if assigned.rowcount == 0:
            await self.db.rollback()
            raise SubmissionAlreadyAssignedError(
                f"Submission {submission.id} was assigned by a concurrent decision"
            )

        accepted = await self.db.execute(
            update(Offer)
            .where(Offer.id == offer.id, Offer.status == OfferStatus.PENDING.value)
            .values(status=OfferStatus.ACCEPTED.value, decision_reason=reason, decided_at=now)
        )
        if accepted.rowcount == 0:
            await self.db.rollback()
            raise OfferAlreadyDecidedError(f"Offer {offer.id} was decided concurrently")

        rejected = await self._reject_pending_offers(
            submission, SIBLING_REJECTION_REASON, now, exclude_offer_id=offer.id
        )

        conversation = Conversation(
            id=str(uuid.uuid4()),
            name=f"Property: {submission.title}",
            submission_id=submission.id,
            participant_ids=[submission.owner_id, offer.agent_id],
        )
        self.db.add(conversation)
        self.db.add(ConversationMessage(
            conversation_id=conversation.id,
            sender_id=submission.owner_id,
            content=f"I've accepted your offer for {submission.title}. Let's discuss the next steps.",
        ))

        commission = self.commissions.create_commission(offer, submission)

        self.notifier.stage(NotificationEvent(
            user_id=offer.agent_id,
            type=NotificationType.OFFER_ACCEPTED,
            title="Offer accepted",
            message=f"Your offer on {submission.title} was accepted.",
            data={"submission_id": submission.id, "offer_id": offer.id,
                  "decision": OfferDecision.ACCEPT.value, "reason": reason,
                  "conversation_id": conversation.id, "commission_id": commission.id},
        ))

        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            self.notifier.discard()
            raise ConflictError(f"Offer {offer.id} already has a commission")

        await self.db.refresh(submission)
        await self.db.refresh(offer)
        await self.notifier.dispatch()
        logger.info(
            "Offer %s accepted on submission %s; %d siblings rejected; commission %s",
            offer.id, submission.id, len(rejected), commission.id,
        )
        return DecisionResult(
            offer=offer,
            submission=submission,
            commission=commission,
            conversation_id=conversation.id,
            rejected_offer_ids=[offer_id for offer_id, _ in rejected],
        )

    async def _reject_pending_offers(
        self,
        submission: Submission,
        reason: str,
        now: datetime,
        exclude_offer_id: Optional[str] = None,
    ) -> list[tuple[str, str]]:
        """Reject every PENDING offer on a submission. Returns (offer_id, agent_id) pairs."""
        stmt = select(Offer.id, Offer.agent_id).where(
            Offer.submission_id == submission.id,
            Offer.status == OfferStatus.PENDING.value,
        )
        if exclude_offer_id:
            stmt = stmt.where(Offer.id != exclude_offer_id)
        pending = [(row.id, row.agent_id) for row in (await self.db.execute(stmt)).all()]
        if not pending:
            return []

        await self.db.execute(
            update(Offer)
            .where(
                Offer.id.in_([offer_id for offer_id, _ in pending]),
                Offer.status == OfferStatus.PENDING.value,
            )
            .values(status=OfferStatus.REJECTED.value, decision_reason=reason, decided_at=now)
        )
        for offer_id, agent_id in pending:
            self._stage_rejection(submission, offer_id, agent_id, reason)
        return pending

    def _stage_rejection(self, submission: Submission, offer_id: str, agent_id: str, reason: str):
        self.notifier.stage(NotificationEvent(
            user_id=agent_id,
            type=NotificationType.OFFER_REJECTED,
            title="Offer not accepted",
            message=f"Your offer on {submission.title} was not accepted. {reason}",
            data={"submission_id": submission.id, "offer_id": offer_id,
                  "decision": OfferDecision.REJECT.value, "reason": reason},
        ))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_offers(self, submission_id: str, viewer_id: str) -> list[Offer]:
        """Owner sees every offer; an agent sees only their own. Newest first."""
        submission = await self.get_submission(submission_id)
        stmt = (
            select(Offer)
            .where(Offer.submission_id == submission_id)
            .order_by(Offer.created_at.desc(), Offer.id.desc())
        )
        if submission.owner_id != viewer_id:
            viewer = await self.db.get(User, viewer_id)
            if viewer is None or viewer.role != UserRole.AGENT.value:
                raise AuthorizationError("Not allowed to view offers on this submission")
            stmt = stmt.where(Offer.agent_id == viewer_id)
        return list((await self.db.execute(stmt)).scalars().all())

    async def get_offer(self, offer_id: str, viewer_id: str) -> Offer:
        offer = await self.db.get(Offer, offer_id)
        if offer is None:
            raise NotFoundError("Offer", offer_id)
        if offer.agent_id != viewer_id:
            submission = await self.get_submission(offer.submission_id)
            if submission.owner_id != viewer_id:
                raise AuthorizationError("Not allowed to view this offer")
        return offer
