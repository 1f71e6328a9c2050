"""Private listing submissions and agent offers."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from greia_platform.app.routes.auth import get_current_user_dep, require_role
from greia_platform.domain.enums import UserRole
from greia_platform.domain.errors import AuthorizationError
from greia_platform.domain.models import User
from greia_platform.domain.schemas import (
    CommissionResponse,
    OfferDecisionRequest,
    OfferPayload,
    OfferResponse,
    SubmissionCreate,
    SubmissionResponse,
)
from greia_platform.infra.database import get_db
from greia_platform.infra.realtime import RealtimeBus, get_realtime_bus
from greia_platform.services.offer_ledger import OfferLedger

router = APIRouter(prefix="/api/submissions", tags=["submissions"])


def get_offer_ledger(
    db: AsyncSession = Depends(get_db),
    bus: RealtimeBus = Depends(get_realtime_bus),
) -> OfferLedger:
    return OfferLedger(db, bus)


@router.post("", response_model=SubmissionResponse, status_code=201)
async def create_submission(
    body: SubmissionCreate,
    user: User = Depends(get_current_user_dep),
    ledger: OfferLedger = Depends(get_offer_ledger),
):
    return await ledger.create_submission(user.id, body)


@router.get("/{submission_id}", response_model=SubmissionResponse)
async def get_submission(
    submission_id: str,
    user: User = Depends(get_current_user_dep),
    ledger: OfferLedger = Depends(get_offer_ledger),
):
    submission = await ledger.get_submission(submission_id)
    if submission.owner_id != user.id and user.role != UserRole.AGENT.value:
        raise AuthorizationError("Not allowed to view this submission")
    return submission


@router.post("/{submission_id}/close", response_model=SubmissionResponse)
async def close_submission(
    submission_id: str,
    user: User = Depends(get_current_user_dep),
    ledger: OfferLedger = Depends(get_offer_ledger),
):
    return await ledger.close_submission(submission_id, user.id)


@router.post("/{submission_id}/offers", response_model=OfferResponse, status_code=201)
async def submit_offer(
    submission_id: str,
    body: OfferPayload,
    agent: User = Depends(require_role(UserRole.AGENT)),
    ledger: OfferLedger = Depends(get_offer_ledger),
):
    return await ledger.submit_offer(submission_id, agent.id, body)


@router.get("/{submission_id}/offers", response_model=list[OfferResponse])
async def list_offers(
    submission_id: str,
    user: User = Depends(get_current_user_dep),
    ledger: OfferLedger = Depends(get_offer_ledger),
):
    return await ledger.list_offers(submission_id, user.id)


@router.get("/{submission_id}/offers/{offer_id}", response_model=OfferResponse)
async def get_offer(
    submission_id: str,
    offer_id: str,
    user: User = Depends(get_current_user_dep),
    ledger: OfferLedger = Depends(get_offer_ledger),
):
    return await ledger.get_offer(offer_id, user.id)


@router.post("/{submission_id}/offers/{offer_id}/decision")
async def decide_offer(
    submission_id: str,
    offer_id: str,
    body: OfferDecisionRequest,
    user: User = Depends(get_current_user_dep),
    ledger: OfferLedger = Depends(get_offer_ledger),
):
    result = await ledger.decide_offer(
        submission_id, offer_id, user.id, body.decision, reason=body.reason
    )
    return {
        "offer": OfferResponse.model_validate(result.offer),
        "submission": SubmissionResponse.model_validate(result.submission),
        "commission": (
            CommissionResponse.model_validate(result.commission) if result.commission else None
        ),
        "conversation_id": result.conversation_id,
        "rejected_offer_ids": result.rejected_offer_ids,
    }
