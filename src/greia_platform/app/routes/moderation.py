"""Review moderation: queue, decisions, flags and rule management."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from greia_platform.agents.review_analysis_agent import ContentClassifier, get_content_classifier
from greia_platform.app.routes.auth import get_current_user_dep, require_moderator
from greia_platform.domain.enums import ReviewStatus
from greia_platform.domain.models import User
from greia_platform.domain.schemas import (
    BulkModerationRequest,
    BulkModerationSummary,
    ModerationLogResponse,
    ModerationRequest,
    ModerationRuleResponse,
    ReviewFlagCreate,
    ReviewResponse,
    RuleCreate,
    RuleUpdate,
)
from greia_platform.infra.database import get_db
from greia_platform.infra.realtime import RealtimeBus, get_realtime_bus
from greia_platform.services.moderation_queue import ModerationQueue
from greia_platform.services.moderation_rules import ModerationRuleService

router = APIRouter(prefix="/api/moderation", tags=["moderation"])


def get_moderation_queue(
    db: AsyncSession = Depends(get_db),
    classifier: ContentClassifier = Depends(get_content_classifier),
    bus: RealtimeBus = Depends(get_realtime_bus),
) -> ModerationQueue:
    return ModerationQueue(db, classifier=classifier, bus=bus)


# ---------------------------------------------------------------------------
# Queue & decisions
# ---------------------------------------------------------------------------


@router.get("/queue")
async def moderation_queue(
    status: Optional[ReviewStatus] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    moderator: User = Depends(require_moderator),
    queue: ModerationQueue = Depends(get_moderation_queue),
):
    data = await queue.list_pending_reviews(status=status, page=page, limit=limit)
    data["reviews"] = [ReviewResponse.model_validate(r) for r in data["reviews"]]
    return data


@router.post("/reviews/bulk", response_model=BulkModerationSummary)
async def bulk_moderate(
    body: BulkModerationRequest,
    moderator: User = Depends(require_moderator),
    queue: ModerationQueue = Depends(get_moderation_queue),
):
    return await queue.bulk_moderate(body.decisions, moderator.id, skip_ai_check=body.skip_ai_check)


@router.post("/reviews/{review_id}", response_model=ReviewResponse)
async def moderate_review(
    review_id: str,
    body: ModerationRequest,
    moderator: User = Depends(require_moderator),
    queue: ModerationQueue = Depends(get_moderation_queue),
):
    return await queue.moderate_review(
        review_id,
        body.action,
        moderator.id,
        reason=body.reason,
        note=body.note,
        skip_ai_check=body.skip_ai_check,
    )


@router.post("/reviews/{review_id}/flag", status_code=201)
async def flag_review(
    review_id: str,
    body: ReviewFlagCreate,
    user: User = Depends(get_current_user_dep),
    queue: ModerationQueue = Depends(get_moderation_queue),
):
    flag = await queue.flag_review(review_id, user.id, body.reason, body.details)
    return {"id": flag.id, "review_id": flag.review_id, "reason": flag.reason, "status": flag.status}


@router.get("/reviews/{review_id}/logs", response_model=list[ModerationLogResponse])
async def review_logs(
    review_id: str,
    moderator: User = Depends(require_moderator),
    queue: ModerationQueue = Depends(get_moderation_queue),
):
    return await queue.get_moderation_logs(review_id)


@router.get("/logs", response_model=list[ModerationLogResponse])
async def all_logs(
    limit: int = Query(100, ge=1, le=500),
    moderator: User = Depends(require_moderator),
    queue: ModerationQueue = Depends(get_moderation_queue),
):
    return await queue.get_moderation_logs(limit=limit)


@router.get("/stats")
async def moderation_stats(
    moderator: User = Depends(require_moderator),
    queue: ModerationQueue = Depends(get_moderation_queue),
):
    return await queue.get_moderation_stats()


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@router.get("/rules", response_model=list[ModerationRuleResponse])
async def list_rules(
    moderator: User = Depends(require_moderator),
    db: AsyncSession = Depends(get_db),
):
    return await ModerationRuleService(db).list_rules()


@router.post("/rules", response_model=ModerationRuleResponse, status_code=201)
async def create_rule(
    body: RuleCreate,
    moderator: User = Depends(require_moderator),
    db: AsyncSession = Depends(get_db),
):
    return await ModerationRuleService(db).create_rule(body, moderator.id)


@router.patch("/rules/{rule_id}", response_model=ModerationRuleResponse)
async def update_rule(
    rule_id: str,
    body: RuleUpdate,
    moderator: User = Depends(require_moderator),
    db: AsyncSession = Depends(get_db),
):
    return await ModerationRuleService(db).update_rule(rule_id, body, moderator.id)


@router.delete("/rules/{rule_id}", status_code=204)
async def delete_rule(
    rule_id: str,
    moderator: User = Depends(require_moderator),
    db: AsyncSession = Depends(get_db),
):
    await ModerationRuleService(db).delete_rule(rule_id, moderator.id)
