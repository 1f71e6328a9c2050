"""Moderation Queue & Bulk Processor.

Bulk decisions run in fixed-size chunks. Within a chunk the automated gate
(rule engine plus classifier) runs concurrently; decisions are then committed
one review at a time, each guarded by a compare-and-swap on review status, so
one failing item never aborts its siblings.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from greia_platform.agents.review_analysis_agent import ContentClassifier
from greia_platform.app.config import get_settings
from greia_platform.domain.enums import (
    ModerationAction,
    ModerationLogAction,
    NotificationType,
    ReviewFlagStatus,
    ReviewStatus,
    UserRole,
    VerdictKind,
)
from greia_platform.domain.errors import (
    AICheckFailedError,
    AlreadyExistsError,
    ClassifierError,
    ConflictError,
    NotFoundError,
)
from greia_platform.domain.models import (
    ModerationLog,
    Review,
    ReviewAIAnalysis,
    ReviewFlag,
    User,
)
from greia_platform.domain.schemas import (
    BulkItemResult,
    BulkModerationResults,
    BulkModerationSummary,
    ClassifierScores,
    ModerationDecisionItem,
    NotificationEvent,
)
from greia_platform.infra.realtime import RealtimeBus
from greia_platform.services.moderation_rules import (
    ModerationRuleEngine,
    ModerationRuleService,
    RuleSpec,
    Verdict,
)
from greia_platform.services.notification_service import NotificationFanout

logger = logging.getLogger(__name__)

MODERATABLE_STATUSES = (ReviewStatus.PENDING.value, ReviewStatus.FLAGGED.value)

# Pending-flag counts at which moderators are pinged
FLAG_NOTIFY_THRESHOLDS = (1, 3, 5)
# Pending-flag count at which a review is hidden pending moderation
FLAG_HIDE_THRESHOLD = 5

ALREADY_MODERATED = "Already moderated"
REVIEW_NOT_FOUND = "Review not found"
FAILED_AI_CHECK = "Failed AI check"


@dataclass
class ReviewSnapshot:
    """Plain copy of the review fields the processor needs.

    Survives the session rollbacks that per-item failures cause.
    """

    id: str
    user_id: str
    title: str
    content: str
    status: str

    @classmethod
    def of(cls, review: Review) -> "ReviewSnapshot":
        return cls(review.id, review.user_id, review.title or "", review.content or "", review.status)


@dataclass
class _Evaluation:
    item: ModerationDecisionItem
    review: Optional[ReviewSnapshot]
    outcome: str  # apply | skipped | failed
    reason: Optional[str] = None
    analysis: Optional[ClassifierScores] = None
    model: Optional[str] = None


def _gate_rejection_reason(verdict: Verdict) -> str:
    if verdict.ai_rule_fired:
        return FAILED_AI_CHECK
    return f"Matched moderation rule: {verdict.rule.name}"


class ModerationQueue:
    """Review moderation operations over one AsyncSession."""

    def __init__(
        self,
        db: AsyncSession,
        classifier: Optional[ContentClassifier] = None,
        bus: Optional[RealtimeBus] = None,
    ):
        self.db = db
        self.notifier = NotificationFanout(db, bus)
        self.engine = ModerationRuleEngine(classifier)
        self.rules = ModerationRuleService(db)
        self.settings = get_settings()

    async def _rule_specs(self) -> list[RuleSpec]:
        return [RuleSpec.from_model(r) for r in await self.rules.list_rules(enabled_only=True)]

    # ------------------------------------------------------------------
    # Bulk processing
    # ------------------------------------------------------------------

    async def bulk_moderate(
        self,
        decisions: list[ModerationDecisionItem],
        moderator_id: str,
        skip_ai_check: bool = False,
    ) -> BulkModerationSummary:
        """Apply a batch of moderator decisions with per-item isolation.

        Always returns a full summary; no per-item error escapes.
        """
        results = BulkModerationResults()
        rules = await self._rule_specs()
        batch_size = max(self.settings.moderation_batch_size, 1)

        for start in range(0, len(decisions), batch_size):
            chunk = decisions[start:start + batch_size]
            reviews = await self._snapshot_reviews([d.review_id for d in chunk])

            evaluations = await asyncio.gather(*(
                self._evaluate(item, reviews.get(item.review_id), rules, skip_ai_check)
                for item in chunk
            ), return_exceptions=True)

            # Session work stays sequential: one AsyncSession, one statement at a time
            for item, evaluation in zip(chunk, evaluations):
                if isinstance(evaluation, BaseException):
                    logger.error(
                        "Evaluation crashed for review %s", item.review_id, exc_info=evaluation
                    )
                    evaluation = _Evaluation(
                        item, reviews.get(item.review_id), "failed", str(evaluation)
                    )
                await self._settle(evaluation, moderator_id, results)

        summary = BulkModerationSummary(
            total=len(decisions),
            succeeded=len(results.success),
            failed=len(results.failed),
            skipped=len(results.skipped),
            results=results,
        )
        self.db.add(ModerationLog(
            moderator_id=moderator_id,
            action=ModerationLogAction.BULK_MODERATE.value,
            reason=(
                f"Bulk moderation: {summary.succeeded} succeeded, "
                f"{summary.failed} failed, {summary.skipped} skipped"
            ),
            note=f"total={summary.total} skip_ai_check={skip_ai_check}",
        ))
        await self.db.commit()
        logger.info(
            "Bulk moderation by %s: total=%d succeeded=%d failed=%d skipped=%d",
            moderator_id, summary.total, summary.succeeded, summary.failed, summary.skipped,
        )
        return summary

    async def _snapshot_reviews(self, review_ids: list[str]) -> dict[str, ReviewSnapshot]:
        result = await self.db.execute(
            select(Review)
            .where(Review.id.in_(review_ids))
            .execution_options(populate_existing=True)
        )
        return {review.id: ReviewSnapshot.of(review) for review in result.scalars().all()}

    async def _evaluate(
        self,
        item: ModerationDecisionItem,
        review: Optional[ReviewSnapshot],
        rules: list[RuleSpec],
        skip_ai_check: bool,
    ) -> _Evaluation:
        """Decide what to do with one item. Touches no session state."""
        if review is None:
            return _Evaluation(item, None, "failed", REVIEW_NOT_FOUND)
        if review.status not in MODERATABLE_STATUSES:
            return _Evaluation(item, review, "skipped", ALREADY_MODERATED)
        if item.action == ModerationAction.REJECT:
            return _Evaluation(item, review, "apply")

        try:
            verdict = await self.engine.evaluate(
                review, rules, skip_ai_check=skip_ai_check, require_ai=True
            )
        except ClassifierError as exc:
            logger.warning("AI check failed for review %s: %s", review.id, exc)
            return _Evaluation(item, review, "failed", f"AI check error: {exc.message}")
        except Exception as exc:
            logger.error("Rule evaluation crashed for review %s", review.id, exc_info=exc)
            return _Evaluation(item, review, "failed", str(exc))

        if verdict.kind == VerdictKind.AUTO_REJECT:
            return _Evaluation(
                item, review, "skipped", _gate_rejection_reason(verdict), analysis=verdict.analysis
            )
        model = verdict.rule.config.get("ai_model") if verdict.rule else None
        return _Evaluation(
            item, review, "apply",
            analysis=verdict.analysis if verdict.ai_checked else None,
            model=model or self.settings.moderation_model,
        )

    async def _settle(
        self, evaluation: _Evaluation, moderator_id: str, results: BulkModerationResults
    ) -> None:
        item = evaluation.item
        entry = BulkItemResult(
            review_id=item.review_id,
            action=item.action,
            reason=evaluation.reason,
            ai_analysis=evaluation.analysis.model_dump() if evaluation.analysis else None,
        )
        if evaluation.outcome == "failed":
            results.failed.append(entry)
            return
        if evaluation.outcome == "skipped":
            results.skipped.append(entry)
            return

        try:
            applied = await self._commit_decision(
                evaluation.review, item.action, moderator_id,
                reason=item.reason, note=item.note,
                analysis=evaluation.analysis, model=evaluation.model,
            )
        except Exception as exc:
            await self.db.rollback()
            self.notifier.discard()
            logger.error("Moderation of review %s failed", item.review_id, exc_info=exc)
            entry.reason = str(exc)
            results.failed.append(entry)
            return

        if applied:
            entry.reason = item.reason
            results.success.append(entry)
        else:
            entry.reason = ALREADY_MODERATED
            results.skipped.append(entry)

    async def _commit_decision(
        self,
        review: ReviewSnapshot,
        action: ModerationAction,
        moderator_id: str,
        reason: Optional[str] = None,
        note: Optional[str] = None,
        analysis: Optional[ClassifierScores] = None,
        model: Optional[str] = None,
    ) -> bool:
        """Persist one decision in its own transaction.

        Returns False (after rolling back) if the review left the
        moderatable states concurrently.
        """
        now = datetime.now(timezone.utc)
        new_status = (
            ReviewStatus.APPROVED if action == ModerationAction.APPROVE else ReviewStatus.REJECTED
        )
        values = {"status": new_status.value, "moderator_id": moderator_id, "moderated_at": now}
        if new_status == ReviewStatus.APPROVED:
            values["hidden_at"] = None

        result = await self.db.execute(
            update(Review)
            .where(Review.id == review.id, Review.status.in_(MODERATABLE_STATUSES))
            .values(**values)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            return False

        self.db.add(ModerationLog(
            review_id=review.id,
            moderator_id=moderator_id,
            action=ModerationLogAction(action.value).value,
            reason=reason,
            note=note,
        ))

        await self.db.execute(
            update(ReviewFlag)
            .where(
                ReviewFlag.review_id == review.id,
                ReviewFlag.status == ReviewFlagStatus.PENDING.value,
            )
            .values(
                status=ReviewFlagStatus.RESOLVED.value,
                resolution={
                    "action": action.value,
                    "moderator_id": moderator_id,
                    "note": note,
                    "timestamp": now.isoformat(),
                },
                updated_at=now,
            )
        )

        if analysis is not None:
            self.db.add(ReviewAIAnalysis(
                review_id=review.id,
                model=model,
                sentiment=analysis.sentiment,
                toxicity=analysis.toxicity,
                spam_probability=analysis.spam_probability,
                fake_probability=analysis.fake_probability,
                keywords=analysis.keywords,
                language=analysis.language,
                content_flags=analysis.content_flags,
            ))

        if new_status == ReviewStatus.REJECTED:
            self.notifier.stage(NotificationEvent(
                user_id=review.user_id,
                type=NotificationType.REVIEW_REJECTED,
                title="Review not published",
                message=f"Your review \"{review.title}\" was rejected"
                + (f": {reason}" if reason else "."),
                data={"review_id": review.id, "reason": reason},
            ))

        await self.db.commit()
        await self.notifier.dispatch()
        logger.info("Review %s %s by %s", review.id, new_status.value, moderator_id)
        return True

    # ------------------------------------------------------------------
    # Single review
    # ------------------------------------------------------------------

    async def moderate_review(
        self,
        review_id: str,
        action: ModerationAction,
        moderator_id: str,
        reason: Optional[str] = None,
        note: Optional[str] = None,
        skip_ai_check: bool = False,
    ) -> Review:
        """Moderate one review, raising instead of reporting skips."""
        action = ModerationAction(action)
        review = await self.db.get(Review, review_id, populate_existing=True)
        if review is None:
            raise NotFoundError("Review", review_id)
        if review.status not in MODERATABLE_STATUSES:
            raise ConflictError(f"Review {review_id} is already {review.status}")

        snapshot = ReviewSnapshot.of(review)
        analysis = None
        model = None
        if action == ModerationAction.APPROVE:
            verdict = await self.engine.evaluate(
                snapshot, await self._rule_specs(), skip_ai_check=skip_ai_check, require_ai=True
            )
            if verdict.kind == VerdictKind.AUTO_REJECT:
                raise AICheckFailedError(verdict.reason, analysis=verdict.analysis_dict())
            if verdict.ai_checked:
                analysis = verdict.analysis
                model = (verdict.rule.config.get("ai_model") if verdict.rule else None) \
                    or self.settings.moderation_model

        applied = await self._commit_decision(
            snapshot, action, moderator_id, reason=reason, note=note,
            analysis=analysis, model=model,
        )
        if not applied:
            raise ConflictError(f"Review {review_id} was moderated concurrently")
        await self.db.refresh(review)
        return review

    # ------------------------------------------------------------------
    # Flags
    # ------------------------------------------------------------------

    async def flag_review(
        self, review_id: str, user_id: str, reason, details: Optional[str] = None
    ) -> ReviewFlag:
        """Record a user complaint; escalate and eventually hide the review."""
        review = await self.db.get(Review, review_id, populate_existing=True)
        if review is None:
            raise NotFoundError("Review", review_id)

        existing = await self.db.execute(
            select(ReviewFlag.id).where(
                ReviewFlag.review_id == review_id,
                ReviewFlag.user_id == user_id,
                ReviewFlag.status == ReviewFlagStatus.PENDING.value,
            )
        )
        if existing.first() is not None:
            raise AlreadyExistsError("You have already flagged this review")

        flag = ReviewFlag(
            review_id=review_id,
            user_id=user_id,
            reason=getattr(reason, "value", reason),
            details=details,
            status=ReviewFlagStatus.PENDING.value,
        )
        self.db.add(flag)
        if review.status != ReviewStatus.REJECTED.value:
            review.status = ReviewStatus.FLAGGED.value
        try:
            await self.db.flush()
        except IntegrityError:
            # A concurrent flag from the same user won the insert
            await self.db.rollback()
            raise AlreadyExistsError("You have already flagged this review")

        pending_count = (await self.db.execute(
            select(func.count()).select_from(ReviewFlag).where(
                ReviewFlag.review_id == review_id,
                ReviewFlag.status == ReviewFlagStatus.PENDING.value,
            )
        )).scalar_one()

        if pending_count in FLAG_NOTIFY_THRESHOLDS:
            moderators = await self.db.execute(
                select(User.id).where(
                    User.role.in_([UserRole.MODERATOR.value, UserRole.ADMIN.value]),
                    User.is_active.is_(True),
                )
            )
            for (moderator_id,) in moderators.all():
                self.notifier.stage(NotificationEvent(
                    user_id=moderator_id,
                    type=NotificationType.REVIEW_FLAGGED,
                    title="Review flagged",
                    message=f"A review has been flagged {pending_count} time(s).",
                    data={"review_id": review_id, "flag_count": pending_count,
                          "reason": flag.reason},
                ))

        if pending_count >= FLAG_HIDE_THRESHOLD and review.hidden_at is None:
            review.hidden_at = datetime.now(timezone.utc)
            self.notifier.stage(NotificationEvent(
                user_id=review.user_id,
                type=NotificationType.REVIEW_HIDDEN,
                title="Review hidden",
                message="Your review has been hidden pending moderation after multiple reports.",
                data={"review_id": review_id, "flag_count": pending_count},
            ))
            logger.info("Review %s hidden after %d flags", review_id, pending_count)

        await self.db.commit()
        await self.notifier.dispatch()
        logger.info("Review %s flagged by %s (%d pending)", review_id, user_id, pending_count)
        return flag

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_pending_reviews(
        self, status: Optional[ReviewStatus] = None, page: int = 1, limit: int = 20
    ) -> dict:
        """The moderation queue: pending and flagged reviews, oldest first."""
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        statuses = [ReviewStatus(status).value] if status else list(MODERATABLE_STATUSES)

        total = (await self.db.execute(
            select(func.count()).select_from(Review).where(Review.status.in_(statuses))
        )).scalar_one()
        result = await self.db.execute(
            select(Review)
            .where(Review.status.in_(statuses))
            .order_by(Review.created_at, Review.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return {
            "reviews": list(result.scalars().all()),
            "pagination": {
                "total": total,
                "page": page,
                "limit": limit,
                "pages": (total + limit - 1) // limit,
            },
        }

    async def get_moderation_stats(self) -> dict:
        status_rows = await self.db.execute(
            select(Review.status, func.count(Review.id)).group_by(Review.status)
        )
        by_status = {s.value: 0 for s in ReviewStatus}
        by_status.update({status: count for status, count in status_rows.all()})

        hidden = (await self.db.execute(
            select(func.count()).select_from(Review).where(Review.hidden_at.isnot(None))
        )).scalar_one()

        flag_rows = await self.db.execute(
            select(ReviewFlag.reason, func.count(ReviewFlag.id))
            .where(ReviewFlag.status == ReviewFlagStatus.PENDING.value)
            .group_by(ReviewFlag.reason)
        )
        return {
            "reviews": by_status,
            "hidden": hidden,
            "pending_flags": {reason: count for reason, count in flag_rows.all()},
        }

    async def get_moderation_logs(self, review_id: Optional[str] = None, limit: int = 100) -> list[ModerationLog]:
        """Audit trail, oldest first."""
        stmt = select(ModerationLog).order_by(ModerationLog.created_at, ModerationLog.id)
        if review_id:
            stmt = stmt.where(ModerationLog.review_id == review_id)
        return list((await self.db.execute(stmt.limit(limit))).scalars().all())
