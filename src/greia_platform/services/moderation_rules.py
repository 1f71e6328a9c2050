"""Moderation Rule Engine - evaluates reviews against configured rules.

Evaluation order: enabled rules sorted by (priority, created_at, id).
The first firing rule whose action is ``reject`` ends evaluation with
AutoReject. A firing ``flag``/``require_review`` rule makes the verdict
RequiresHuman unless a later rule rejects. When nothing fires the verdict is
AutoApprove if an AI check ran and passed or AI checking was explicitly
skipped, and RequiresHuman otherwise.

The engine never mutates a review.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from greia_platform.agents.review_analysis_agent import ContentClassifier
from greia_platform.app.config import get_settings
from greia_platform.domain.enums import (
    ModerationLogAction,
    ModerationRuleAction,
    ModerationRuleType,
    VerdictKind,
)
from greia_platform.domain.errors import ClassifierError, NotFoundError, PolicyViolationError
from greia_platform.domain.models import ModerationLog, ModerationRule
from greia_platform.domain.schemas import ClassifierScores, RuleCreate, RuleUpdate

logger = logging.getLogger(__name__)

DEFAULT_AI_RULE_ID = "default-ai-check"
SCORED_FIELDS = ("toxicity", "spam_probability", "fake_probability")


# ---------------------------------------------------------------------------
# Config validation
# ---------------------------------------------------------------------------


def validate_rule_config(rule_type, config: dict) -> dict:
    """Check the mandatory fields for a rule type and return a normalized config.

    Raises PolicyViolationError when a field the type requires is missing.
    """
    rule_type = ModerationRuleType(rule_type)
    config = config or {}

    if rule_type == ModerationRuleType.KEYWORD:
        keywords = [str(k).strip() for k in (config.get("keywords") or []) if str(k).strip()]
        if not keywords:
            raise PolicyViolationError("Keyword rules require at least one keyword")
        return {"keywords": keywords}

    if rule_type == ModerationRuleType.PATTERN:
        pattern = (config.get("pattern") or "").strip()
        if not pattern:
            raise PolicyViolationError("Pattern rules require a non-empty pattern")
        try:
            re.compile(pattern)
        except re.error as exc:
            raise PolicyViolationError(f"Invalid pattern: {exc}")
        return {"pattern": pattern}

    ai_model = (config.get("ai_model") or "").strip()
    threshold = config.get("threshold")
    if not ai_model:
        raise PolicyViolationError("AI rules require an ai_model")
    if threshold is None:
        raise PolicyViolationError("AI rules require a threshold")
    try:
        threshold = float(threshold)
    except (TypeError, ValueError):
        raise PolicyViolationError("AI rule threshold must be a number")
    if not 0 < threshold <= 1:
        raise PolicyViolationError("AI rule threshold must be in (0, 1]")
    return {"ai_model": ai_model, "threshold": threshold}


def ai_check_failures(scores: ClassifierScores, threshold: float) -> list[str]:
    """Reasons the scores fail the AI gate; empty when they pass."""
    failures = [
        f"{name} {getattr(scores, name):.2f} exceeds {threshold:.2f}"
        for name in SCORED_FIELDS
        if getattr(scores, name) > threshold
    ]
    failures.extend(
        f"content flagged as {flag}" for flag, raised in sorted(scores.content_flags.items()) if raised
    )
    return failures


# ---------------------------------------------------------------------------
# Verdict
# ---------------------------------------------------------------------------


@dataclass
class RuleSpec:
    """Immutable view of a rule taken at evaluation time."""

    id: str
    name: str
    type: ModerationRuleType
    config: dict
    action: ModerationRuleAction = ModerationRuleAction.REJECT
    priority: int = 100
    created_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, rule: ModerationRule) -> "RuleSpec":
        return cls(
            id=rule.id,
            name=rule.name,
            type=ModerationRuleType(rule.type),
            config=dict(rule.config or {}),
            action=ModerationRuleAction(rule.action),
            priority=rule.priority if rule.priority is not None else 100,
            created_at=rule.created_at,
        )

    @property
    def sort_key(self) -> tuple:
        # Stored timestamps come back naive; freshly flushed ones are aware UTC
        created = self.created_at.replace(tzinfo=None) if self.created_at else datetime.min
        return (self.priority, created, self.id)


@dataclass
class Verdict:
    """Outcome of evaluating one review."""

    kind: VerdictKind
    reason: Optional[str] = None
    rule: Optional[RuleSpec] = None
    ai_checked: bool = False
    analysis: Optional[ClassifierScores] = None
    fired_rules: list[str] = field(default_factory=list)

    @property
    def ai_rule_fired(self) -> bool:
        return self.rule is not None and self.rule.type == ModerationRuleType.AI

    def analysis_dict(self) -> Optional[dict[str, Any]]:
        return self.analysis.model_dump() if self.analysis else None


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ModerationRuleEngine:
    """Stateless evaluator; rules are passed in by the caller."""

    def __init__(self, classifier: Optional[ContentClassifier] = None):
        self.classifier = classifier
        self.settings = get_settings()

    def default_ai_rule(self) -> RuleSpec:
        return RuleSpec(
            id=DEFAULT_AI_RULE_ID,
            name="AI content check",
            type=ModerationRuleType.AI,
            config={
                "ai_model": self.settings.moderation_model,
                "threshold": self.settings.moderation_ai_threshold,
            },
            action=ModerationRuleAction.REJECT,
            priority=10**6,
        )

    def ordered_rules(self, rules, require_ai: bool = False) -> list[RuleSpec]:
        specs = [
            r if isinstance(r, RuleSpec) else RuleSpec.from_model(r)
            for r in rules
            if isinstance(r, RuleSpec) or r.enabled
        ]
        specs.sort(key=lambda r: r.sort_key)
        if require_ai and not any(r.type == ModerationRuleType.AI for r in specs):
            specs.append(self.default_ai_rule())
        return specs

    async def classify(self, title: str, content: str, model: str) -> ClassifierScores:
        if self.classifier is None:
            raise ClassifierError("no content classifier configured")
        try:
            return await asyncio.wait_for(
                self.classifier.classify(title, content, model=model),
                timeout=self.settings.classifier_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise ClassifierError(
                f"classification timed out after {self.settings.classifier_timeout_seconds:.0f}s",
                timeout=True,
            )
        except ClassifierError:
            raise
        except Exception as exc:
            raise ClassifierError(str(exc))

    async def evaluate(
        self,
        review,
        rules,
        skip_ai_check: bool = False,
        require_ai: bool = False,
    ) -> Verdict:
        """Evaluate a review (anything with ``title`` and ``content``).

        Raises ClassifierError when an AI rule cannot be evaluated.
        """
        title = review.title or ""
        content = review.content or ""
        lowered = content.lower()

        ai_checked = False
        analysis: Optional[ClassifierScores] = None
        scores_by_model: dict[str, ClassifierScores] = {}
        needs_human: Optional[Verdict] = None
        fired: list[str] = []

        for rule in self.ordered_rules(rules, require_ai=require_ai and not skip_ai_check):
            reason = None

            if rule.type == ModerationRuleType.KEYWORD:
                hits = [k for k in rule.config.get("keywords", []) if k.lower() in lowered]
                if hits:
                    reason = f"Matched moderation rule: {rule.name} (keyword '{hits[0]}')"

            elif rule.type == ModerationRuleType.PATTERN:
                if re.search(rule.config.get("pattern", ""), content):
                    reason = f"Matched moderation rule: {rule.name}"

            else:
                if skip_ai_check:
                    continue
                model = rule.config.get("ai_model") or self.settings.moderation_model
                if model not in scores_by_model:
                    scores_by_model[model] = await self.classify(title, content, model)
                analysis = scores_by_model[model]
                ai_checked = True
                failures = ai_check_failures(
                    analysis,
                    float(rule.config.get("threshold", self.settings.moderation_ai_threshold)),
                )
                if failures:
                    reason = "Failed AI check: " + "; ".join(failures)

            if reason is None:
                continue
            fired.append(rule.id)

            if rule.action == ModerationRuleAction.REJECT:
                return Verdict(
                    kind=VerdictKind.AUTO_REJECT,
                    reason=reason,
                    rule=rule,
                    ai_checked=ai_checked,
                    analysis=analysis,
                    fired_rules=fired,
                )
            if needs_human is None:
                needs_human = Verdict(kind=VerdictKind.REQUIRES_HUMAN, reason=reason, rule=rule)

        if needs_human is not None:
            needs_human.ai_checked = ai_checked
            needs_human.analysis = analysis
            needs_human.fired_rules = fired
            return needs_human

        if ai_checked or skip_ai_check:
            return Verdict(kind=VerdictKind.AUTO_APPROVE, ai_checked=ai_checked, analysis=analysis)
        return Verdict(
            kind=VerdictKind.REQUIRES_HUMAN,
            reason="No AI check configured",
            ai_checked=False,
        )


# ---------------------------------------------------------------------------
# Rule management
# ---------------------------------------------------------------------------


class ModerationRuleService:
    """Moderator CRUD over ModerationRule rows, each audited in ModerationLog."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_rules(self, enabled_only: bool = False) -> list[ModerationRule]:
        stmt = select(ModerationRule).order_by(
            ModerationRule.priority, ModerationRule.created_at, ModerationRule.id
        )
        if enabled_only:
            stmt = stmt.where(ModerationRule.enabled.is_(True))
        return list((await self.db.execute(stmt)).scalars().all())

    async def get_rule(self, rule_id: str) -> ModerationRule:
        rule = await self.db.get(ModerationRule, rule_id)
        if rule is None:
            raise NotFoundError("ModerationRule", rule_id)
        return rule

    async def create_rule(self, payload: RuleCreate, moderator_id: str) -> ModerationRule:
        config = validate_rule_config(payload.type, payload.config.model_dump(exclude_none=True))
        rule = ModerationRule(
            name=payload.name,
            type=payload.type.value,
            config=config,
            action=payload.action.value,
            priority=payload.priority,
            enabled=payload.enabled,
            created_by=moderator_id,
        )
        self.db.add(rule)
        await self.db.flush()
        self._audit(ModerationLogAction.CREATE_RULE, moderator_id, rule, f"Created rule {rule.name}")
        await self.db.commit()
        logger.info("Moderation rule %s (%s) created by %s", rule.id, rule.type, moderator_id)
        return rule

    async def update_rule(
        self, rule_id: str, payload: RuleUpdate, moderator_id: str
    ) -> ModerationRule:
        rule = await self.get_rule(rule_id)
        changes = payload.model_dump(exclude_unset=True)

        if "config" in changes and payload.config is not None:
            merged = {**(rule.config or {}), **payload.config.model_dump(exclude_none=True)}
            rule.config = validate_rule_config(rule.type, merged)
        if payload.name is not None:
            rule.name = payload.name
        if payload.action is not None:
            rule.action = payload.action.value
        if payload.priority is not None:
            rule.priority = payload.priority
        if payload.enabled is not None:
            rule.enabled = payload.enabled

        self._audit(
            ModerationLogAction.UPDATE_RULE, moderator_id, rule,
            f"Updated rule {rule.name}: {', '.join(sorted(changes)) or 'no fields'}",
        )
        await self.db.commit()
        logger.info("Moderation rule %s updated by %s (%s)", rule.id, moderator_id, sorted(changes))
        return rule

    async def delete_rule(self, rule_id: str, moderator_id: str) -> None:
        rule = await self.get_rule(rule_id)
        self._audit(ModerationLogAction.DELETE_RULE, moderator_id, rule, f"Deleted rule {rule.name}")
        await self.db.delete(rule)
        await self.db.commit()
        logger.info("Moderation rule %s deleted by %s", rule_id, moderator_id)

    def _audit(self, action: ModerationLogAction, moderator_id: str, rule: ModerationRule, reason: str):
        self.db.add(ModerationLog(
            moderator_id=moderator_id,
            action=action.value,
            reason=reason,
            note=f"rule_id={rule.id} type={rule.type} action={rule.action}",
        ))
