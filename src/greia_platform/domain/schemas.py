"""Pydantic v2 schemas for API request/response validation."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from greia_platform.domain.enums import (
    GatewayOutcome,
    ModerationAction,
    ModerationRuleAction,
    ModerationRuleType,
    NotificationType,
    OfferDecision,
    OfferKind,
    ReviewFlagReason,
)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    service: str


# ---------------------------------------------------------------------------
# Submissions & offers
# ---------------------------------------------------------------------------


class SubmissionCreate(BaseModel):
    """Owner request to list a property privately with agents."""

    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    price: Decimal = Field(gt=0)
    postcode: str = Field(min_length=2, max_length=20)
    property_type: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    @field_validator("postcode")
    @classmethod
    def _normalise_postcode(cls, value: str) -> str:
        return value.strip().upper()


class SubmissionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    title: str
    description: str | None = None
    price: Decimal
    postcode: str
    property_type: str | None = None
    details: dict[str, Any] | None = None
    status: str
    assigned_agent_id: str | None = None
    agreed_commission: Decimal | None = None
    created_at: datetime | None = None
    closed_at: datetime | None = None


class OfferPayload(BaseModel):
    """Agent interest or valuation bid.

    A valuation must carry both a proposed value and a confidence score;
    a plain interest may carry either or neither.
    """

    kind: OfferKind = OfferKind.INTEREST
    proposed_value: Decimal | None = Field(default=None, gt=0)
    confidence: int | None = Field(default=None, ge=1, le=5)
    message: str | None = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def _valuation_fields(self) -> "OfferPayload":
        if self.kind == OfferKind.VALUATION:
            if self.proposed_value is None:
                raise ValueError("valuation offers require proposed_value")
            if self.confidence is None:
                raise ValueError("valuation offers require confidence")
        return self


class OfferResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    submission_id: str
    agent_id: str
    kind: str
    proposed_value: Decimal | None = None
    confidence: int | None = None
    message: str | None = None
    status: str
    decision_reason: str | None = None
    decided_at: datetime | None = None
    created_at: datetime | None = None


class OfferDecisionRequest(BaseModel):
    decision: OfferDecision
    reason: str | None = Field(default=None, max_length=1000)


# ---------------------------------------------------------------------------
# Commissions
# ---------------------------------------------------------------------------


class CommissionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    listing_id: str
    agent_id: str
    inquiry_id: str
    listing_price: Decimal
    rate: float
    amount: Decimal
    platform_fee: Decimal
    currency: str
    due_date: datetime
    status: str
    stripe_payment_id: str | None = None
    transaction_ref: str | None = None
    payment_attempts: int = 0
    failure_reason: str | None = None
    paid_date: datetime | None = None
    notes: str | None = None
    created_at: datetime | None = None


class PaymentIntentResult(BaseModel):
    """What the gateway returned when an intent was created."""

    intent_id: str
    status: str


class GatewayEvent(BaseModel):
    """Normalized webhook delivery from the payment gateway.

    Delivery is at-least-once and may arrive out of order.
    """

    event_id: str
    event_type: str
    intent_id: str
    outcome: GatewayOutcome
    metadata: dict[str, str] = Field(default_factory=dict)
    transaction_ref: str | None = None
    failure_reason: str | None = None


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationEvent(BaseModel):
    """A domain event addressed to a single user."""

    user_id: str
    type: NotificationType
    title: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def channel(self) -> str:
        return f"private-user-{self.user_id}"


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    type: str
    title: str
    message: str
    data: dict[str, Any] | None = None
    read: bool
    read_at: datetime | None = None
    created_at: datetime | None = None


class MarkReadRequest(BaseModel):
    notification_ids: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Reviews & moderation
# ---------------------------------------------------------------------------


class ClassifierScores(BaseModel):
    """Content classifier output. Probabilities are in [0, 1]."""

    toxicity: float = Field(ge=0, le=1)
    spam_probability: float = Field(ge=0, le=1)
    fake_probability: float = Field(ge=0, le=1)
    content_flags: dict[str, bool] = Field(default_factory=dict)
    sentiment: float | None = None
    keywords: list[str] = Field(default_factory=list)
    language: str | None = None


class ContentFlags(BaseModel):
    hate_speech: bool = False
    profanity: bool = False
    personal_attack: bool = False
    sexual_content: bool = False


class ReviewAnalysisResponse(BaseModel):
    """Structured output requested from the review analysis model."""

    toxicity: float = Field(ge=0, le=1)
    spam_probability: float = Field(ge=0, le=1)
    fake_probability: float = Field(ge=0, le=1)
    sentiment: float = Field(ge=-1, le=1)
    content_flags: ContentFlags
    keywords: list[str] = Field(default_factory=list)
    language: str = "en"


class ReviewResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    item_id: str
    item_type: str
    rating: int
    title: str
    content: str
    status: str
    moderator_id: str | None = None
    moderated_at: datetime | None = None
    hidden_at: datetime | None = None
    created_at: datetime | None = None


class ReviewFlagCreate(BaseModel):
    reason: ReviewFlagReason
    details: str | None = Field(default=None, max_length=2000)


class ModerationRequest(BaseModel):
    """Moderator decision on a single review."""

    action: ModerationAction
    reason: str | None = Field(default=None, max_length=1000)
    note: str | None = Field(default=None, max_length=2000)
    skip_ai_check: bool = False


class ModerationDecisionItem(BaseModel):
    review_id: str
    action: ModerationAction
    reason: str | None = Field(default=None, max_length=1000)
    note: str | None = Field(default=None, max_length=2000)


class BulkModerationRequest(BaseModel):
    decisions: list[ModerationDecisionItem] = Field(min_length=1, max_length=500)
    skip_ai_check: bool = False


class BulkItemResult(BaseModel):
    review_id: str
    action: ModerationAction
    reason: str | None = None
    ai_analysis: dict[str, Any] | None = None


class BulkModerationResults(BaseModel):
    success: list[BulkItemResult] = Field(default_factory=list)
    failed: list[BulkItemResult] = Field(default_factory=list)
    skipped: list[BulkItemResult] = Field(default_factory=list)


class BulkModerationSummary(BaseModel):
    """Full outcome of a bulk moderation batch, returned even on partial failure."""

    total: int
    succeeded: int
    failed: int
    skipped: int
    results: BulkModerationResults


class RuleConfig(BaseModel):
    keywords: list[str] | None = None
    pattern: str | None = None
    ai_model: str | None = None
    threshold: float | None = None


class RuleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    type: ModerationRuleType
    config: RuleConfig
    action: ModerationRuleAction = ModerationRuleAction.REJECT
    priority: int = 100
    enabled: bool = True


class RuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    config: RuleConfig | None = None
    action: ModerationRuleAction | None = None
    priority: int | None = None
    enabled: bool | None = None


class ModerationRuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    type: str
    config: dict[str, Any]
    action: str
    priority: int
    enabled: bool
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ModerationLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    review_id: str | None = None
    moderator_id: str
    action: str
    reason: str | None = None
    note: str | None = None
    created_at: datetime | None = None
