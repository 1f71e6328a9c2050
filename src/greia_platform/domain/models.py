"""SQLAlchemy ORM models for the GREIA marketplace core.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- DateTime for timestamps (stored as naive UTC)
- Numeric(12, 2) for money
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship

from greia_platform.domain.enums import (
    CommissionStatus,
    ModerationRuleAction,
    OfferKind,
    OfferStatus,
    ReviewFlagStatus,
    ReviewStatus,
    SubmissionStatus,
    VerificationStatus,
)
from greia_platform.infra.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class User(Base):
    """Platform user: listing owner, agent, moderator or admin."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default="owner")  # owner, agent, moderator, admin
    verification_status = Column(
        String(20), nullable=False, default=VerificationStatus.UNVERIFIED.value
    )
    is_active = Column(Boolean, default=True)
    # Stripe Connect account the agent is paid out to
    stripe_account_id = Column(String(255), nullable=True)
    # Postcode outward codes the agent covers, e.g. ["SW1A", "EC2"]
    service_areas = Column(JSON, default=list)
    agent_brokerage = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow)


# ---------------------------------------------------------------------------
# Agent routing
# ---------------------------------------------------------------------------


class Submission(Base):
    """A private listing waiting for an owner to pick an agent."""

    __tablename__ = "submissions"

    id = Column(String(36), primary_key=True, default=_uuid)
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(12, 2), nullable=False)
    postcode = Column(String(20), nullable=False)
    property_type = Column(String(50), nullable=True)
    details = Column(JSON, default=dict)
    status = Column(String(20), nullable=False, default=SubmissionStatus.PENDING.value, index=True)
    assigned_agent_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    agreed_commission = Column(Numeric(12, 2), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    closed_at = Column(DateTime, nullable=True)

    offers = relationship("Offer", back_populates="submission", order_by="Offer.created_at")


class Offer(Base):
    """An agent's interest or valuation bid against one submission."""

    __tablename__ = "offers"
    __table_args__ = (
        # One live (non-rejected) offer per agent per submission
        Index(
            "uq_offers_active_agent",
            "submission_id",
            "agent_id",
            unique=True,
            sqlite_where=text("status != 'rejected'"),
            postgresql_where=text("status != 'rejected'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    submission_id = Column(String(36), ForeignKey("submissions.id"), nullable=False, index=True)
    agent_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    kind = Column(String(20), nullable=False, default=OfferKind.INTEREST.value)
    proposed_value = Column(Numeric(12, 2), nullable=True)
    confidence = Column(Integer, nullable=True)  # 1-5
    message = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=OfferStatus.PENDING.value)
    decision_reason = Column(Text, nullable=True)
    decided_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    submission = relationship("Submission", back_populates="offers")
    commission = relationship("Commission", back_populates="offer", uselist=False)


class Conversation(Base):
    """Owner <-> agent thread opened when an offer is accepted."""

    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    submission_id = Column(String(36), ForeignKey("submissions.id"), nullable=True, index=True)
    participant_ids = Column(JSON, default=list)
    created_at = Column(DateTime, default=utcnow)

    messages = relationship("ConversationMessage", back_populates="conversation")


class ConversationMessage(Base):
    __tablename__ = "conversation_messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False, index=True)
    sender_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    conversation = relationship("Conversation", back_populates="messages")


# ---------------------------------------------------------------------------
# Commissions
# ---------------------------------------------------------------------------


class Commission(Base):
    """Fee owed to an agent once their offer is accepted. Never deleted.

    amount, listing_price, rate and platform_fee are written once at creation.
    """

    __tablename__ = "commissions"

    id = Column(String(36), primary_key=True, default=_uuid)
    listing_id = Column(String(36), ForeignKey("submissions.id"), nullable=False, index=True)
    agent_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    # Source offer; unique so an offer owns at most one commission
    inquiry_id = Column(String(36), ForeignKey("offers.id"), nullable=False, unique=True)
    listing_price = Column(Numeric(12, 2), nullable=False)
    rate = Column(Float, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    platform_fee = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="gbp")
    due_date = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default=CommissionStatus.PENDING.value, index=True)
    stripe_payment_id = Column(String(255), nullable=True, index=True)
    transaction_ref = Column(String(255), nullable=True)
    payment_attempts = Column(Integer, nullable=False, default=0)
    failure_reason = Column(Text, nullable=True)
    paid_date = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    offer = relationship("Offer", back_populates="commission")
    submission = relationship("Submission")


class GatewayEventRecord(Base):
    """Webhook events already applied; makes reconciliation idempotent."""

    __tablename__ = "gateway_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False)
    intent_id = Column(String(255), nullable=True)
    commission_id = Column(String(36), ForeignKey("commissions.id"), nullable=True, index=True)
    outcome = Column(String(20), nullable=True)
    processed_at = Column(DateTime, default=utcnow)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class Notification(Base):
    """Durable record that a user was told about a domain event."""

    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, default=dict)
    read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


# ---------------------------------------------------------------------------
# Reviews and moderation
# ---------------------------------------------------------------------------


class Review(Base):
    """User-submitted rating and text about a listing, service or agent."""

    __tablename__ = "reviews"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    item_id = Column(String(36), nullable=False, index=True)
    item_type = Column(String(50), nullable=False, default="property")
    rating = Column(Integer, nullable=False)
    title = Column(String(255), nullable=False, default="")
    content = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=ReviewStatus.PENDING.value, index=True)
    moderator_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    moderated_at = Column(DateTime, nullable=True)
    hidden_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    flags = relationship("ReviewFlag", back_populates="review")


class ReviewFlag(Base):
    """A user complaint about a review; resolved when the review is moderated."""

    __tablename__ = "review_flags"
    __table_args__ = (
        # One pending flag per user per review
        Index(
            "uq_review_flags_pending_user",
            "review_id",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    review_id = Column(String(36), ForeignKey("reviews.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    reason = Column(String(30), nullable=False)
    details = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=ReviewFlagStatus.PENDING.value)
    resolution = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    review = relationship("Review", back_populates="flags")


class ReviewAIAnalysis(Base):
    """Classifier output stored for a review that passed the AI gate."""

    __tablename__ = "review_ai_analyses"

    id = Column(String(36), primary_key=True, default=_uuid)
    review_id = Column(String(36), ForeignKey("reviews.id"), nullable=False, index=True)
    model = Column(String(100), nullable=True)
    sentiment = Column(Float, nullable=True)
    toxicity = Column(Float, nullable=False)
    spam_probability = Column(Float, nullable=False)
    fake_probability = Column(Float, nullable=False)
    keywords = Column(JSON, default=list)
    language = Column(String(20), nullable=True)
    content_flags = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)


class ModerationRule(Base):
    """Automated test applied to review content.

    config carries ``keywords`` (keyword), ``pattern`` (pattern) or
    ``ai_model`` + ``threshold`` (ai).
    """

    __tablename__ = "moderation_rules"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    type = Column(String(20), nullable=False)
    config = Column(JSON, nullable=False, default=dict)
    action = Column(String(20), nullable=False, default=ModerationRuleAction.REJECT.value)
    priority = Column(Integer, nullable=False, default=100)
    enabled = Column(Boolean, nullable=False, default=True)
    created_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ModerationLog(Base):
    """Append-only audit trail of moderation decisions. Never updated."""

    __tablename__ = "moderation_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    # Null for batch summaries and rule changes
    review_id = Column(String(36), ForeignKey("reviews.id"), nullable=True, index=True)
    moderator_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    action = Column(String(30), nullable=False)
    reason = Column(Text, nullable=True)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
