"""Domain enumerations for the GREIA marketplace core.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserRole(str, Enum):
    """Platform role of a user."""

    OWNER = "owner"
    AGENT = "agent"
    MODERATOR = "moderator"
    ADMIN = "admin"


class VerificationStatus(str, Enum):
    """Identity verification state of an agent."""

    UNVERIFIED = "unverified"
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


# ---------------------------------------------------------------------------
# Submissions and offers
# ---------------------------------------------------------------------------


class SubmissionStatus(str, Enum):
    """Lifecycle of a listing pending agent assignment."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    CLOSED = "closed"


class OfferStatus(str, Enum):
    """Lifecycle of an agent's offer. ACCEPTED and REJECTED are terminal."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class OfferKind(str, Enum):
    """Plain interest in representing a listing, or a valuation bid."""

    INTEREST = "interest"
    VALUATION = "valuation"


class OfferDecision(str, Enum):
    """Owner decision on a pending offer."""

    ACCEPT = "accept"
    REJECT = "reject"


# ---------------------------------------------------------------------------
# Commissions
# ---------------------------------------------------------------------------


class CommissionStatus(str, Enum):
    """Payment lifecycle of a commission. PAID is terminal."""

    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"


class GatewayOutcome(str, Enum):
    """Terminal outcome reported by the payment gateway for an intent."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


# ---------------------------------------------------------------------------
# Reviews and moderation
# ---------------------------------------------------------------------------


class ReviewStatus(str, Enum):
    """Moderation state of a review."""

    PENDING = "pending"
    FLAGGED = "flagged"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReviewFlagReason(str, Enum):
    """Why a user reported a review."""

    INAPPROPRIATE = "inappropriate"
    SPAM = "spam"
    OFFENSIVE = "offensive"
    FAKE = "fake"
    CONFLICT_OF_INTEREST = "conflict_of_interest"
    OTHER = "other"


class ReviewFlagStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"


class ModerationAction(str, Enum):
    """Moderator decision on a single review."""

    APPROVE = "approve"
    REJECT = "reject"


class ModerationLogAction(str, Enum):
    """Actions recorded in the moderation audit trail."""

    APPROVE = "approve"
    REJECT = "reject"
    BULK_MODERATE = "bulk_moderate"
    CREATE_RULE = "create_rule"
    UPDATE_RULE = "update_rule"
    DELETE_RULE = "delete_rule"


class ModerationRuleType(str, Enum):
    """How a moderation rule tests review content."""

    KEYWORD = "keyword"
    PATTERN = "pattern"
    AI = "ai"


class ModerationRuleAction(str, Enum):
    """What happens when a rule fires."""

    REJECT = "reject"
    FLAG = "flag"
    REQUIRE_REVIEW = "require_review"


class VerdictKind(str, Enum):
    """Outcome of evaluating a review against the moderation rules."""

    AUTO_APPROVE = "auto_approve"
    AUTO_REJECT = "auto_reject"
    REQUIRES_HUMAN = "requires_human"


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationType(str, Enum):
    """Realtime event names; also stored as the durable notification type."""

    NEW_PRIVATE_LISTING = "new-private-listing"
    OFFER_RECEIVED = "offer-received"
    OFFER_ACCEPTED = "offer-accepted"
    OFFER_REJECTED = "offer-rejected"
    COMMISSION_CREATED = "commission-created"
    COMMISSION_PAID = "commission-paid"
    COMMISSION_FAILED = "commission-failed"
    REVIEW_REJECTED = "review-rejected"
    REVIEW_FLAGGED = "review-flagged"
    REVIEW_HIDDEN = "review-hidden"
