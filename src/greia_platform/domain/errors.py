"""Domain error taxonomy.

Every service raises one of these; the API layer renders them through a
single exception handler keyed on ``status_code``.
"""

from typing import Any, Optional


class GreiaError(Exception):
    """Base exception for the GREIA platform core."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(GreiaError):
    """Malformed input, tied to the field that was rejected."""

    status_code = 400
    code = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class AICheckFailedError(ValidationError):
    """Raised when a review fails the AI gate on a single approval."""

    status_code = 422
    code = "ai_check_failed"

    def __init__(self, message: str, analysis: Optional[dict] = None):
        self.analysis = analysis or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["ai_analysis"] = self.analysis
        return data


# ---------------------------------------------------------------------------
# Conflicts (optimistic-concurrency losses and duplicates)
# ---------------------------------------------------------------------------


class ConflictError(GreiaError):
    status_code = 409
    code = "conflict"


class DuplicateOfferError(ConflictError):
    code = "duplicate_offer"


class OfferAlreadyDecidedError(ConflictError):
    code = "offer_already_decided"


class SubmissionAlreadyAssignedError(ConflictError):
    code = "submission_already_assigned"


class SubmissionClosedError(ConflictError):
    code = "submission_closed"


class AlreadyExistsError(ConflictError):
    """A uniqueness rule was hit. Callers may treat this as success."""

    code = "already_exists"


class InvalidTransitionError(ConflictError):
    """Raised when a status transition is not allowed."""

    code = "invalid_transition"

    def __init__(self, current_status: Any, target_status: Any, reason: str):
        self.current_status = getattr(current_status, "value", current_status)
        self.target_status = getattr(target_status, "value", target_status)
        self.reason = reason
        super().__init__(
            f"Invalid transition from {self.current_status} to {self.target_status}: {reason}"
        )


# ---------------------------------------------------------------------------
# Lookup / access
# ---------------------------------------------------------------------------


class NotFoundError(GreiaError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class AuthorizationError(GreiaError):
    status_code = 403
    code = "forbidden"


class NotEligibleError(AuthorizationError):
    code = "not_eligible"


# ---------------------------------------------------------------------------
# External collaborators
# ---------------------------------------------------------------------------


class ExternalServiceError(GreiaError):
    status_code = 502
    code = "external_service_error"

    def __init__(self, service: str, message: str, timeout: bool = False):
        self.service = service
        self.timeout = timeout
        super().__init__(f"{service}: {message}")


class ClassifierError(ExternalServiceError):
    code = "classifier_error"

    def __init__(self, message: str, timeout: bool = False):
        super().__init__("content_classifier", message, timeout=timeout)


class PaymentGatewayError(ExternalServiceError):
    code = "payment_gateway_error"

    def __init__(self, message: str, timeout: bool = False, decline_code: Optional[str] = None):
        self.decline_code = decline_code
        super().__init__("payment_gateway", message, timeout=timeout)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class PolicyViolationError(GreiaError):
    """Moderation rule configuration is missing fields its type requires."""

    status_code = 422
    code = "policy_violation"
