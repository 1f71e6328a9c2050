"""Commission state machine: validates payment lifecycle transitions.

PENDING -> PROCESSING -> {PAID | FAILED}; FAILED may re-enter PROCESSING for
a retry. PAID is terminal.
"""

from greia_platform.domain.enums import CommissionStatus
from greia_platform.domain.errors import InvalidTransitionError

S = CommissionStatus

TRANSITION_MAP: dict[CommissionStatus, set[CommissionStatus]] = {
    S.PENDING: {S.PROCESSING},
    S.PROCESSING: {S.PAID, S.FAILED},
    S.FAILED: {S.PROCESSING},
    S.PAID: set(),
}

TERMINAL_STATES: set[CommissionStatus] = {S.PAID}

# Statuses from which a payment attempt may be started
PAYABLE_STATES: set[CommissionStatus] = {
    s for s, targets in TRANSITION_MAP.items() if S.PROCESSING in targets
}


class CommissionStateMachine:
    """Validates commission status transitions."""

    def validate_transition(self, current_status, target_status) -> bool:
        """Return True if the transition is valid. Raise InvalidTransitionError if not."""
        current = S(current_status)
        target = S(target_status)

        if current in TERMINAL_STATES:
            raise InvalidTransitionError(
                current, target, f"Commission is {current.value}; no further transitions"
            )
        if target not in TRANSITION_MAP[current]:
            raise InvalidTransitionError(
                current,
                target,
                f"Transition from {current.value} to {target.value} is not allowed",
            )
        return True

    def can_transition(self, current_status, target_status) -> bool:
        return S(target_status) in TRANSITION_MAP[S(current_status)]

    def get_allowed_transitions(self, current_status) -> list[CommissionStatus]:
        return sorted(TRANSITION_MAP[S(current_status)], key=lambda s: s.value)
