"""
Distribution Request State Machine

This module is the SINGLE SOURCE OF TRUTH for distribution request and
deal status transitions. All status changes must go through this module.

    PENDING  -> APPROVED | REJECTED
    APPROVED -> COMPLETED (settlement only) | REJECTED (before settlement)
    REJECTED, COMPLETED: terminal
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from app.core.enum_utils import get_enum_value
from app.models.deal import DealStatus
from app.models.distribution import DistributionRequestStatus as RequestStatus
from app.services.distribution_errors import InvalidTransitionError


# =============================================================================
# TRANSITION RULES
# =============================================================================

REQUEST_TRANSITIONS: Dict[str, List[str]] = {
    RequestStatus.PENDING.value: [
        RequestStatus.APPROVED.value,   # Admin approves
        RequestStatus.REJECTED.value,   # Admin rejects
    ],
    RequestStatus.APPROVED.value: [
        RequestStatus.COMPLETED.value,  # Settlement committed
        RequestStatus.REJECTED.value,   # Rejected before settlement started
    ],
    RequestStatus.REJECTED.value: [],   # Terminal state
    RequestStatus.COMPLETED.value: [],  # Terminal state
}

# Human-readable action names for each transition
TRANSITION_ACTIONS: Dict[tuple, str] = {
    (RequestStatus.PENDING.value, RequestStatus.APPROVED.value): "APPROVED",
    (RequestStatus.PENDING.value, RequestStatus.REJECTED.value): "REJECTED",
    (RequestStatus.APPROVED.value, RequestStatus.COMPLETED.value): "SETTLED",
    (RequestStatus.APPROVED.value, RequestStatus.REJECTED.value): "REJECTED",
}

DEAL_TRANSITIONS: Dict[str, List[str]] = {
    DealStatus.DRAFT.value: [DealStatus.ACTIVE.value, DealStatus.CANCELLED.value],
    DealStatus.ACTIVE.value: [DealStatus.FUNDED.value, DealStatus.COMPLETED.value, DealStatus.CANCELLED.value],
    DealStatus.FUNDED.value: [DealStatus.COMPLETED.value],
    DealStatus.COMPLETED.value: [],
    DealStatus.CANCELLED.value: [],
}

# Deals that may still receive distribution requests
DISTRIBUTABLE_DEAL_STATUSES = (DealStatus.ACTIVE.value, DealStatus.FUNDED.value)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def can_transition(current_status: str, new_status: str) -> bool:
    """Check if a request transition is allowed."""
    allowed = REQUEST_TRANSITIONS.get(get_enum_value(current_status), [])
    return get_enum_value(new_status) in allowed


def get_allowed_transitions(current_status: str) -> List[str]:
    """Get list of statuses that can be transitioned to from current status."""
    return REQUEST_TRANSITIONS.get(get_enum_value(current_status), [])


def get_transition_action(current_status: str, new_status: str) -> str:
    """Get audit action name for a transition."""
    current_status, new_status = get_enum_value(current_status), get_enum_value(new_status)
    return TRANSITION_ACTIONS.get((current_status, new_status), f"{current_status} -> {new_status}")


def validate_transition(current_status: str, new_status: str) -> None:
    """
    Validate a request status transition.

    Raises:
        InvalidTransitionError: if the move is not in REQUEST_TRANSITIONS.
            Unlike a no-op update, staying in the same status is also rejected:
            approving an approved request twice is a caller bug.
    """
    current_status, new_status = get_enum_value(current_status), get_enum_value(new_status)
    if can_transition(current_status, new_status):
        return

    allowed = get_allowed_transitions(current_status)
    if not allowed:
        raise InvalidTransitionError(
            f"Distribution request in '{current_status}' status cannot be modified. This is a terminal state.",
            {"from_status": current_status, "to_status": new_status},
        )
    raise InvalidTransitionError(
        f"Cannot change distribution request from '{current_status}' to '{new_status}'. "
        f"Allowed transitions: {', '.join(allowed)}",
        {"from_status": current_status, "to_status": new_status, "allowed": allowed},
    )


def validate_deal_transition(current_status: str, new_status: str) -> None:
    """Validate a deal status transition."""
    current_status, new_status = get_enum_value(current_status), get_enum_value(new_status)
    if new_status not in DEAL_TRANSITIONS.get(current_status, []):
        raise InvalidTransitionError(
            f"Cannot change deal from '{current_status}' to '{new_status}'",
            {"from_status": current_status, "to_status": new_status},
        )


# =============================================================================
# STATUS CHECK HELPERS
# =============================================================================

def is_terminal(status: str) -> bool:
    """Is this a terminal (final) state?"""
    return not get_allowed_transitions(status)


def is_open(status: str) -> bool:
    """Does this request block new requests for its deal?"""
    return get_enum_value(status) in (RequestStatus.PENDING.value, RequestStatus.APPROVED.value)


def can_settle(status: str) -> bool:
    return get_enum_value(status) == RequestStatus.APPROVED.value


def can_receive_distributions(deal_status: str) -> bool:
    return get_enum_value(deal_status) in DISTRIBUTABLE_DEAL_STATUSES


# =============================================================================
# TRANSITION EXECUTOR
# =============================================================================

def transition_request(request, new_status: str, user_id=None, reason: Optional[str] = None) -> str:
    """
    Transition a DistributionRequest to a new status.

    Validates the move, updates the status and sets review/settlement
    audit fields. Returns the audit action name for the history entry.
    """
    current_status = request.status
    new_status = get_enum_value(new_status)

    validate_transition(current_status, new_status)

    request.status = new_status
    now = datetime.now(timezone.utc)

    if new_status in (RequestStatus.APPROVED.value, RequestStatus.REJECTED.value):
        request.reviewed_by = user_id
        request.reviewed_at = now
    if new_status == RequestStatus.REJECTED.value:
        request.rejection_reason = reason
    elif new_status == RequestStatus.COMPLETED.value:
        request.completed_at = now

    return get_transition_action(current_status, new_status)
