"""Booking status transitions keyed by (current status, actor role).

Pure functions: the booking store loads the booking, asks this module what
the transition changes, then persists the result inside its own transaction.
"""

from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional, Tuple

from servicefinder.models import Booking
from servicefinder.services.errors import AuthorizationError, InvalidTransitionError, ValidationError

PENDING = "PENDING"
CONFIRMED = "CONFIRMED"
IN_PROGRESS = "IN_PROGRESS"
COMPLETED = "COMPLETED"
CANCELLED = "CANCELLED"

ROLE_CUSTOMER = "customer"
ROLE_PROVIDER = "provider"

TERMINAL_STATUSES: FrozenSet[str] = frozenset({COMPLETED, CANCELLED})
# Statuses that still hold the provider's time for conflict checks.
ACTIVE_STATUSES: FrozenSet[str] = frozenset({PENDING, CONFIRMED, IN_PROGRESS, COMPLETED})
RESCHEDULABLE_STATUSES: FrozenSet[str] = frozenset({PENDING, CONFIRMED})

ALLOWED_TRANSITIONS: Dict[Tuple[str, str], FrozenSet[str]] = {
    (PENDING, ROLE_PROVIDER): frozenset({CONFIRMED, CANCELLED}),
    (PENDING, ROLE_CUSTOMER): frozenset({CANCELLED}),
    (CONFIRMED, ROLE_PROVIDER): frozenset({IN_PROGRESS, CANCELLED}),
    (CONFIRMED, ROLE_CUSTOMER): frozenset({CANCELLED}),
    (IN_PROGRESS, ROLE_PROVIDER): frozenset({COMPLETED, CANCELLED}),
}


def resolve_actor_role(booking: Booking, actor_user_id: str, provider_user_id: str) -> str:
    """Role by identity: the booking's customer or the assigned provider's user, nobody else."""
    if actor_user_id == provider_user_id:
        return ROLE_PROVIDER
    if actor_user_id == booking.customer_id:
        return ROLE_CUSTOMER
    raise AuthorizationError(f"User {actor_user_id} is not a party to booking {booking.id}")


def allowed_targets(current_status: str, role: str) -> FrozenSet[str]:
    return ALLOWED_TRANSITIONS.get((current_status, role), frozenset())


def plan_transition(
    booking: Booking,
    role: str,
    target_status: str,
    *,
    now: datetime,
    cancellation_reason: Optional[str] = None,
    actual_start: Optional[datetime] = None,
    actual_end: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Return the field updates for moving ``booking`` to ``target_status`` as ``role``."""
    current = booking.status
    if current in TERMINAL_STATUSES:
        raise InvalidTransitionError(
            current,
            target_status,
            f"Booking {booking.id} is {current} and can no longer change (requested {target_status})",
        )
    if target_status not in allowed_targets(current, role):
        raise InvalidTransitionError(
            current,
            target_status,
            f"Invalid status transition for {role}: {current} -> {target_status}",
        )

    updates: Dict[str, Any] = {"status": target_status}
    if target_status == IN_PROGRESS:
        updates["actual_start"] = actual_start or now
    elif target_status == COMPLETED:
        updates["actual_end"] = actual_end or now
    elif target_status == CANCELLED:
        reason = (cancellation_reason or "").strip()
        if not reason:
            raise ValidationError("A cancellation reason is required")
        updates["cancellation_reason"] = reason
        updates["cancelled_by"] = role
        updates["cancelled_at"] = now
    return updates
