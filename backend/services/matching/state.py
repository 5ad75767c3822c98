"""Ride request state machine: the transitions a conditional update may perform."""

from typing import Any, Dict, Mapping, Optional

from .exceptions import InvalidTransition
from .types import RideStatus

ALLOWED_TRANSITIONS: Dict[RideStatus, frozenset] = {
    RideStatus.CREATED: frozenset({RideStatus.SEARCHING, RideStatus.CANCELED}),
    RideStatus.SEARCHING: frozenset({RideStatus.ACCEPTED, RideStatus.CANCELED, RideStatus.EXPIRED}),
}


def check_transition(
    expected_status,
    new_status,
    extra: Optional[Mapping[str, Any]] = None,
) -> tuple:
    """
    Validate a requested transition and return it as a pair of RideStatus.

    Acceptance must name the assigned driver; no other transition may.

    Raises:
        InvalidTransition: If the transition or its extra fields are not allowed
    """
    try:
        expected = RideStatus(expected_status)
        new = RideStatus(new_status)
    except ValueError as exc:
        raise InvalidTransition(str(exc)) from exc

    if new not in ALLOWED_TRANSITIONS.get(expected, frozenset()):
        raise InvalidTransition(f"Cannot move a ride from {expected.value} to {new.value}")

    extra = extra or {}
    if new is RideStatus.ACCEPTED and not extra.get("assigned_driver_id"):
        raise InvalidTransition("Accepting a ride requires assigned_driver_id")
    if new is not RideStatus.ACCEPTED and extra.get("assigned_driver_id"):
        raise InvalidTransition("Only an accepted ride can have an assigned driver")

    return expected, new
