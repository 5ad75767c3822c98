"""
Ride management service - Core ride lifecycle operations.

This module handles:
    - Creating ride requests
    - Accepting/declining rides
    - Cancelling rides
    - Refusing pickups inside red zones
    - Conditional status updates and search progress used by the dispatch engine
"""

from .ride_lifecycle import (
    RideResult,
    create_ride_request,
    get_ride,
    accept_ride,
    decline_offer,
    cancel_ride,
    conditional_update_status,
    claim_dispatch,
    update_search_state,
    queue_dispatch,
    release_scheduled_rides,
    requeue_stalled_searches,
    find_red_zone,
)

from .exceptions import (
    RideNotFoundError,
    RideNotAvailableError,
    PreconditionFailed,
    InvalidTransition,
    DriverNotAvailableError,
    ActiveRideExistsError,
    DispatchInProgress,
    ServiceUnavailableError,
)

__all__ = [
    "RideResult",
    "create_ride_request",
    "get_ride",
    "accept_ride",
    "decline_offer",
    "cancel_ride",
    "conditional_update_status",
    "claim_dispatch",
    "update_search_state",
    "queue_dispatch",
    "release_scheduled_rides",
    "requeue_stalled_searches",
    "find_red_zone",
    "RideNotFoundError",
    "RideNotAvailableError",
    "PreconditionFailed",
    "InvalidTransition",
    "DriverNotAvailableError",
    "ActiveRideExistsError",
    "DispatchInProgress",
    "ServiceUnavailableError",
]
