"""
Driver matching and offer dispatch engine.

This package handles:
    - Searching for drivers in an expanding radius around the pickup
    - Offering the ride to one driver at a time under a deadline
    - Listening for acceptance from any driver while a search runs

The engine only talks to its collaborators through the protocols in
`contracts`; `factory.build_dispatch_loop` wires the production ones.
"""

from .acceptance import AcceptanceListener
from .config import DispatchConfig, get_dispatch_config
from .dispatch_loop import DispatchLoop
from .exceptions import (
    DispatchInProgress,
    GeoIndexUnavailable,
    InvalidTransition,
    NotificationError,
    PreconditionFailed,
    RideNotAvailableError,
    RideNotFoundError,
)
from .exclusion import ExclusionTracker
from .manager import DispatchManager
from .offer_coordinator import OfferCoordinator
from .radius import RadiusExpander
from .types import (
    DispatchResult,
    DriverCandidate,
    GeoPoint,
    Offer,
    OfferOutcome,
    RideChange,
    RideSnapshot,
    RideStatus,
    TerminalStatus,
)

__all__ = [
    "AcceptanceListener",
    "DispatchConfig",
    "get_dispatch_config",
    "DispatchLoop",
    "DispatchManager",
    "ExclusionTracker",
    "OfferCoordinator",
    "RadiusExpander",
    # Types
    "DispatchResult",
    "DriverCandidate",
    "GeoPoint",
    "Offer",
    "OfferOutcome",
    "RideChange",
    "RideSnapshot",
    "RideStatus",
    "TerminalStatus",
    # Exceptions
    "DispatchInProgress",
    "GeoIndexUnavailable",
    "InvalidTransition",
    "NotificationError",
    "PreconditionFailed",
    "RideNotAvailableError",
    "RideNotFoundError",
]
