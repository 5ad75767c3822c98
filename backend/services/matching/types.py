"""
Value types shared by the dispatch engine and its collaborators.

These are plain dataclasses and enums so the engine can run against the
Django-backed store in production and against in-memory fakes in tests.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


class RideStatus(str, enum.Enum):
    CREATED = "created"
    SEARCHING = "searching"
    ACCEPTED = "accepted"
    CANCELED = "canceled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RideStatus.ACCEPTED, RideStatus.CANCELED, RideStatus.EXPIRED})


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float


@dataclass
class RideSnapshot:
    """Point-in-time copy of a ride request, as read from a RequestStore."""
    id: Any
    rider_id: str
    pickup: GeoPoint
    vehicle_class: str = "standard"
    dropoff: Optional[GeoPoint] = None
    status: RideStatus = RideStatus.CREATED
    assigned_driver_id: Optional[str] = None
    excluded_driver_ids: List[str] = field(default_factory=list)
    search_radius_meters: float = 0
    dispatch_owner: Optional[str] = None
    created_at: Optional[datetime] = None
    scheduled_time: Optional[datetime] = None
    pickup_address: str = ""
    dropoff_address: str = ""


@dataclass(frozen=True)
class DriverCandidate:
    """A driver returned by a GeoIndex query. Location may be stale."""
    driver_id: str
    latitude: float
    longitude: float
    vehicle_class: str = ""
    distance_meters: float = 0.0


class OfferOutcome(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    SUPERSEDED = "superseded"


@dataclass
class Offer:
    """One driver-directed proposal. Lives only as long as the dispatch run."""
    request_id: Any
    driver_id: str
    sent_at: datetime
    deadline: datetime
    outcome: OfferOutcome = OfferOutcome.PENDING
    resolved_at: Optional[datetime] = None


@dataclass(frozen=True)
class RideChange:
    """
    A change pushed by RequestStore.subscribe.

    Status changes carry `status` (and `assigned_driver_id` on acceptance);
    explicit driver declines carry only `declined_driver_id`.
    """
    request_id: Any
    status: Optional[RideStatus] = None
    assigned_driver_id: Optional[str] = None
    declined_driver_id: Optional[str] = None


class TerminalStatus(str, enum.Enum):
    ASSIGNED = "assigned"
    NO_DRIVER_FOUND = "no_driver_found"
    CANCELED = "canceled"


@dataclass
class DispatchResult:
    """Result of one DispatchLoop.run call."""
    request_id: Any
    status: TerminalStatus
    driver_id: Optional[str] = None
    superseded: bool = False
    offers_sent: int = 0
    final_radius_meters: float = 0.0

    @property
    def assigned(self) -> bool:
        return self.status is TerminalStatus.ASSIGNED

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data
