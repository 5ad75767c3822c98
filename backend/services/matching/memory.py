"""
In-memory RequestStore, GeoIndex and NotificationGateway.

Used by the engine tests and by `manage.py dispatch_ride --dry-run`. Every
store write happens without awaiting, so each conditional update is atomic
with respect to other tasks on the same event loop.
"""

import inspect
import itertools
import logging
from dataclasses import replace
from datetime import timedelta
from typing import Any, Callable, Collection, Dict, Iterable, List, Mapping, Optional, Tuple

from django.utils import timezone

from .contracts import OnChange
from .exceptions import GeoIndexUnavailable, NotificationError, PreconditionFailed, RideNotFoundError
from .state import check_transition
from .types import DriverCandidate, GeoPoint, RideChange, RideSnapshot, RideStatus

logger = logging.getLogger(__name__)


class MemorySubscription:

    def __init__(self, store: "InMemoryRequestStore", request_id: Any, on_change: OnChange):
        self._store = store
        self._request_id = request_id
        self._on_change = on_change
        self.closed = False

    async def close(self):
        if not self.closed:
            self.closed = True
            self._store._unsubscribe(self._request_id, self._on_change)


class InMemoryRequestStore:

    def __init__(self):
        self._rides: Dict[Any, RideSnapshot] = {}
        self._subscribers: Dict[Any, List[OnChange]] = {}
        self._ids = itertools.count(1)
        self._lease_expiry: Dict[Any, Any] = {}
        # (request_id, old status, new status) for every applied transition
        self.transitions: List[Tuple[Any, RideStatus, RideStatus]] = []

    def add(self, ride: RideSnapshot) -> RideSnapshot:
        ride = _copy(ride)
        if ride.id is None:
            ride.id = next(self._ids)
        if ride.created_at is None:
            ride.created_at = timezone.now()
        self._rides[ride.id] = ride
        return _copy(ride)

    async def create(self, ride: RideSnapshot) -> RideSnapshot:
        return self.add(ride)

    async def get(self, request_id: Any) -> RideSnapshot:
        return _copy(self._require(request_id))

    async def conditional_update_status(
        self,
        request_id: Any,
        expected_status: RideStatus,
        new_status: RideStatus,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> RideSnapshot:
        return self.apply_transition(request_id, expected_status, new_status, extra)

    def apply_transition(self, request_id, expected_status, new_status, extra=None) -> RideSnapshot:
        expected, new = check_transition(expected_status, new_status, extra)
        ride = self._require(request_id)
        if ride.status is not expected:
            raise PreconditionFailed(request_id, expected, ride.status)

        ride.status = new
        if new is RideStatus.ACCEPTED:
            ride.assigned_driver_id = str(extra["assigned_driver_id"])
            ride.excluded_driver_ids = [
                driver_id for driver_id in ride.excluded_driver_ids
                if driver_id != ride.assigned_driver_id
            ]
        self.transitions.append((request_id, expected, new))
        logger.debug("Ride %s: %s -> %s", request_id, expected.value, new.value)

        self._publish(RideChange(
            request_id=request_id,
            status=new,
            assigned_driver_id=ride.assigned_driver_id,
        ))
        return _copy(ride)

    def accept(self, request_id: Any, driver_id) -> RideSnapshot:
        return self.apply_transition(
            request_id, RideStatus.SEARCHING, RideStatus.ACCEPTED,
            {"assigned_driver_id": str(driver_id)},
        )

    def cancel(self, request_id: Any) -> RideSnapshot:
        ride = self._require(request_id)
        return self.apply_transition(request_id, ride.status, RideStatus.CANCELED)

    def decline(self, request_id: Any, driver_id):
        ride = self._require(request_id)
        if ride.status is RideStatus.SEARCHING:
            self._publish(RideChange(request_id=request_id, declined_driver_id=str(driver_id)))

    async def record_decline(self, request_id: Any, driver_id: str) -> None:
        self.decline(request_id, driver_id)

    async def claim_dispatch(self, request_id: Any, owner: str, lease_seconds: float) -> bool:
        ride = self._require(request_id)
        if ride.status.is_terminal:
            return False
        now = timezone.now()
        if ride.dispatch_owner not in (None, owner) and self._lease_expiry.get(request_id, now) > now:
            return False
        ride.dispatch_owner = owner
        self._lease_expiry[request_id] = now + timedelta(seconds=lease_seconds)
        return True

    def expire_lease(self, request_id: Any):
        """Let the current lease run out, as if its owner had died."""
        self._lease_expiry[request_id] = timezone.now() - timedelta(seconds=1)

    async def update_search_state(
        self,
        request_id: Any,
        search_radius_meters: float,
        excluded_driver_ids: Collection[str],
        owner: Optional[str] = None,
        lease_seconds: Optional[float] = None,
    ) -> bool:
        ride = self._require(request_id)
        if ride.status is not RideStatus.SEARCHING:
            return False
        if owner is not None and ride.dispatch_owner != owner:
            return False
        merged = list(ride.excluded_driver_ids)
        merged.extend(str(d) for d in excluded_driver_ids if str(d) not in merged)
        ride.excluded_driver_ids = merged
        ride.search_radius_meters = search_radius_meters
        if owner is not None and lease_seconds is not None:
            self._lease_expiry[request_id] = timezone.now() + timedelta(seconds=lease_seconds)
        return True

    async def subscribe(self, request_id: Any, on_change: OnChange) -> MemorySubscription:
        self._require(request_id)
        self._subscribers.setdefault(request_id, []).append(on_change)
        return MemorySubscription(self, request_id, on_change)

    def subscriber_count(self, request_id: Any) -> int:
        return len(self._subscribers.get(request_id, ()))

    def _unsubscribe(self, request_id: Any, on_change: OnChange):
        callbacks = self._subscribers.get(request_id, [])
        if on_change in callbacks:
            callbacks.remove(on_change)
        if not callbacks:
            self._subscribers.pop(request_id, None)

    def _publish(self, change: RideChange):
        for callback in list(self._subscribers.get(change.request_id, ())):
            try:
                callback(change)
            except Exception:
                logger.exception("Subscriber for ride %s failed", change.request_id)

    def _require(self, request_id: Any) -> RideSnapshot:
        try:
            return self._rides[request_id]
        except KeyError:
            raise RideNotFoundError(f"Ride {request_id} not found") from None


class StaticGeoIndex:
    """
    GeoIndex over a fixed list of candidates with preset distances.

    `honor_exclusions=False` mimics an index that ignores the exclusion hint,
    `failures` makes the next N queries raise GeoIndexUnavailable.
    """

    def __init__(self, candidates: Iterable[DriverCandidate] = (), honor_exclusions: bool = True, failures: int = 0):
        self.candidates: List[DriverCandidate] = list(candidates)
        self.honor_exclusions = honor_exclusions
        self.failures = failures
        self.queries: List[Tuple[float, Tuple[str, ...]]] = []

    def add(self, driver_id, distance_meters: float, vehicle_class: str = "") -> DriverCandidate:
        candidate = DriverCandidate(
            driver_id=str(driver_id),
            latitude=0.0,
            longitude=0.0,
            vehicle_class=vehicle_class,
            distance_meters=float(distance_meters),
        )
        self.candidates.append(candidate)
        return candidate

    def remove(self, driver_id):
        self.candidates = [c for c in self.candidates if c.driver_id != str(driver_id)]

    async def find_candidates(
        self,
        center: GeoPoint,
        radius_meters: float,
        vehicle_class: str,
        exclude_ids: Collection[str],
    ) -> List[DriverCandidate]:
        excluded = tuple(str(d) for d in exclude_ids)
        self.queries.append((radius_meters, excluded))
        if self.failures > 0:
            self.failures -= 1
            raise GeoIndexUnavailable("Driver index unavailable")

        skip = set(excluded) if self.honor_exclusions else set()
        return [
            c for c in self.candidates
            if c.distance_meters <= radius_meters
            and c.driver_id not in skip
            and (not vehicle_class or not c.vehicle_class or c.vehicle_class == vehicle_class)
        ]

    @property
    def radii(self) -> List[float]:
        return [radius for radius, _ in self.queries]


class RecordingGateway:
    """
    NotificationGateway that records every payload.

    `on_notify(driver_id, request_id, payload)` runs after recording and may
    be a coroutine function; tests use it to script driver responses.
    """

    def __init__(self, on_notify: Optional[Callable] = None, fail_for: Iterable = ()):
        self.on_notify = on_notify
        self.fail_for = {str(d) for d in fail_for}
        self.sent: List[Tuple[str, Any, Dict[str, Any]]] = []

    async def notify_driver(self, driver_id: str, request_id: Any, payload: Dict[str, Any]) -> None:
        driver_id = str(driver_id)
        self.sent.append((driver_id, request_id, dict(payload)))
        if driver_id in self.fail_for:
            raise NotificationError(f"Driver {driver_id} is unreachable")
        if self.on_notify is not None:
            result = self.on_notify(driver_id, request_id, payload)
            if inspect.isawaitable(result):
                await result

    def offers_to(self) -> List[str]:
        """Driver IDs that received a ride offer, in send order."""
        return [driver_id for driver_id, _, payload in self.sent if payload.get("type") == "ride_offer"]

    def messages_for(self, driver_id) -> List[str]:
        return [payload.get("type") for d, _, payload in self.sent if d == str(driver_id)]


def _copy(ride: RideSnapshot) -> RideSnapshot:
    return replace(ride, excluded_driver_ids=list(ride.excluded_driver_ids))
