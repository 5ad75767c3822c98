"""
Contracts the dispatch engine expects from its collaborators.

Production implementations:
    - RequestStore: services.ride_management.store.DjangoRequestStore
    - GeoIndex: realtime.geo.RedisGeoIndex, drivers.geo_index.DatabaseGeoIndex
    - NotificationGateway: realtime.notifications.ChannelLayerGateway

In-memory implementations for tests and local runs live in
services.matching.memory.
"""

from typing import Any, Callable, Collection, Dict, List, Mapping, Optional, Protocol, runtime_checkable

from .types import DriverCandidate, GeoPoint, RideChange, RideSnapshot, RideStatus

OnChange = Callable[[RideChange], None]


@runtime_checkable
class Subscription(Protocol):
    """Handle returned by RequestStore.subscribe. Closing it stops delivery."""

    async def close(self) -> None: ...


@runtime_checkable
class RequestStore(Protocol):
    """
    Durable, observable record of ride requests.

    Status changes go through conditional_update_status, which fails with
    PreconditionFailed when the current status is not the expected one.

    At most one dispatcher works on a request at a time: claim_dispatch grants
    a lease that update_search_state renews, and a dispatcher that cannot
    claim or renew it must stop.
    """

    async def create(self, ride: RideSnapshot) -> RideSnapshot: ...

    async def get(self, request_id: Any) -> RideSnapshot: ...

    async def conditional_update_status(
        self,
        request_id: Any,
        expected_status: RideStatus,
        new_status: RideStatus,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> RideSnapshot: ...

    async def claim_dispatch(self, request_id: Any, owner: str, lease_seconds: float) -> bool:
        """Take (or renew) the dispatch lease. False once settled or while another owner holds a live lease."""

    async def update_search_state(
        self,
        request_id: Any,
        search_radius_meters: float,
        excluded_driver_ids: Collection[str],
        owner: Optional[str] = None,
        lease_seconds: Optional[float] = None,
    ) -> bool:
        """
        Persist search progress and renew the owner's lease.

        Returns False once the ride is no longer searching or, when owner is
        given, once another dispatcher holds the lease.
        """

    async def record_decline(self, request_id: Any, driver_id: str) -> None: ...

    async def subscribe(self, request_id: Any, on_change: OnChange) -> Subscription: ...


@runtime_checkable
class GeoIndex(Protocol):
    """Proximity query over last-known driver locations."""

    async def find_candidates(
        self,
        center: GeoPoint,
        radius_meters: float,
        vehicle_class: str,
        exclude_ids: Collection[str],
    ) -> List[DriverCandidate]: ...


@runtime_checkable
class NotificationGateway(Protocol):
    """Fire-and-forget delivery of a payload to one driver's device."""

    async def notify_driver(self, driver_id: str, request_id: Any, payload: Dict[str, Any]) -> None: ...
