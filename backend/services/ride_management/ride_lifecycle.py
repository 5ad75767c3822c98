"""
Core ride lifecycle operations.

This module contains all the business logic for changing a ride request,
used by the REST views, the driver WebSocket consumer and (through
DjangoRequestStore) the dispatch engine.

Every status change is a conditional update: the row is locked, its status
compared with the expected one, and the change published on the ride group
`ride_<id>` once the transaction commits.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Collection, Dict, List, Mapping, Optional

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.conf import settings
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from drivers.models import DriverProfile
from drivers.services import update_driver_status
from rides.models import RedZone, RideRequest
from services.matching.config import get_dispatch_config
from services.matching.state import check_transition
from services.matching.types import RideStatus
from .exceptions import (
    ActiveRideExistsError,
    DriverNotAvailableError,
    PreconditionFailed,
    RideNotAvailableError,
    RideNotFoundError,
    ServiceUnavailableError,
)

logger = logging.getLogger(__name__)

OPEN_STATUSES = [RideStatus.CREATED.value, RideStatus.SEARCHING.value]
RED_ZONE_MESSAGE = "Service is temporarily unavailable in this area."


@dataclass
class RideResult:
    """Result object for ride operations."""
    success: bool
    ride: Optional[RideRequest] = None
    message: str = ""
    error_code: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None


def ride_group_name(ride_id) -> str:
    return f"ride_{ride_id}"


# ===================== Rider Operations =====================

def check_active_ride(rider_id) -> Optional[RideRequest]:
    """Check if the rider has a request still waiting for a driver."""
    return RideRequest.objects.filter(
        rider_id=str(rider_id),
        status__in=OPEN_STATUSES,
    ).first()


def scheduled_release_lead() -> timedelta:
    return timedelta(seconds=getattr(settings, "SCHEDULED_RELEASE_LEAD_SECONDS", 900))


def find_red_zone(latitude, longitude) -> Optional[RedZone]:
    """Return the active red zone containing the point, if any."""
    for zone in RedZone.objects.filter(is_active=True):
        if zone.contains(latitude, longitude):
            return zone
    return None


def is_due_for_dispatch(ride: RideRequest, now=None) -> bool:
    """Immediate requests are always due; scheduled ones once inside the release lead."""
    if ride.scheduled_time is None:
        return True
    now = now or timezone.now()
    return ride.scheduled_time <= now + scheduled_release_lead()


@transaction.atomic
def create_ride_request(
    rider_id,
    pickup_latitude,
    pickup_longitude,
    pickup_address: str = "",
    dropoff_latitude=None,
    dropoff_longitude=None,
    dropoff_address: str = "",
    vehicle_class: str = "standard",
    scheduled_time=None,
) -> RideResult:
    """
    Create a new ride request and queue the driver search.

    Args:
        rider_id: External rider identifier
        pickup_latitude: Pickup location latitude
        pickup_longitude: Pickup location longitude
        pickup_address: Human-readable pickup address
        dropoff_latitude: Dropoff location latitude (optional)
        dropoff_longitude: Dropoff location longitude (optional)
        dropoff_address: Human-readable dropoff address
        vehicle_class: Requested vehicle class
        scheduled_time: Pickup time for a scheduled ride (optional)

    Returns:
        RideResult with the created ride

    Raises:
        ActiveRideExistsError: If rider already has an open request
        ServiceUnavailableError: If the pickup lies inside an active red zone
    """
    existing = check_active_ride(rider_id)
    if existing:
        raise ActiveRideExistsError("You already have an active ride request")

    zone = find_red_zone(pickup_latitude, pickup_longitude)
    if zone is not None:
        logger.info("Refused ride for rider %s: pickup inside red zone %s", rider_id, zone.name)
        raise ServiceUnavailableError(RED_ZONE_MESSAGE, zone=zone)

    ride = RideRequest.objects.create(
        rider_id=str(rider_id),
        pickup_latitude=pickup_latitude,
        pickup_longitude=pickup_longitude,
        pickup_address=pickup_address or "",
        dropoff_latitude=dropoff_latitude,
        dropoff_longitude=dropoff_longitude,
        dropoff_address=dropoff_address or "",
        vehicle_class=vehicle_class or "standard",
        scheduled_time=scheduled_time,
        status=RideStatus.CREATED.value,
    )

    if is_due_for_dispatch(ride):
        queue_dispatch(ride.id)
        queued = True
        message = "Searching for nearby drivers..."
    else:
        queued = False
        message = "Ride scheduled. We will start searching for drivers closer to pickup time."

    logger.info("Ride %s created for rider %s (dispatch queued: %s)", ride.id, rider_id, queued)
    return RideResult(
        success=True,
        ride=ride,
        message=message,
        extra={"dispatch_queued": queued},
    )


def queue_dispatch(ride_id):
    """
    Start the driver search once the surrounding transaction commits.

    The queue time is kept until a dispatcher claims the ride, so the beat
    sweeps leave it alone while the request is on its way.
    """
    RideRequest.objects.filter(id=ride_id).update(dispatch_queued_at=timezone.now())
    transaction.on_commit(lambda: send_dispatch(ride_id))


def send_dispatch(ride_id):
    """Hand a ride to the configured runner (the dispatch worker or Celery)."""
    if getattr(settings, "DISPATCH_RUNNER", "worker") == "worker":
        from realtime.dispatch_worker import request_dispatch
        request_dispatch(ride_id)
    else:
        from rides.tasks import dispatch_ride_task
        dispatch_ride_task.delay(ride_id)


def _dispatch_pending(now) -> Q:
    """Rides queued for, or held by, a dispatcher that has not let go yet."""
    window = timedelta(seconds=get_dispatch_config().lease_seconds)
    return Q(dispatch_queued_at__gt=now - window) | Q(dispatch_lease_expires_at__gt=now)


def get_ride(ride_id) -> RideRequest:
    try:
        return RideRequest.objects.get(id=ride_id)
    except (RideRequest.DoesNotExist, ValueError):
        raise RideNotFoundError("Ride not found")


def cancel_ride(ride_id, reason: str = "No reason provided", rider_id=None) -> RideResult:
    """
    Cancel a ride request that has no driver yet.

    Args:
        ride_id: ID of the ride to cancel
        reason: Cancellation reason
        rider_id: When given, the ride must belong to this rider

    Returns:
        RideResult with cancellation status

    Raises:
        RideNotFoundError: If the ride does not exist (or is not the rider's)
        RideNotAvailableError: If the ride already settled
    """
    ride = get_ride(ride_id)
    if rider_id is not None and ride.rider_id != str(rider_id):
        raise RideNotFoundError("Ride not found")

    current = RideStatus(ride.status)
    if current.is_terminal:
        raise RideNotAvailableError(f"Cannot cancel - ride is already {ride.status}")

    try:
        ride = conditional_update_status(
            ride.id, current, RideStatus.CANCELED, {"cancellation_reason": reason or ""},
        )
    except PreconditionFailed as exc:
        raise RideNotAvailableError(f"Cannot cancel - ride is already {exc.current_status.value}") from exc

    logger.info("Ride %s cancelled: %s", ride.id, reason)
    return RideResult(
        success=True,
        ride=ride,
        message="Ride cancelled successfully",
    )


# ===================== Driver Operations =====================

@transaction.atomic
def accept_ride(ride_id, driver_id) -> RideResult:
    """
    Accept a ride request. Any available driver may accept while the
    request is searching, including one whose offer already timed out.

    Args:
        ride_id: ID of the ride to accept
        driver_id: External driver identifier

    Returns:
        RideResult with the accepted ride
    """
    try:
        driver_profile = DriverProfile.objects.select_for_update().get(driver_id=str(driver_id))
    except DriverProfile.DoesNotExist:
        raise RideNotFoundError("Driver profile not found")

    if driver_profile.status != 'available':
        raise DriverNotAvailableError("Please set your status to available before accepting rides")

    try:
        ride = conditional_update_status(
            ride_id, RideStatus.SEARCHING, RideStatus.ACCEPTED,
            {"assigned_driver_id": driver_profile.driver_id},
        )
    except PreconditionFailed as exc:
        raise RideNotAvailableError("This ride was already handled or cancelled") from exc

    update_driver_status(driver_profile, 'busy')

    return RideResult(
        success=True,
        ride=ride,
        message="Ride Accepted Successfully! Navigate to pickup location."
    )


def decline_offer(ride_id, driver_id) -> RideResult:
    """
    Decline the offer of a ride, so the search moves on without waiting
    for the offer to time out.
    """
    ride = get_ride(ride_id)
    if ride.status != RideStatus.SEARCHING.value:
        raise RideNotAvailableError("This ride was already handled or cancelled")

    _publish(ride.id, {
        "type": "ride.declined",
        "ride_id": ride.id,
        "driver_id": str(driver_id),
    })
    return RideResult(
        success=True,
        ride=ride,
        message="Offer declined.",
    )


# ===================== Store Operations =====================

def conditional_update_status(
    ride_id,
    expected_status,
    new_status,
    extra: Optional[Mapping[str, Any]] = None,
) -> RideRequest:
    """
    Move a ride from expected_status to new_status, or fail without writing.

    Raises:
        InvalidTransition: If the state machine does not allow the change
        RideNotFoundError: If the ride does not exist
        PreconditionFailed: If the ride is not in expected_status
    """
    expected, new = check_transition(expected_status, new_status, extra)
    extra = dict(extra or {})

    with transaction.atomic():
        try:
            ride = RideRequest.objects.select_for_update().get(id=ride_id)
        except RideRequest.DoesNotExist:
            raise RideNotFoundError("Ride not found")

        if ride.status != expected.value:
            raise PreconditionFailed(ride_id, expected, RideStatus(ride.status))

        ride.status = new.value
        update_fields = ['status']
        if new.is_terminal:
            ride.settled_at = timezone.now()
            update_fields.append('settled_at')
        if new is RideStatus.ACCEPTED:
            driver_id = str(extra["assigned_driver_id"])
            ride.assigned_driver_id = driver_id
            # The exclusion list only holds drivers that were not assigned
            ride.excluded_driver_ids = [d for d in ride.excluded_driver_ids or [] if d != driver_id]
            update_fields += ['assigned_driver_id', 'excluded_driver_ids']
        if new is RideStatus.CANCELED and extra.get("cancellation_reason") is not None:
            ride.cancellation_reason = extra["cancellation_reason"]
            update_fields.append('cancellation_reason')
        ride.save(update_fields=update_fields)

        message = {
            "type": "ride.status",
            "ride_id": ride.id,
            "status": ride.status,
            "assigned_driver_id": ride.assigned_driver_id,
        }
        transaction.on_commit(lambda: _publish(ride.id, message))

    logger.info("Ride %s: %s -> %s", ride.id, expected.value, new.value)
    return ride


def claim_dispatch(ride_id, owner: str, lease_seconds: float) -> bool:
    """
    Take the dispatch lease of an open ride.

    Succeeds when nobody holds the lease, the caller already holds it, or
    the previous holder let it expire.

    Raises:
        RideNotFoundError: If the ride does not exist
    """
    now = timezone.now()
    claimed = RideRequest.objects.filter(
        id=ride_id,
        status__in=OPEN_STATUSES,
    ).filter(
        Q(dispatch_owner__isnull=True)
        | Q(dispatch_owner=owner)
        | Q(dispatch_lease_expires_at__lt=now)
    ).update(
        dispatch_owner=owner,
        dispatch_lease_expires_at=now + timedelta(seconds=lease_seconds),
        dispatch_queued_at=None,
    )
    if not claimed and not RideRequest.objects.filter(id=ride_id).exists():
        raise RideNotFoundError("Ride not found")
    if claimed:
        logger.debug("Ride %s leased to dispatcher %s", ride_id, owner)
    return bool(claimed)


def update_search_state(
    ride_id,
    search_radius_meters: float,
    excluded_driver_ids: Collection[str],
    owner: Optional[str] = None,
    lease_seconds: Optional[float] = None,
) -> bool:
    """
    Save search progress while the ride is searching. The exclusion list
    only grows. With an owner, the write also renews that owner's lease.

    Returns False once the ride left the searching state, or when the
    owner no longer holds the lease.
    """
    with transaction.atomic():
        try:
            ride = RideRequest.objects.select_for_update().get(id=ride_id)
        except RideRequest.DoesNotExist:
            raise RideNotFoundError("Ride not found")

        if ride.status != RideStatus.SEARCHING.value:
            return False
        if owner is not None and ride.dispatch_owner != owner:
            return False

        merged: List[str] = list(ride.excluded_driver_ids or [])
        for driver_id in excluded_driver_ids:
            driver_id = str(driver_id)
            if driver_id not in merged:
                merged.append(driver_id)

        ride.excluded_driver_ids = merged
        ride.search_radius_meters = search_radius_meters
        update_fields = ['excluded_driver_ids', 'search_radius_meters']
        if owner is not None and lease_seconds is not None:
            ride.dispatch_lease_expires_at = timezone.now() + timedelta(seconds=lease_seconds)
            update_fields.append('dispatch_lease_expires_at')
        ride.save(update_fields=update_fields)
    return True


def release_scheduled_rides(now=None) -> List[int]:
    """
    Queue dispatch for scheduled rides whose pickup time is close.

    A ride whose pickup fell inside a red zone since it was booked is
    cancelled instead.
    """
    now = now or timezone.now()
    due_ids = list(
        RideRequest.objects.filter(
            status=RideStatus.CREATED.value,
            scheduled_time__isnull=False,
            scheduled_time__lte=now + scheduled_release_lead(),
        ).exclude(
            _dispatch_pending(now),
        ).values_list('id', flat=True)
    )
    released = []
    for ride in RideRequest.objects.filter(id__in=due_ids):
        zone = find_red_zone(ride.pickup_latitude, ride.pickup_longitude)
        if zone is None:
            queue_dispatch(ride.id)
            released.append(ride.id)
            continue
        try:
            conditional_update_status(
                ride.id, RideStatus.CREATED, RideStatus.CANCELED,
                {"cancellation_reason": RED_ZONE_MESSAGE},
            )
        except PreconditionFailed:
            continue
        logger.info("Scheduled ride %s cancelled: pickup inside red zone %s", ride.id, zone.name)
    if released:
        logger.info("Released %d scheduled ride(s) for dispatch", len(released))
    return released


def requeue_stalled_searches(now=None) -> List[int]:
    """
    Queue open rides nobody is dispatching: searches whose dispatcher
    stopped renewing its lease, and immediate requests that never reached one.
    """
    now = now or timezone.now()
    stalled_ids = list(
        RideRequest.objects.filter(
            Q(status=RideStatus.SEARCHING.value)
            | Q(status=RideStatus.CREATED.value, scheduled_time__isnull=True)
        ).exclude(
            _dispatch_pending(now),
        ).values_list('id', flat=True)
    )
    for ride_id in stalled_ids:
        logger.warning("Ride %s lost its dispatcher; queueing it again", ride_id)
        queue_dispatch(ride_id)
    return stalled_ids


# ===================== Helper Functions =====================

def _publish(ride_id, message: Dict[str, Any]) -> bool:
    """Send a change to everyone listening on the ride group."""
    try:
        channel_layer = get_channel_layer()
        if channel_layer is None:
            return False
        async_to_sync(channel_layer.group_send)(ride_group_name(ride_id), message)
        return True
    except Exception:
        logger.exception("Failed to publish %s for ride %s", message.get("type"), ride_id)
        return False
