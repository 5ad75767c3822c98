import logging

from django.utils import timezone

from drivers.models import DriverProfile
from services.matching.config import get_dispatch_config

logger = logging.getLogger(__name__)


def _sync_geo_index(profile: DriverProfile):
    """Mirror the profile into the Redis GEO index when dispatch reads from it."""
    if get_dispatch_config().geo_index_backend != "redis":
        return
    from realtime.geo import get_driver_location_service

    service = get_driver_location_service()
    if profile.status == "offline" or profile.current_latitude is None or profile.current_longitude is None:
        service.remove_driver(profile.driver_id)
        return
    service.update_driver_location(
        profile.driver_id,
        float(profile.current_latitude),
        float(profile.current_longitude),
        vehicle_class=profile.vehicle_class,
        vehicle_number=profile.vehicle_number,
        status=profile.status,
    )


# DRIVER STATUS UPDATE
def update_driver_status(profile: DriverProfile, new_status: str):
    """
    Update driver availability status.
    Only available drivers are returned by driver searches.
    """
    profile.status = new_status
    profile.save(update_fields=["status"])
    _sync_geo_index(profile)
    return profile


def update_driver_location(profile: DriverProfile, lat, lon):
    """
    Store the latest position of a driver, sent by:
    - the location REST endpoint
    - the driver WebSocket (driver_location_update messages)
    """
    profile.current_latitude = lat
    profile.current_longitude = lon
    profile.last_location_update = timezone.now()
    profile.save(update_fields=["current_latitude", "current_longitude", "last_location_update"])
    _sync_geo_index(profile)
    return profile


def get_driver_profile(driver_id) -> DriverProfile:
    return DriverProfile.objects.get(driver_id=str(driver_id))
