"""GeoIndex over DriverProfile rows, for deployments without Redis."""

import logging
from typing import Collection, List

from asgiref.sync import sync_to_async
from django.db import DatabaseError

from common.utils.geo import bounding_box, calculate_distance
from drivers.models import DriverProfile
from services.matching.exceptions import GeoIndexUnavailable
from services.matching.types import DriverCandidate, GeoPoint

logger = logging.getLogger(__name__)


def find_available_drivers(
    lat: float,
    lon: float,
    radius_meters: float,
    vehicle_class: str = "",
    exclude_ids: Collection[str] = (),
) -> List[DriverCandidate]:
    """
    Available drivers with a known location within radius_meters, nearest first.

    Raises:
        GeoIndexUnavailable: If the database cannot be queried
    """
    min_lat, max_lat, min_lon, max_lon = bounding_box(lat, lon, radius_meters)
    qs = DriverProfile.objects.filter(
        status='available',
        current_latitude__isnull=False,
        current_longitude__isnull=False,
        current_latitude__gte=min_lat,
        current_latitude__lte=max_lat,
        current_longitude__gte=min_lon,
        current_longitude__lte=max_lon,
    ).exclude(driver_id__in=[str(d) for d in exclude_ids])
    if vehicle_class:
        qs = qs.filter(vehicle_class=vehicle_class)

    candidates = []
    try:
        for profile in qs:
            d_lat = float(profile.current_latitude)
            d_lon = float(profile.current_longitude)
            dist = calculate_distance(lat, lon, d_lat, d_lon)
            if dist <= radius_meters:
                candidates.append(DriverCandidate(
                    driver_id=profile.driver_id,
                    latitude=d_lat,
                    longitude=d_lon,
                    vehicle_class=profile.vehicle_class,
                    distance_meters=dist,
                ))
    except DatabaseError as exc:
        logger.warning("Driver lookup failed: %s", exc)
        raise GeoIndexUnavailable(str(exc)) from exc

    # sort ascending
    candidates.sort(key=lambda c: c.distance_meters)
    return candidates


class DatabaseGeoIndex:

    async def find_candidates(
        self,
        center: GeoPoint,
        radius_meters: float,
        vehicle_class: str,
        exclude_ids: Collection[str],
    ) -> List[DriverCandidate]:
        return await sync_to_async(find_available_drivers)(
            center.latitude, center.longitude, radius_meters, vehicle_class, list(exclude_ids),
        )
