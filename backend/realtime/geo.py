"""
Redis GEO-based driver location service.

This module provides:
- Geospatial indexing of driver locations using Redis GEO
- Radius queries for available drivers around a pickup point
- Driver presence tracking with TTL

Architecture:
- Drivers are indexed in a Redis GEO set for fast GEOSEARCH queries
- Per-driver metadata (status, vehicle class) lives in a hash with a TTL;
  a driver whose metadata expired is treated as offline
- RedisGeoIndex adapts the service to the dispatch engine's GeoIndex contract
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Collection, Dict, List, Optional

import redis
from asgiref.sync import sync_to_async
from django.conf import settings

from services.matching.exceptions import GeoIndexUnavailable
from services.matching.types import DriverCandidate, GeoPoint

logger = logging.getLogger(__name__)


# ---------------------- Configuration ----------------------

# Redis GEO configuration (overridable with settings.REDIS_GEO_CONFIG)
REDIS_GEO_CONFIG = {
    # Key names
    "DRIVERS_GEO_KEY": "drivers:geo",           # GEOADD key for driver positions
    "DRIVER_META_PREFIX": "driver:meta:",        # HSET for driver metadata
    "DRIVER_PRESENCE_KEY": "drivers:online",     # SET for available driver IDs

    # TTL values (seconds)
    "DRIVER_META_TTL": 120,            # Driver metadata expires after 2 min of inactivity

    # Query limits
    "MAX_CANDIDATES": 50,              # Max drivers returned per radius query
}


def get_geo_config() -> Dict[str, Any]:
    return {**REDIS_GEO_CONFIG, **getattr(settings, "REDIS_GEO_CONFIG", {})}


# ---------------------- Redis Connection ----------------------

def get_redis_client() -> redis.Redis:
    """Get Redis client for GEO operations."""
    return redis.Redis.from_url(
        getattr(settings, 'REDIS_GEO_URL', settings.CELERY_BROKER_URL),
        decode_responses=True
    )


# ---------------------- Driver Location Service ----------------------

@dataclass
class DriverLocation:
    """Driver location data."""
    driver_id: str
    latitude: float
    longitude: float
    vehicle_class: str = ""
    vehicle_number: Optional[str] = None
    status: str = "available"
    distance_meters: Optional[float] = None


class DriverLocationService:
    """
    Redis GEO-based driver location service.

    Provides:
    - Update driver location (GEOADD + metadata)
    - Query nearby drivers (GEOSEARCH)
    - Driver presence tracking
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None):
        self._redis = redis_client or get_redis_client()
        self._config = get_geo_config()

    # ---------------------- Driver Location Updates ----------------------

    def update_driver_location(
        self,
        driver_id: str,
        lat: float,
        lon: float,
        vehicle_class: str = "",
        vehicle_number: Optional[str] = None,
        status: str = "available",
    ) -> bool:
        """
        Update driver's position and metadata in Redis.

        Returns:
            True on success, False if Redis could not be written
        """
        try:
            geo_key = self._config["DRIVERS_GEO_KEY"]
            meta_key = f"{self._config['DRIVER_META_PREFIX']}{driver_id}"

            self._redis.geoadd(geo_key, (lon, lat, str(driver_id)))

            meta = {
                "driver_id": str(driver_id),
                "vehicle_class": vehicle_class or "",
                "vehicle_number": vehicle_number or "",
                "status": status,
                "latitude": str(lat),
                "longitude": str(lon),
            }
            self._redis.hset(meta_key, mapping=meta)
            self._redis.expire(meta_key, self._config["DRIVER_META_TTL"])

            if status == "available":
                self._redis.sadd(self._config["DRIVER_PRESENCE_KEY"], str(driver_id))
            else:
                self._redis.srem(self._config["DRIVER_PRESENCE_KEY"], str(driver_id))
            return True

        except redis.RedisError:
            logger.exception("Failed to update location of driver %s", driver_id)
            return False

    def remove_driver(self, driver_id: str) -> bool:
        """Remove driver from GEO index and presence set."""
        try:
            self._redis.zrem(self._config["DRIVERS_GEO_KEY"], str(driver_id))
            self._redis.delete(f"{self._config['DRIVER_META_PREFIX']}{driver_id}")
            self._redis.srem(self._config["DRIVER_PRESENCE_KEY"], str(driver_id))
            return True
        except redis.RedisError:
            logger.exception("Failed to remove driver %s", driver_id)
            return False

    # ---------------------- Nearby Driver Queries ----------------------

    def get_nearby_drivers(
        self,
        lat: float,
        lon: float,
        radius_meters: float = 1000,
        vehicle_class: str = "",
        exclude_ids: Collection[str] = (),
        limit: Optional[int] = None,
        status_filter: Optional[str] = "available",
    ) -> List[DriverLocation]:
        """
        Query nearby drivers using GEOSEARCH.

        Args:
            lat: Center latitude
            lon: Center longitude
            radius_meters: Search radius in meters
            vehicle_class: Only return drivers of this class ("" = any)
            exclude_ids: Driver IDs to leave out
            limit: Max drivers to return
            status_filter: Only return drivers with this status (None = all)

        Returns:
            List of DriverLocation objects sorted by distance

        Raises:
            GeoIndexUnavailable: If Redis cannot be queried
        """
        limit = limit or self._config["MAX_CANDIDATES"]
        excluded = {str(d) for d in exclude_ids}
        count = limit + len(excluded)
        metadata: Dict[str, Dict[str, str]] = {}
        try:
            while True:
                results = self._redis.geosearch(
                    self._config["DRIVERS_GEO_KEY"],
                    longitude=lon,
                    latitude=lat,
                    radius=radius_meters,
                    unit="m",
                    sort="ASC",
                    count=count,
                    withdist=True,
                    withcoord=True,
                )
                drivers = self._select_drivers(results, excluded, metadata, vehicle_class, status_filter, limit)
                # Stale, busy or other-class drivers used up part of the count: widen it
                if len(drivers) >= limit or len(results) < count:
                    return drivers
                count *= 2
        except redis.RedisError as exc:
            logger.warning("Redis driver query failed: %s", exc)
            raise GeoIndexUnavailable(str(exc)) from exc

    def _select_drivers(
        self,
        results,
        excluded: Collection[str],
        metadata: Dict[str, Dict[str, str]],
        vehicle_class: str,
        status_filter: Optional[str],
        limit: int,
    ) -> List[DriverLocation]:
        drivers = []
        for driver_id, distance, coords in results:
            if driver_id in excluded:
                continue

            if driver_id not in metadata:
                metadata[driver_id] = self._redis.hgetall(f"{self._config['DRIVER_META_PREFIX']}{driver_id}")
            meta = metadata[driver_id]
            if not meta:
                # Metadata expired: stale position
                continue

            driver_status = meta.get("status", "unknown")
            if status_filter and driver_status != status_filter:
                continue
            driver_class = meta.get("vehicle_class", "")
            if vehicle_class and driver_class and driver_class != vehicle_class:
                continue

            drivers.append(DriverLocation(
                driver_id=driver_id,
                latitude=coords[1],
                longitude=coords[0],
                vehicle_class=driver_class,
                vehicle_number=meta.get("vehicle_number") or None,
                status=driver_status,
                distance_meters=distance,
            ))

            if len(drivers) >= limit:
                break
        return drivers


class RedisGeoIndex:
    """GeoIndex backed by DriverLocationService."""

    def __init__(self, service: Optional[DriverLocationService] = None):
        self._service = service or get_driver_location_service()

    async def find_candidates(
        self,
        center: GeoPoint,
        radius_meters: float,
        vehicle_class: str,
        exclude_ids: Collection[str],
    ) -> List[DriverCandidate]:
        drivers = await sync_to_async(self._service.get_nearby_drivers)(
            center.latitude,
            center.longitude,
            radius_meters,
            vehicle_class=vehicle_class,
            exclude_ids=exclude_ids,
        )
        return [
            DriverCandidate(
                driver_id=d.driver_id,
                latitude=d.latitude,
                longitude=d.longitude,
                vehicle_class=d.vehicle_class,
                distance_meters=d.distance_meters or 0.0,
            )
            for d in drivers
        ]


# ---------------------- Singleton Instances ----------------------

_driver_location_service: Optional[DriverLocationService] = None


def get_driver_location_service() -> DriverLocationService:
    """Get singleton DriverLocationService instance."""
    global _driver_location_service
    if _driver_location_service is None:
        _driver_location_service = DriverLocationService()
    return _driver_location_service
