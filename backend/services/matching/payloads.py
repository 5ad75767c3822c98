"""Builds the payload sent with each ride offer."""

import logging
from typing import Any, Callable, Dict, Mapping, Optional

from .types import DriverCandidate, RideSnapshot

logger = logging.getLogger(__name__)

# Pricing is external: (ride, candidate) -> {"price": ..., "distance_km": ..., "duration_min": ...}
PricingFunction = Callable[[RideSnapshot, DriverCandidate], Mapping[str, Any]]


def _point(point, address: str) -> Optional[Dict[str, Any]]:
    if point is None:
        return None
    return {"latitude": point.latitude, "longitude": point.longitude, "address": address or ""}


class OfferPayloadBuilder:

    def __init__(self, pricing: Optional[PricingFunction] = None):
        self._pricing = pricing

    def build(self, ride: RideSnapshot, candidate: DriverCandidate) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "ride_data": {
                "id": ride.id,
                "rider_id": ride.rider_id,
                "vehicle_class": ride.vehicle_class,
                "pickup": _point(ride.pickup, ride.pickup_address),
                "dropoff": _point(ride.dropoff, ride.dropoff_address),
                "scheduled_time": ride.scheduled_time.isoformat() if ride.scheduled_time else None,
            },
            "pickup_distance_meters": round(candidate.distance_meters, 1),
        }
        if self._pricing is not None:
            try:
                payload.update(self._pricing(ride, candidate))
            except Exception:
                # Offer still goes out, without a quote.
                logger.exception("Pricing failed for ride %s, driver %s", ride.id, candidate.driver_id)
        return payload
