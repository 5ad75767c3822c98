"""Driver WebSocket consumer for ride offers, accept/decline and location updates."""

import logging
from typing import Dict, Any

from channels.db import database_sync_to_async

from .base import BaseConsumer
from drivers import services as driver_services
from drivers.models import DriverProfile
from realtime.notifications import driver_group_name
from services import ride_management
from services.ride_management import (
    DriverNotAvailableError,
    RideNotAvailableError,
    RideNotFoundError,
)
from services.ride_management.store import DjangoRequestStore

logger = logging.getLogger(__name__)


class DriverConsumer(BaseConsumer):
    """
    WebSocket consumer for drivers at ws/driver/<driver_id>/.

    Handles:
        - Ride offers and follow-up notices pushed by the dispatch engine
        - accept_ride / decline_ride responses from the driver
        - Driver location and status updates
    """

    async def authorize(self) -> bool:
        self.driver_id = str(self.scope["url_route"]["kwargs"]["driver_id"])
        return await self._driver_exists()

    async def on_connect(self):
        """Join the driver group that offers are sent to."""
        self.driver_group = driver_group_name(self.driver_id)
        await self._join_group(self.driver_group)

        await self.send_json({
            "type": "connection_established",
            "driver_id": self.driver_id,
            "message": "Driver connected successfully",
        })

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        """Handle driver-specific messages."""

        if msg_type == "accept_ride":
            await self._handle_accept(data)
        elif msg_type == "decline_ride":
            await self._handle_decline(data)
        elif msg_type == "driver_location_update":
            await self._handle_location_update(data)
        elif msg_type == "driver_status_update":
            await self._handle_status_update(data)
        else:
            await self.send_error(f"Unknown message type: {msg_type}")

    # ---------------------- Message Handlers ----------------------

    async def _handle_accept(self, data: Dict[str, Any]):
        ride_id = data.get("ride_id")
        if ride_id is None:
            await self.send_error("accept_ride requires ride_id")
            return

        try:
            result = await database_sync_to_async(ride_management.accept_ride)(ride_id, self.driver_id)
        except (RideNotFoundError, RideNotAvailableError, DriverNotAvailableError) as e:
            await self.send_json({
                "type": "ride_accept_failed",
                "ride_id": ride_id,
                "message": str(e),
            })
            return

        await self.send_success("ride_accept_confirmed", ride_id=result.ride.id, message=result.message)

    async def _handle_decline(self, data: Dict[str, Any]):
        ride_id = data.get("ride_id")
        if ride_id is None:
            await self.send_error("decline_ride requires ride_id")
            return

        try:
            await DjangoRequestStore().record_decline(ride_id, self.driver_id)
        except RideNotFoundError as e:
            logger.debug("Decline of ride %s by driver %s ignored: %s", ride_id, self.driver_id, e)

        await self.send_success("ride_decline_confirmed", ride_id=ride_id)

    async def _handle_location_update(self, data: Dict[str, Any]):
        lat = data.get("latitude")
        lon = data.get("longitude")

        if lat is None or lon is None:
            await self.send_error("driver_location_update requires latitude and longitude")
            return

        await self._update_driver_location(float(lat), float(lon))
        logger.debug("Driver %s location update: lat=%s, lon=%s", self.driver_id, lat, lon)

    async def _handle_status_update(self, data: Dict[str, Any]):
        """Handle driver status change (available/offline)."""
        status = data.get("status")

        if status not in ["available", "offline"]:
            await self.send_error("Invalid status. Must be: available or offline")
            return

        await self._update_driver_status(status)
        await self.send_success("status_updated", status=status)

    # ---------------------- Event Handlers (from group_send) ----------------------

    async def ride_offer(self, event):
        """Sent by the dispatch engine to offer a ride."""
        await self.send_json({
            "type": "new_ride_request",
            "ride_id": event.get("ride_id"),
            "ride": event.get("ride_data"),
            "timeout_seconds": event.get("timeout_seconds"),
            "expires_at": event.get("expires_at"),
            "pickup_distance_meters": event.get("pickup_distance_meters"),
            "price": event.get("price"),
            "distance_km": event.get("distance_km"),
            "duration_min": event.get("duration_min"),
        })

    async def ride_expired(self, event):
        """Sent when a ride offer expires."""
        await self.send_json({
            "type": "ride_expired",
            "ride_id": event.get("ride_id"),
            "message": event.get("message", "Offer timed out"),
        })

    async def ride_taken(self, event):
        """Sent when another driver accepted the ride first."""
        await self.send_json({
            "type": "ride_taken",
            "ride_id": event.get("ride_id"),
            "message": event.get("message", ""),
        })

    async def ride_cancelled(self, event):
        """Sent when a ride is cancelled."""
        await self.send_json({
            "type": "ride_cancelled",
            "ride_id": event.get("ride_id"),
            "message": event.get("message", ""),
        })

    # ---------------------- Database Helpers ----------------------

    @database_sync_to_async
    def _driver_exists(self) -> bool:
        return DriverProfile.objects.filter(driver_id=self.driver_id).exists()

    @database_sync_to_async
    def _update_driver_location(self, lat: float, lon: float) -> bool:
        """Update driver's location in database (and the GEO index)."""
        try:
            profile = driver_services.get_driver_profile(self.driver_id)
            driver_services.update_driver_location(profile, lat, lon)
            return True
        except Exception:
            logger.exception("Failed to update driver profile for %s", self.driver_id)
            return False

    @database_sync_to_async
    def _update_driver_status(self, status: str) -> bool:
        """Update driver's status in database."""
        try:
            profile = driver_services.get_driver_profile(self.driver_id)
            driver_services.update_driver_status(profile, status)
            return True
        except Exception:
            logger.exception("Failed to update driver status for %s", self.driver_id)
            return False
