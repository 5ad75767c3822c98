"""
Notification helpers for sending WebSocket messages to connected clients.

This module provides:
- ChannelLayerGateway, the dispatch engine's route to a driver's device
- Rider-facing ride events (accepted, no drivers available)
- notify_dispatch_result, the report sent once a search finishes
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

from services.matching.exceptions import NotificationError

logger = logging.getLogger(__name__)


def driver_group_name(driver_id) -> str:
    return f"driver_{driver_id}"


def rider_group_name(rider_id) -> str:
    return f"user_{rider_id}"


class ChannelLayerGateway:
    """
    Sends dispatch payloads to the driver's personal group: driver_<driver_id>

    The payload `type` selects the DriverConsumer handler (ride_offer,
    ride_expired, ride_taken, ride_cancelled).
    """

    def __init__(self, channel_layer=None):
        self._channel_layer = channel_layer

    async def notify_driver(self, driver_id: str, request_id: Any, payload: Dict[str, Any]) -> None:
        channel_layer = self._channel_layer or get_channel_layer()
        if channel_layer is None:
            raise NotificationError("No channel layer configured")

        message = {
            "type": "ride_offer",
            **payload,
            "ride_id": request_id,
            "driver_id": str(driver_id),
        }
        logger.debug("WS -> driver_%s: %s", driver_id, message["type"])
        try:
            await channel_layer.group_send(driver_group_name(driver_id), message)
        except Exception as exc:
            raise NotificationError(f"Could not reach driver {driver_id}: {exc}") from exc


# ---------------------- Ride Event Notifications ----------------------

def notify_rider_event(
    event_type: str,
    ride,
    message: str = "",
    extra: Dict[str, Any] = None,
) -> bool:
    """
    Send ride-related event to the rider through: user_<rider_id>

    Args:
        event_type: Handler name in consumer (ride_accepted, no_drivers_available, ride_cancelled)
        ride: RideRequest model instance
        message: Optional message to include
        extra: Additional payload data

    Returns:
        True if sent successfully, False otherwise
    """
    if not ride.rider_id:
        return False

    channel_layer = get_channel_layer()
    if channel_layer is None:
        return False

    from rides.serializers import RideRequestSerializer

    payload = {
        "type": event_type,
        "ride_id": ride.id,
        "status": ride.status,
        "ride_data": RideRequestSerializer(ride).data,
        **(extra or {}),
    }

    if message:
        payload["message"] = message

    logger.debug("WS -> user_%s: %s", ride.rider_id, event_type)
    try:
        async_to_sync(channel_layer.group_send)(rider_group_name(ride.rider_id), payload)
    except Exception:
        logger.exception("Failed to notify rider %s of %s", ride.rider_id, event_type)
        return False

    return True


def notify_dispatch_result(result) -> bool:
    """
    Tell the rider how the driver search for their ride ended.

    Used by both dispatch runners (the Channels worker and the Celery task).
    Canceled searches send nothing: the rider cancelled them.
    """
    from services.matching.types import TerminalStatus
    from services.ride_management import RideNotFoundError, get_ride

    try:
        ride = get_ride(result.request_id)
    except RideNotFoundError:
        logger.warning("Ride %s vanished before its dispatch result was sent", result.request_id)
        return False

    if result.status is TerminalStatus.ASSIGNED:
        return notify_rider_event(
            'ride_accepted',
            ride,
            'Your Ride has been Accepted! The Driver is on the way.',
            extra={"driver_id": result.driver_id},
        )
    if result.status is TerminalStatus.NO_DRIVER_FOUND:
        return notify_rider_event(
            'no_drivers_available',
            ride,
            'No drivers accepted your ride request. Please try again later.',
        )
    return False
