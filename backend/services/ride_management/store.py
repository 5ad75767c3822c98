"""
Django-backed RequestStore for the dispatch engine.

Reads and writes go through ride_lifecycle on a worker thread. Changes are
observed by joining the Channels group `ride_<id>` that ride_lifecycle
publishes to after every committed status change and every decline.
"""

import asyncio
import logging
from typing import Any, Collection, Mapping, Optional

from channels.db import database_sync_to_async
from channels.layers import get_channel_layer
from django.core.exceptions import ImproperlyConfigured

from rides.models import RideRequest
from services.matching.contracts import OnChange
from services.matching.types import RideChange, RideSnapshot, RideStatus
from . import ride_lifecycle
from .exceptions import RideNotAvailableError

logger = logging.getLogger(__name__)


def change_from_message(message: Mapping[str, Any]) -> Optional[RideChange]:
    """Translate a ride group message into a RideChange, or None for other messages."""
    kind = message.get("type")
    if kind == "ride.status":
        return RideChange(
            request_id=message["ride_id"],
            status=RideStatus(message["status"]),
            assigned_driver_id=message.get("assigned_driver_id"),
        )
    if kind == "ride.declined":
        return RideChange(
            request_id=message["ride_id"],
            declined_driver_id=str(message["driver_id"]),
        )
    return None


class ChannelSubscription:
    """Reads a private channel joined to the ride group until closed."""

    retry_delay = 0.5

    def __init__(self, channel_layer, group: str, on_change: OnChange):
        self._layer = channel_layer
        self._group = group
        self._on_change = on_change
        self._task: Optional[asyncio.Task] = None
        self.channel_name: Optional[str] = None

    async def open(self) -> "ChannelSubscription":
        self.channel_name = await self._layer.new_channel()
        await self._layer.group_add(self._group, self.channel_name)
        self._task = asyncio.ensure_future(self._read())
        return self

    async def _read(self):
        while True:
            try:
                message = await self._layer.receive(self.channel_name)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("Failed to receive on %s; retrying", self._group, exc_info=True)
                await asyncio.sleep(self.retry_delay)
                continue

            try:
                change = change_from_message(message)
                if change is not None:
                    self._on_change(change)
            except Exception:
                logger.exception("Could not handle %s on %s", message.get("type"), self._group)

    async def close(self):
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        try:
            await self._layer.group_discard(self._group, self.channel_name)
        except Exception:
            logger.warning("Failed to leave %s", self._group, exc_info=True)


class DjangoRequestStore:

    def __init__(self, channel_layer=None):
        self._channel_layer = channel_layer

    @property
    def channel_layer(self):
        layer = self._channel_layer or get_channel_layer()
        if layer is None:
            raise ImproperlyConfigured("CHANNEL_LAYERS must be configured to dispatch rides")
        return layer

    async def create(self, ride: RideSnapshot) -> RideSnapshot:
        def _create():
            return RideRequest.objects.create(
                rider_id=ride.rider_id,
                pickup_latitude=ride.pickup.latitude,
                pickup_longitude=ride.pickup.longitude,
                pickup_address=ride.pickup_address,
                dropoff_latitude=ride.dropoff.latitude if ride.dropoff else None,
                dropoff_longitude=ride.dropoff.longitude if ride.dropoff else None,
                dropoff_address=ride.dropoff_address,
                vehicle_class=ride.vehicle_class,
                scheduled_time=ride.scheduled_time,
                status=RideStatus.CREATED.value,
            )

        created = await database_sync_to_async(_create)()
        return created.to_snapshot()

    async def get(self, request_id: Any) -> RideSnapshot:
        ride = await database_sync_to_async(ride_lifecycle.get_ride)(request_id)
        return ride.to_snapshot()

    async def conditional_update_status(
        self,
        request_id: Any,
        expected_status: RideStatus,
        new_status: RideStatus,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> RideSnapshot:
        ride = await database_sync_to_async(ride_lifecycle.conditional_update_status)(
            request_id, expected_status, new_status, extra,
        )
        return ride.to_snapshot()

    async def update_search_state(
        self,
        request_id: Any,
        search_radius_meters: float,
        excluded_driver_ids: Collection[str],
        owner: Optional[str] = None,
        lease_seconds: Optional[float] = None,
    ) -> bool:
        return await database_sync_to_async(ride_lifecycle.update_search_state)(
            request_id, search_radius_meters, list(excluded_driver_ids), owner, lease_seconds,
        )

    async def claim_dispatch(self, request_id: Any, owner: str, lease_seconds: float) -> bool:
        return await database_sync_to_async(ride_lifecycle.claim_dispatch)(request_id, owner, lease_seconds)

    async def record_decline(self, request_id: Any, driver_id: str) -> None:
        try:
            await database_sync_to_async(ride_lifecycle.decline_offer)(request_id, driver_id)
        except RideNotAvailableError:
            logger.debug("Ignoring decline of settled ride %s by driver %s", request_id, driver_id)

    async def subscribe(self, request_id: Any, on_change: OnChange) -> ChannelSubscription:
        subscription = ChannelSubscription(
            self.channel_layer, ride_lifecycle.ride_group_name(request_id), on_change,
        )
        return await subscription.open()
