"""
Channels worker that runs driver searches.

Started with:

    python manage.py runworker ride-dispatch

Rides are handed over with `request_dispatch(ride_id)`, which sends a
`dispatch.start` message on the `ride-dispatch` channel. Every search runs
as a task of the worker's DispatchManager, so one worker process holds many
searches at once. A search that is already held by another worker is
dropped by the dispatch lease.
"""

import logging

from asgiref.sync import async_to_sync
from channels.consumer import AsyncConsumer
from channels.db import database_sync_to_async
from channels.layers import get_channel_layer

from realtime.notifications import notify_dispatch_result
from services.matching.manager import DispatchManager

logger = logging.getLogger(__name__)

DISPATCH_CHANNEL = "ride-dispatch"


def _send(message) -> bool:
    try:
        channel_layer = get_channel_layer()
        if channel_layer is None:
            logger.error("No channel layer configured; cannot send %s", message["type"])
            return False
        async_to_sync(channel_layer.send)(DISPATCH_CHANNEL, message)
        return True
    except Exception:
        logger.exception("Failed to send %s for ride %s", message["type"], message.get("ride_id"))
        return False


def request_dispatch(ride_id) -> bool:
    """Ask the dispatch worker to start searching for a driver."""
    return _send({"type": "dispatch.start", "ride_id": ride_id})


def request_stop(ride_id) -> bool:
    """Ask the dispatch worker to stop a running search (the ride stays searching)."""
    return _send({"type": "dispatch.stop", "ride_id": ride_id})


class DispatchWorkerConsumer(AsyncConsumer):
    """
    Background consumer for the `ride-dispatch` channel.

    Handles:
        - dispatch.start: start (or keep) the search for a ride
        - dispatch.stop: cancel the search for a ride in this worker
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.manager = DispatchManager(self._build_loop, on_result=self.report)

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.manager.shutdown()

    def _build_loop(self):
        from services.matching.factory import build_dispatch_loop

        return build_dispatch_loop()

    async def dispatch_start(self, message):
        ride_id = message.get("ride_id")
        if ride_id is None:
            logger.warning("dispatch.start without ride_id ignored")
            return
        self.manager.start(ride_id)

    async def dispatch_stop(self, message):
        ride_id = message.get("ride_id")
        if not self.manager.cancel(ride_id):
            logger.info("No search running for ride %s in this worker", ride_id)

    async def report(self, result):
        logger.info(
            "Dispatch of ride %s finished: %s (driver=%s, offers=%d)",
            result.request_id, result.status.value, result.driver_id, result.offers_sent,
        )
        await database_sync_to_async(notify_dispatch_result)(result)
