"""Celery tasks for ride-related background processing."""

import logging

from asgiref.sync import async_to_sync
from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task
def dispatch_ride_task(ride_id: int):
    """
    Search for a driver for one ride request and report the outcome to the rider.

    Used when DISPATCH_RUNNER is "celery". The search runs to completion
    inside this task: offers, timeouts, radius expansion and the final
    status change.
    """
    from realtime.notifications import notify_dispatch_result
    from services.matching.factory import build_dispatch_loop
    from services.ride_management import DispatchInProgress, RideNotFoundError

    dispatch_loop = build_dispatch_loop()
    try:
        result = async_to_sync(dispatch_loop.run)(ride_id)
    except RideNotFoundError:
        logger.warning("Ride %s not found for dispatch", ride_id)
        return None
    except DispatchInProgress as exc:
        logger.info("Ride %s is already being dispatched by %s; skipping", ride_id, exc.owner)
        return None

    logger.info(
        "Dispatch of ride %s finished: %s (driver=%s, offers=%d)",
        ride_id, result.status.value, result.driver_id, result.offers_sent,
    )
    notify_dispatch_result(result)
    return result.as_dict()


@shared_task
def release_scheduled_rides_task():
    """
    Periodic task: start the search for scheduled rides whose pickup time
    is near, and restart searches whose dispatcher went away.
    """
    from services.ride_management import release_scheduled_rides, requeue_stalled_searches

    released = release_scheduled_rides()
    requeued = requeue_stalled_searches()
    return len(released) + len(requeued)
