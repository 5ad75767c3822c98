"""
End-to-end driver search for one ride request.

The loop:
1. Takes the dispatch lease and moves the request created -> searching
2. Queries the GeoIndex at the current radius
3. Offers the ride to each new candidate, nearest first, one at a time
4. Expands the radius when a pass finds nobody new
5. Stops on acceptance, rider cancellation, or once the radius (or offer
   budget) is exhausted, in which case the request is expired

Progress is saved after every offer and every empty pass, which also renews
the lease. A dispatcher that loses the lease stops with DispatchInProgress.

Acceptance can land at any moment through the AcceptanceListener, even for
a driver whose own offer already timed out; the loop reports whoever the
request settled with.
"""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, List, Optional

from .acceptance import AcceptanceListener
from .config import DispatchConfig
from .contracts import GeoIndex, NotificationGateway, RequestStore
from .exceptions import DispatchInProgress, PreconditionFailed
from .exclusion import ExclusionTracker
from .offer_coordinator import OfferCoordinator
from .payloads import OfferPayloadBuilder
from .radius import RadiusExpander
from .types import (
    DispatchResult,
    DriverCandidate,
    OfferOutcome,
    RideSnapshot,
    RideStatus,
    TerminalStatus,
)

logger = logging.getLogger(__name__)


class DispatchLoop:

    def __init__(
        self,
        store: RequestStore,
        geo_index: GeoIndex,
        gateway: NotificationGateway,
        config: Optional[DispatchConfig] = None,
        expander: Optional[RadiusExpander] = None,
        payload_builder: Optional[OfferPayloadBuilder] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._store = store
        self._geo_index = geo_index
        self._gateway = gateway
        self.config = config or DispatchConfig()
        self._expander = expander or self.config.radius_expander()
        self._payloads = payload_builder or OfferPayloadBuilder()
        self._sleep = sleep

    async def run(self, request_id: Any, initial_radius: Optional[float] = None) -> DispatchResult:
        """
        Search for a driver until the request is settled.

        Args:
            request_id: Ride request to dispatch
            initial_radius: Starting radius in meters. Defaults to the radius
                saved on the request (when resuming) or the configured one.

        Returns:
            DispatchResult with status ASSIGNED, NO_DRIVER_FOUND or CANCELED

        Raises:
            DispatchInProgress: If another dispatcher holds the request's lease
        """
        ride = await self._store.get(request_id)
        if ride.status.is_terminal:
            logger.info("Ride %s is already %s; not dispatching", request_id, ride.status.value)
            return self._result_from_snapshot(ride, offers_sent=0, radius=ride.search_radius_meters)

        owner = uuid.uuid4().hex
        if not await self._store.claim_dispatch(request_id, owner, self.config.lease_seconds):
            ride = await self._store.get(request_id)
            if ride.status.is_terminal:
                return self._result_from_snapshot(ride, offers_sent=0, radius=ride.search_radius_meters)
            logger.info("Ride %s is already being dispatched by %s", request_id, ride.dispatch_owner)
            raise DispatchInProgress(request_id, ride.dispatch_owner)

        ride = await self._begin_search(request_id)
        if ride.status is not RideStatus.SEARCHING:
            logger.info("Ride %s is already %s; not dispatching", request_id, ride.status.value)
            return self._result_from_snapshot(ride, offers_sent=0, radius=ride.search_radius_meters)

        if initial_radius is None:
            initial_radius = ride.search_radius_meters or self._expander.initial(self.config.initial_radius_meters)

        async with AcceptanceListener(self._store, request_id) as listener:
            return await self._search(ride, listener, float(initial_radius), owner)

    async def _begin_search(self, request_id: Any) -> RideSnapshot:
        ride = await self._store.get(request_id)
        if ride.status is RideStatus.CREATED:
            try:
                ride = await self._store.conditional_update_status(
                    request_id, RideStatus.CREATED, RideStatus.SEARCHING,
                )
            except PreconditionFailed:
                ride = await self._store.get(request_id)
        return ride

    async def _search(
        self,
        ride: RideSnapshot,
        listener: AcceptanceListener,
        radius: float,
        owner: str,
    ) -> DispatchResult:
        request_id = ride.id
        tracker = ExclusionTracker(ride.excluded_driver_ids)
        coordinator = OfferCoordinator(
            self._gateway, listener, notify_timeout=self.config.notify_timeout_seconds,
        )
        max_radius = self.config.max_radius_meters
        offers_sent = 0

        logger.info(
            "Dispatching ride %s: radius=%sm max=%sm excluded=%d",
            request_id, radius, max_radius, len(tracker),
        )

        while not listener.is_resolved and radius <= max_radius:
            if self._budget_spent(offers_sent):
                break

            candidates = await self._query(ride, radius, tracker)
            fresh = tracker.fresh(candidates)
            logger.info(
                "Ride %s: %d driver(s) within %sm, %d new",
                request_id, len(candidates), radius, len(fresh),
            )

            if not fresh:
                radius = self._expander(radius, 0)
                await self._save_progress(request_id, radius, tracker, listener, owner)
                continue

            for candidate in fresh:
                if listener.is_resolved or self._budget_spent(offers_sent):
                    break

                outcome = await coordinator.offer(
                    request_id,
                    candidate.driver_id,
                    self.config.offer_timeout_seconds,
                    payload=self._payloads.build(ride, candidate),
                )
                offers_sent += 1

                if outcome in (OfferOutcome.ACCEPTED, OfferOutcome.SUPERSEDED):
                    return DispatchResult(
                        request_id=request_id,
                        status=TerminalStatus.ASSIGNED,
                        driver_id=listener.accepted_driver_id,
                        superseded=outcome is OfferOutcome.SUPERSEDED,
                        offers_sent=offers_sent,
                        final_radius_meters=radius,
                    )

                tracker.add(candidate.driver_id)
                await self._save_progress(request_id, radius, tracker, listener, owner)

                if listener.canceled.is_set():
                    await coordinator.send(candidate.driver_id, request_id, {
                        "type": "ride_cancelled",
                        "ride_id": request_id,
                        "message": "Rider cancelled this ride.",
                    })

            radius = self._expander(radius, len(fresh))

        return await self._finish(request_id, listener, offers_sent, radius)

    async def _query(self, ride: RideSnapshot, radius: float, tracker: ExclusionTracker) -> List[DriverCandidate]:
        """Query the GeoIndex, retrying the same radius with backoff before giving up on this pass."""
        attempts = self.config.geo_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                return list(await self._geo_index.find_candidates(
                    ride.pickup, radius, ride.vehicle_class, tracker.snapshot(),
                ))
            except Exception:
                logger.warning(
                    "Driver lookup for ride %s at %sm failed (attempt %d/%d)",
                    ride.id, radius, attempt, attempts,
                    exc_info=True,
                )
                if attempt < attempts:
                    await self._sleep(self.config.geo_retry_backoff_seconds * 2 ** (attempt - 1))
        logger.error("Driver lookup for ride %s at %sm kept failing; treating as empty", ride.id, radius)
        return []

    async def _save_progress(
        self,
        request_id: Any,
        radius: float,
        tracker: ExclusionTracker,
        listener: AcceptanceListener,
        owner: str,
    ):
        """
        Persist progress and renew the lease.

        A refused write means the ride settled or another dispatcher took
        over; the store is then read back so a change the subscription
        missed still stops the search.
        """
        try:
            saved = await self._store.update_search_state(
                request_id,
                min(radius, self.config.max_radius_meters),
                tracker.snapshot(),
                owner=owner,
                lease_seconds=self.config.lease_seconds,
            )
            if saved:
                return
            ride = await self._store.get(request_id)
        except Exception:
            logger.warning("Failed to save search progress for ride %s", request_id, exc_info=True)
            return

        listener.observe(ride)
        if not listener.is_resolved:
            logger.warning("Ride %s was taken over by dispatcher %s", request_id, ride.dispatch_owner)
            raise DispatchInProgress(request_id, ride.dispatch_owner)

    def _budget_spent(self, offers_sent: int) -> bool:
        return self.config.max_offers is not None and offers_sent >= self.config.max_offers

    async def _finish(
        self,
        request_id: Any,
        listener: AcceptanceListener,
        offers_sent: int,
        radius: float,
    ) -> DispatchResult:
        radius = min(radius, self.config.max_radius_meters)
        if listener.settled.is_set():
            return DispatchResult(
                request_id=request_id,
                status=TerminalStatus.ASSIGNED,
                driver_id=listener.accepted_driver_id,
                superseded=True,
                offers_sent=offers_sent,
                final_radius_meters=radius,
            )
        if listener.canceled.is_set():
            logger.info("Ride %s canceled by rider after %d offer(s)", request_id, offers_sent)
            return DispatchResult(
                request_id=request_id,
                status=TerminalStatus.CANCELED,
                offers_sent=offers_sent,
                final_radius_meters=radius,
            )
        if listener.expired.is_set():
            return DispatchResult(
                request_id=request_id,
                status=TerminalStatus.NO_DRIVER_FOUND,
                offers_sent=offers_sent,
                final_radius_meters=radius,
            )

        logger.info(
            "No driver accepted ride %s after %d offer(s) up to %sm",
            request_id, offers_sent, self.config.max_radius_meters,
        )
        try:
            snapshot = await self._store.conditional_update_status(
                request_id, RideStatus.SEARCHING, RideStatus.EXPIRED,
            )
        except PreconditionFailed as exc:
            # Lost a race with an accept or cancel; report what actually happened.
            logger.info("Ride %s became %s before it could expire", request_id, exc.current_status)
            snapshot = await self._store.get(request_id)
        return self._result_from_snapshot(snapshot, offers_sent, radius)

    def _result_from_snapshot(self, ride: RideSnapshot, offers_sent: int, radius: float) -> DispatchResult:
        if ride.status is RideStatus.ACCEPTED:
            return DispatchResult(
                request_id=ride.id,
                status=TerminalStatus.ASSIGNED,
                driver_id=ride.assigned_driver_id,
                superseded=True,
                offers_sent=offers_sent,
                final_radius_meters=radius,
            )
        if ride.status is RideStatus.CANCELED:
            status = TerminalStatus.CANCELED
        else:
            status = TerminalStatus.NO_DRIVER_FOUND
        return DispatchResult(
            request_id=ride.id,
            status=status,
            offers_sent=offers_sent,
            final_radius_meters=radius,
        )
