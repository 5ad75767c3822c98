"""
Single-offer state machine.

Sends one offer to one driver, then waits for whichever comes first:
the offer deadline, an explicit decline from that driver, or the request
settling (possibly with a different driver).
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from django.utils import timezone

from .acceptance import AcceptanceListener
from .contracts import NotificationGateway
from .types import Offer, OfferOutcome

logger = logging.getLogger(__name__)


class OfferCoordinator:

    def __init__(
        self,
        gateway: NotificationGateway,
        listener: AcceptanceListener,
        notify_timeout: Optional[float] = None,
    ):
        self._gateway = gateway
        self._listener = listener
        self._notify_timeout = notify_timeout
        self.history: List[Offer] = []

    async def offer(
        self,
        request_id: Any,
        driver_id,
        timeout: float,
        payload: Optional[Dict[str, Any]] = None,
    ) -> OfferOutcome:
        """
        Offer the ride to one driver and wait for the outcome.

        Args:
            request_id: Ride request being dispatched
            driver_id: Driver receiving the offer
            timeout: Seconds the driver has to respond
            payload: Extra offer fields (ride details, price)

        Returns:
            ACCEPTED if the ride settled with this driver, SUPERSEDED if it
            settled with someone else, REJECTED on an explicit decline,
            TIMED_OUT otherwise.
        """
        driver_id = str(driver_id)
        loop = asyncio.get_running_loop()
        deadline_at = loop.time() + timeout

        sent_at = timezone.now()
        offer = Offer(
            request_id=request_id,
            driver_id=driver_id,
            sent_at=sent_at,
            deadline=sent_at + timedelta(seconds=timeout),
        )
        self.history.append(offer)

        message = {
            **(payload or {}),
            "type": "ride_offer",
            "ride_id": request_id,
            "timeout_seconds": timeout,
            "expires_at": offer.deadline.isoformat(),
        }
        logger.debug("Offering ride %s to driver %s (timeout=%ss)", request_id, driver_id, timeout)
        # Only a decline sent after this offer answers it.
        self._listener.declined(driver_id).clear()
        # An undelivered offer is handled like an ignored one: the deadline runs out.
        await self.send(driver_id, request_id, message, timeout=max(0.0, deadline_at - loop.time()))

        offer.outcome = await self._await_response(driver_id, deadline_at)
        offer.resolved_at = timezone.now()

        if offer.outcome is OfferOutcome.TIMED_OUT:
            await self.send(driver_id, request_id, {
                "type": "ride_expired",
                "ride_id": request_id,
                "message": "Your ride offer has timed out.",
            })
        elif offer.outcome is OfferOutcome.SUPERSEDED:
            logger.info(
                "Offer of ride %s to driver %s superseded by driver %s",
                request_id, driver_id, self._listener.accepted_driver_id,
            )
            await self.send(driver_id, request_id, {
                "type": "ride_taken",
                "ride_id": request_id,
                "message": "This ride was taken by another driver.",
            })

        logger.info("Offer of ride %s to driver %s: %s", request_id, driver_id, offer.outcome.value)
        return offer.outcome

    async def _await_response(self, driver_id: str, deadline_at: float) -> OfferOutcome:
        settled = self._listener.settled
        declined = self._listener.declined(driver_id)

        if not settled.is_set() and not declined.is_set():
            remaining = max(0.0, deadline_at - asyncio.get_running_loop().time())
            waiters = [
                asyncio.ensure_future(settled.wait()),
                asyncio.ensure_future(declined.wait()),
            ]
            try:
                await asyncio.wait(waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in waiters:
                    waiter.cancel()
                await asyncio.gather(*waiters, return_exceptions=True)

        # Settlement wins over a decline that raced it.
        if settled.is_set():
            if self._listener.accepted_driver_id == driver_id:
                return OfferOutcome.ACCEPTED
            return OfferOutcome.SUPERSEDED
        if declined.is_set():
            return OfferOutcome.REJECTED
        return OfferOutcome.TIMED_OUT

    async def send(
        self,
        driver_id: str,
        request_id: Any,
        payload: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> bool:
        """Best-effort notification. Failures are logged and reported as False."""
        if self._notify_timeout is not None:
            timeout = self._notify_timeout if timeout is None else min(timeout, self._notify_timeout)
        try:
            await asyncio.wait_for(
                self._gateway.notify_driver(driver_id, request_id, payload),
                timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Timed out sending %s for ride %s to driver %s",
                payload.get("type"), request_id, driver_id,
            )
            return False
        except Exception:
            logger.warning(
                "Failed to send %s for ride %s to driver %s",
                payload.get("type"), request_id, driver_id,
                exc_info=True,
            )
            return False
        return True
