"""
Acceptance listener.

Watches a ride request for the lifetime of a dispatch run and turns pushed
changes into asyncio signals: `settled` when a driver accepted (any driver,
whichever offer is current), `canceled`/`expired` for the other terminal
states, and one `declined(driver_id)` event per driver that explicitly
declined.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from .contracts import RequestStore, Subscription
from .types import RideChange, RideSnapshot, RideStatus

logger = logging.getLogger(__name__)


class AcceptanceListener:

    def __init__(self, store: RequestStore, request_id: Any):
        self._store = store
        self.request_id = request_id
        self.settled = asyncio.Event()
        self.canceled = asyncio.Event()
        self.expired = asyncio.Event()
        self.accepted_driver_id: Optional[str] = None
        self._declines: Dict[str, asyncio.Event] = {}
        self._subscription: Optional[Subscription] = None

    async def __aenter__(self) -> "AcceptanceListener":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def start(self) -> RideSnapshot:
        """
        Subscribe, then read the current state once.

        The read covers changes that landed before the subscription existed.
        """
        self._subscription = await self._store.subscribe(self.request_id, self.handle_change)
        try:
            snapshot = await self._store.get(self.request_id)
        except BaseException:
            await self.close()
            raise
        self.observe(snapshot)
        return snapshot

    async def close(self):
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()

    def observe(self, snapshot: RideSnapshot):
        """Apply a state read from the store, for changes the subscription may have missed."""
        self.handle_change(RideChange(
            request_id=self.request_id,
            status=snapshot.status,
            assigned_driver_id=snapshot.assigned_driver_id,
        ))

    def handle_change(self, change: RideChange):
        if change.declined_driver_id is not None:
            logger.debug("Ride %s: driver %s declined", self.request_id, change.declined_driver_id)
            self.declined(change.declined_driver_id).set()

        if change.status is None:
            return
        status = RideStatus(change.status)

        if status is RideStatus.ACCEPTED:
            if not self.settled.is_set():
                self.accepted_driver_id = str(change.assigned_driver_id)
                logger.info("Ride %s settled with driver %s", self.request_id, self.accepted_driver_id)
                self.settled.set()
        elif status is RideStatus.CANCELED:
            self.canceled.set()
        elif status is RideStatus.EXPIRED:
            self.expired.set()

    def declined(self, driver_id) -> asyncio.Event:
        return self._declines.setdefault(str(driver_id), asyncio.Event())

    @property
    def is_resolved(self) -> bool:
        return self.settled.is_set() or self.canceled.is_set() or self.expired.is_set()
