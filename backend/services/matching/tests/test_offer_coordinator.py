import asyncio

from django.test import SimpleTestCase

from services.matching.acceptance import AcceptanceListener
from services.matching.memory import InMemoryRequestStore, RecordingGateway
from services.matching.offer_coordinator import OfferCoordinator
from services.matching.payloads import OfferPayloadBuilder
from services.matching.types import (
	DriverCandidate,
	GeoPoint,
	OfferOutcome,
	RideChange,
	RideSnapshot,
	RideStatus,
)


def searching_ride(store, **kwargs):
	kwargs.setdefault("status", RideStatus.SEARCHING)
	return store.add(RideSnapshot(id=None, rider_id="rider-1", pickup=GeoPoint(12.9716, 77.5946), **kwargs))


class AcceptanceListenerTests(SimpleTestCase):

	async def test_start_reads_state_that_landed_before_subscribing(self):
		store = InMemoryRequestStore()
		ride = searching_ride(store, status=RideStatus.ACCEPTED, assigned_driver_id="d1")

		async with AcceptanceListener(store, ride.id) as listener:
			self.assertTrue(listener.settled.is_set())
			self.assertEqual(listener.accepted_driver_id, "d1")

	async def test_first_acceptance_wins(self):
		store = InMemoryRequestStore()
		ride = searching_ride(store)
		listener = AcceptanceListener(store, ride.id)

		listener.handle_change(RideChange(ride.id, status=RideStatus.ACCEPTED, assigned_driver_id="d1"))
		listener.handle_change(RideChange(ride.id, status=RideStatus.ACCEPTED, assigned_driver_id="d2"))

		self.assertEqual(listener.accepted_driver_id, "d1")

	async def test_declines_are_tracked_per_driver(self):
		store = InMemoryRequestStore()
		ride = searching_ride(store)

		async with AcceptanceListener(store, ride.id) as listener:
			store.decline(ride.id, "d1")
			self.assertTrue(listener.declined("d1").is_set())
			self.assertFalse(listener.declined("d2").is_set())
			self.assertFalse(listener.is_resolved)

			store.cancel(ride.id)
			self.assertTrue(listener.canceled.is_set())
			self.assertTrue(listener.is_resolved)

	async def test_close_releases_subscription(self):
		store = InMemoryRequestStore()
		ride = searching_ride(store)

		async with AcceptanceListener(store, ride.id):
			self.assertEqual(store.subscriber_count(ride.id), 1)

		self.assertEqual(store.subscriber_count(ride.id), 0)


class OfferCoordinatorTests(SimpleTestCase):

	async def offer(self, store, ride, gateway, driver_id="d1", timeout=0.05, notify_timeout=None):
		async with AcceptanceListener(store, ride.id) as listener:
			coordinator = OfferCoordinator(gateway, listener, notify_timeout=notify_timeout)
			outcome = await coordinator.offer(ride.id, driver_id, timeout, payload={"price": 120})
			return outcome, coordinator

	async def test_accepted_by_offered_driver(self):
		store = InMemoryRequestStore()
		ride = searching_ride(store)
		gateway = RecordingGateway(on_notify=lambda driver_id, rid, payload: store.accept(rid, driver_id))

		outcome, coordinator = await self.offer(store, ride, gateway)

		self.assertEqual(outcome, OfferOutcome.ACCEPTED)
		self.assertEqual(gateway.messages_for("d1"), ["ride_offer"])
		offer = coordinator.history[0]
		self.assertEqual(offer.outcome, OfferOutcome.ACCEPTED)
		self.assertIsNotNone(offer.resolved_at)

	async def test_offer_message_carries_payload_and_deadline(self):
		store = InMemoryRequestStore()
		ride = searching_ride(store)
		gateway = RecordingGateway(on_notify=lambda driver_id, rid, payload: store.accept(rid, driver_id))

		await self.offer(store, ride, gateway, timeout=15)

		_, request_id, payload = gateway.sent[0]
		self.assertEqual(request_id, ride.id)
		self.assertEqual(payload["type"], "ride_offer")
		self.assertEqual(payload["ride_id"], ride.id)
		self.assertEqual(payload["timeout_seconds"], 15)
		self.assertEqual(payload["price"], 120)
		self.assertIn("expires_at", payload)

	async def test_superseded_when_another_driver_accepts(self):
		store = InMemoryRequestStore()
		ride = searching_ride(store)
		gateway = RecordingGateway(on_notify=lambda driver_id, rid, payload: store.accept(rid, "d7"))

		outcome, _ = await self.offer(store, ride, gateway)

		self.assertEqual(outcome, OfferOutcome.SUPERSEDED)
		self.assertEqual(gateway.messages_for("d1"), ["ride_offer", "ride_taken"])

	async def test_rejected_on_explicit_decline(self):
		store = InMemoryRequestStore()
		ride = searching_ride(store)
		gateway = RecordingGateway(on_notify=lambda driver_id, rid, payload: store.decline(rid, driver_id))

		outcome, _ = await asyncio.wait_for(self.offer(store, ride, gateway, timeout=30), 2)

		self.assertEqual(outcome, OfferOutcome.REJECTED)
		self.assertEqual(gateway.messages_for("d1"), ["ride_offer"])

	async def test_decline_by_other_driver_is_ignored(self):
		store = InMemoryRequestStore()
		ride = searching_ride(store)
		gateway = RecordingGateway(on_notify=lambda driver_id, rid, payload: store.decline(rid, "d2"))

		outcome, _ = await self.offer(store, ride, gateway)

		self.assertEqual(outcome, OfferOutcome.TIMED_OUT)

	async def test_timed_out_sends_expiry_notice(self):
		store = InMemoryRequestStore()
		ride = searching_ride(store)
		gateway = RecordingGateway()

		outcome, coordinator = await self.offer(store, ride, gateway)

		self.assertEqual(outcome, OfferOutcome.TIMED_OUT)
		self.assertEqual(gateway.messages_for("d1"), ["ride_offer", "ride_expired"])
		self.assertEqual(coordinator.history[0].outcome, OfferOutcome.TIMED_OUT)

	async def test_settlement_wins_over_racing_decline(self):
		store = InMemoryRequestStore()
		ride = searching_ride(store)

		def respond(driver_id, rid, payload):
			store.decline(rid, driver_id)
			store.accept(rid, "d2")

		gateway = RecordingGateway(on_notify=respond)

		outcome, _ = await self.offer(store, ride, gateway)

		self.assertEqual(outcome, OfferOutcome.SUPERSEDED)

	async def test_undelivered_offer_times_out(self):
		store = InMemoryRequestStore()
		ride = searching_ride(store)
		gateway = RecordingGateway(fail_for=["d1"])

		outcome, _ = await self.offer(store, ride, gateway)

		self.assertEqual(outcome, OfferOutcome.TIMED_OUT)

	async def test_send_gives_up_on_hanging_transport(self):
		store = InMemoryRequestStore()
		ride = searching_ride(store)

		async def hang(driver_id, rid, payload):
			await asyncio.sleep(10)

		gateway = RecordingGateway(on_notify=hang)

		async with AcceptanceListener(store, ride.id) as listener:
			coordinator = OfferCoordinator(gateway, listener, notify_timeout=0.05)
			sent = await asyncio.wait_for(
				coordinator.send("d1", ride.id, {"type": "ride_cancelled", "ride_id": ride.id}),
				2,
			)

		self.assertFalse(sent)


class OfferPayloadBuilderTests(SimpleTestCase):

	def setUp(self):
		self.ride = RideSnapshot(
			id=5,
			rider_id="rider-1",
			pickup=GeoPoint(12.97, 77.59),
			dropoff=GeoPoint(12.93, 77.62),
			pickup_address="MG Road",
			vehicle_class="xl",
		)
		self.candidate = DriverCandidate(driver_id="d1", latitude=12.971, longitude=77.591, distance_meters=153.27)

	def test_ride_details_and_pickup_distance(self):
		payload = OfferPayloadBuilder().build(self.ride, self.candidate)

		self.assertEqual(payload["ride_data"]["id"], 5)
		self.assertEqual(payload["ride_data"]["vehicle_class"], "xl")
		self.assertEqual(payload["ride_data"]["pickup"]["address"], "MG Road")
		self.assertEqual(payload["ride_data"]["dropoff"]["latitude"], 12.93)
		self.assertIsNone(payload["ride_data"]["scheduled_time"])
		self.assertEqual(payload["pickup_distance_meters"], 153.3)
		self.assertNotIn("price", payload)

	def test_pricing_is_merged(self):
		builder = OfferPayloadBuilder(pricing=lambda ride, candidate: {"price": 99.5, "distance_km": 4.2})

		payload = builder.build(self.ride, self.candidate)

		self.assertEqual(payload["price"], 99.5)
		self.assertEqual(payload["distance_km"], 4.2)

	def test_pricing_failure_still_builds_offer(self):
		def broken(ride, candidate):
			raise RuntimeError("pricing service down")

		with self.assertLogs("services.matching.payloads", level="ERROR"):
			payload = OfferPayloadBuilder(pricing=broken).build(self.ride, self.candidate)

		self.assertIn("ride_data", payload)
		self.assertNotIn("price", payload)
