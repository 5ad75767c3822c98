import asyncio

from django.test import SimpleTestCase

from services.matching.config import DispatchConfig
from services.matching.dispatch_loop import DispatchLoop
from services.matching.exceptions import DispatchInProgress, PreconditionFailed
from services.matching.memory import InMemoryRequestStore, RecordingGateway, StaticGeoIndex
from services.matching.types import GeoPoint, RideSnapshot, RideStatus, TerminalStatus


def make_config(**kwargs):
	values = {
		"offer_timeout_seconds": 0.05,
		"radius_schedule_meters": (1000, 2000, 3000),
		"max_radius_meters": 3000,
		"geo_retry_backoff_seconds": 0,
		"notify_timeout_seconds": 1,
	}
	values.update(kwargs)
	return DispatchConfig(**values)


def accept_when_offered(store, *driver_ids):
	"""on_notify hook: the listed drivers accept as soon as they get an offer."""
	def respond(driver_id, request_id, payload):
		if payload["type"] == "ride_offer" and driver_id in driver_ids:
			store.accept(request_id, driver_id)
	return respond


class DispatchLoopTests(SimpleTestCase):

	def setUp(self):
		self.store = InMemoryRequestStore()
		self.geo = StaticGeoIndex()
		self.gateway = RecordingGateway()
		self.ride = self.store.add(RideSnapshot(id=None, rider_id="rider-1", pickup=GeoPoint(12.9716, 77.5946)))

	def make_loop(self, **config):
		return DispatchLoop(self.store, self.geo, self.gateway, config=make_config(**config))

	async def test_expands_radius_until_a_driver_accepts(self):
		self.geo.add("d1", 500)
		self.geo.add("d2", 1500)
		self.gateway.on_notify = accept_when_offered(self.store, "d2")

		result = await self.make_loop().run(self.ride.id)

		self.assertEqual(result.status, TerminalStatus.ASSIGNED)
		self.assertEqual(result.driver_id, "d2")
		self.assertFalse(result.superseded)
		self.assertEqual(result.offers_sent, 2)
		self.assertEqual(self.geo.radii, [1000, 1000, 2000])
		self.assertEqual(self.geo.queries[-1], (2000, ("d1",)))
		self.assertEqual(self.gateway.offers_to(), ["d1", "d2"])
		self.assertEqual(self.gateway.messages_for("d1"), ["ride_offer", "ride_expired"])

		ride = await self.store.get(self.ride.id)
		self.assertEqual(ride.status, RideStatus.ACCEPTED)
		self.assertEqual(ride.assigned_driver_id, "d2")
		self.assertEqual(ride.excluded_driver_ids, ["d1"])

	async def test_offers_nearest_driver_first(self):
		self.geo.add("far", 900)
		self.geo.add("near", 200)
		self.gateway.on_notify = accept_when_offered(self.store, "far")

		result = await self.make_loop().run(self.ride.id)

		self.assertEqual(self.gateway.offers_to(), ["near", "far"])
		self.assertEqual(result.driver_id, "far")

	async def test_index_ignoring_exclusions_never_repeats_an_offer(self):
		self.geo = StaticGeoIndex(honor_exclusions=False)
		self.geo.add("d1", 500)

		result = await self.make_loop().run(self.ride.id)

		self.assertEqual(self.gateway.offers_to(), ["d1"])
		self.assertEqual(result.status, TerminalStatus.NO_DRIVER_FOUND)

	async def test_no_drivers_expires_after_largest_radius(self):
		result = await self.make_loop().run(self.ride.id)

		self.assertEqual(result.status, TerminalStatus.NO_DRIVER_FOUND)
		self.assertEqual(result.offers_sent, 0)
		self.assertEqual(result.final_radius_meters, 3000)
		self.assertEqual(self.geo.radii, [1000, 2000, 3000])

		ride = await self.store.get(self.ride.id)
		self.assertEqual(ride.status, RideStatus.EXPIRED)
		self.assertEqual(ride.search_radius_meters, 3000)
		self.assertEqual(self.store.transitions, [
			(self.ride.id, RideStatus.CREATED, RideStatus.SEARCHING),
			(self.ride.id, RideStatus.SEARCHING, RideStatus.EXPIRED),
		])

	async def test_step_expansion_without_schedule(self):
		loop = self.make_loop(radius_schedule_meters=(), initial_radius_meters=500, radius_step_meters=500, max_radius_meters=1500)

		await loop.run(self.ride.id)

		self.assertEqual(self.geo.radii, [500, 1000, 1500])

	async def test_vehicle_class_filters_candidates(self):
		self.ride = self.store.add(RideSnapshot(
			id=None, rider_id="rider-2", pickup=GeoPoint(12.97, 77.59), vehicle_class="xl",
		))
		self.geo.add("d1", 100, vehicle_class="standard")
		self.geo.add("d2", 200, vehicle_class="xl")
		self.gateway.on_notify = accept_when_offered(self.store, "d1", "d2")

		result = await self.make_loop().run(self.ride.id)

		self.assertEqual(self.gateway.offers_to(), ["d2"])
		self.assertEqual(result.driver_id, "d2")

	async def test_geo_failures_are_retried_with_backoff(self):
		sleeps = []

		async def fake_sleep(delay):
			sleeps.append(delay)

		self.geo = StaticGeoIndex(failures=2)
		self.geo.add("d1", 300)
		self.gateway.on_notify = accept_when_offered(self.store, "d1")
		loop = DispatchLoop(
			self.store, self.geo, self.gateway,
			config=make_config(geo_retry_attempts=3, geo_retry_backoff_seconds=0.1),
			sleep=fake_sleep,
		)

		result = await loop.run(self.ride.id)

		self.assertEqual(sleeps, [0.1, 0.2])
		self.assertEqual(self.geo.radii, [1000, 1000, 1000])
		self.assertEqual(result.driver_id, "d1")

	async def test_geo_outage_ends_search_without_driver(self):
		async def fake_sleep(delay):
			pass

		self.geo = StaticGeoIndex(failures=100)
		loop = DispatchLoop(
			self.store, self.geo, self.gateway,
			config=make_config(geo_retry_attempts=2),
			sleep=fake_sleep,
		)

		result = await loop.run(self.ride.id)

		self.assertEqual(result.status, TerminalStatus.NO_DRIVER_FOUND)
		self.assertEqual(self.geo.radii, [1000, 1000, 2000, 2000, 3000, 3000])

	async def test_unreachable_driver_is_skipped(self):
		self.gateway = RecordingGateway(fail_for=["d1"])
		self.gateway.on_notify = accept_when_offered(self.store, "d2")
		self.geo.add("d1", 100)
		self.geo.add("d2", 200)

		result = await self.make_loop().run(self.ride.id)

		self.assertEqual(result.driver_id, "d2")
		self.assertEqual(self.gateway.offers_to(), ["d1", "d2"])
		ride = await self.store.get(self.ride.id)
		self.assertEqual(ride.excluded_driver_ids, ["d1"])

	async def test_decline_moves_on_without_waiting_for_timeout(self):
		self.geo.add("d1", 100)
		self.geo.add("d2", 200)

		def respond(driver_id, request_id, payload):
			if payload["type"] != "ride_offer":
				return
			if driver_id == "d1":
				self.store.decline(request_id, driver_id)
			else:
				self.store.accept(request_id, driver_id)

		self.gateway.on_notify = respond

		result = await asyncio.wait_for(self.make_loop(offer_timeout_seconds=30).run(self.ride.id), 2)

		self.assertEqual(result.driver_id, "d2")
		self.assertEqual(self.gateway.messages_for("d1"), ["ride_offer"])

	async def test_late_acceptance_by_earlier_driver_wins(self):
		self.geo.add("d1", 100)
		self.geo.add("d2", 200)

		def respond(driver_id, request_id, payload):
			# d1 accepts after its own offer timed out, while d2 holds the offer
			if payload["type"] == "ride_offer" and driver_id == "d2":
				self.store.accept(request_id, "d1")

		self.gateway.on_notify = respond

		result = await self.make_loop().run(self.ride.id)

		self.assertEqual(result.status, TerminalStatus.ASSIGNED)
		self.assertEqual(result.driver_id, "d1")
		self.assertTrue(result.superseded)
		self.assertEqual(self.gateway.messages_for("d2"), ["ride_offer", "ride_taken"])

		ride = await self.store.get(self.ride.id)
		self.assertEqual(ride.assigned_driver_id, "d1")
		self.assertNotIn("d1", ride.excluded_driver_ids)

	async def test_cancel_during_offer_stops_search(self):
		self.geo.add("d1", 100)
		self.geo.add("d2", 200)

		def respond(driver_id, request_id, payload):
			if payload["type"] == "ride_offer":
				self.store.cancel(request_id)

		self.gateway.on_notify = respond

		result = await self.make_loop().run(self.ride.id)

		self.assertEqual(result.status, TerminalStatus.CANCELED)
		self.assertEqual(self.gateway.offers_to(), ["d1"])
		self.assertIn("ride_cancelled", self.gateway.messages_for("d1"))
		ride = await self.store.get(self.ride.id)
		self.assertEqual(ride.status, RideStatus.CANCELED)

	async def test_terminal_request_is_not_dispatched(self):
		accepted = self.store.add(RideSnapshot(
			id=None, rider_id="rider-3", pickup=GeoPoint(0, 0),
			status=RideStatus.ACCEPTED, assigned_driver_id="d9",
		))
		canceled = self.store.add(RideSnapshot(
			id=None, rider_id="rider-4", pickup=GeoPoint(0, 0), status=RideStatus.CANCELED,
		))

		first = await self.make_loop().run(accepted.id)
		second = await self.make_loop().run(canceled.id)

		self.assertEqual(first.status, TerminalStatus.ASSIGNED)
		self.assertEqual(first.driver_id, "d9")
		self.assertEqual(second.status, TerminalStatus.CANCELED)
		self.assertEqual(self.geo.queries, [])
		self.assertEqual(self.gateway.sent, [])

	async def test_acceptance_racing_expiry_is_reported(self):
		class LateAcceptStore(InMemoryRequestStore):
			async def conditional_update_status(self, request_id, expected_status, new_status, extra=None):
				if new_status is RideStatus.EXPIRED:
					self.accept(request_id, "d1")
				return await super().conditional_update_status(request_id, expected_status, new_status, extra)

		self.store = LateAcceptStore()
		self.ride = self.store.add(RideSnapshot(id=None, rider_id="rider-1", pickup=GeoPoint(0, 0)))
		self.geo.add("d1", 100)

		result = await self.make_loop().run(self.ride.id)

		self.assertEqual(result.status, TerminalStatus.ASSIGNED)
		self.assertEqual(result.driver_id, "d1")
		self.assertTrue(result.superseded)

	async def test_offer_budget_limits_offers(self):
		for driver_id, distance in (("d1", 100), ("d2", 200), ("d3", 300)):
			self.geo.add(driver_id, distance)

		result = await self.make_loop(max_offers=2).run(self.ride.id)

		self.assertEqual(self.gateway.offers_to(), ["d1", "d2"])
		self.assertEqual(result.status, TerminalStatus.NO_DRIVER_FOUND)
		self.assertEqual(result.offers_sent, 2)

	async def test_resumes_from_saved_progress(self):
		resumed = self.store.add(RideSnapshot(
			id=None, rider_id="rider-5", pickup=GeoPoint(0, 0),
			status=RideStatus.SEARCHING, search_radius_meters=2000, excluded_driver_ids=["d1"],
		))
		self.geo.add("d1", 100)
		self.geo.add("d2", 1800)
		self.gateway.on_notify = accept_when_offered(self.store, "d1", "d2")

		result = await self.make_loop().run(resumed.id)

		self.assertEqual(self.geo.radii, [2000])
		self.assertEqual(self.gateway.offers_to(), ["d2"])
		self.assertEqual(result.driver_id, "d2")

	async def test_subscription_is_released(self):
		self.geo.add("d1", 100)

		await self.make_loop().run(self.ride.id)

		self.assertEqual(self.store.subscriber_count(self.ride.id), 0)

	async def test_payload_includes_ride_details(self):
		self.geo.add("d1", 250)
		self.gateway.on_notify = accept_when_offered(self.store, "d1")

		await self.make_loop().run(self.ride.id)

		_, _, payload = self.gateway.sent[0]
		self.assertEqual(payload["ride_data"]["rider_id"], "rider-1")
		self.assertEqual(payload["pickup_distance_meters"], 250)


	async def test_skips_excluded_driver_returned_by_index(self):
		self.geo = StaticGeoIndex(honor_exclusions=False)
		self.geo.add("d1", 500)
		self.geo.add("d2", 1500)
		self.gateway.on_notify = accept_when_offered(self.store, "d2")

		result = await self.make_loop().run(self.ride.id)

		self.assertEqual(self.gateway.offers_to(), ["d1", "d2"])
		self.assertEqual(self.geo.radii, [1000, 1000, 2000])
		self.assertEqual(self.geo.queries[-1], (2000, ("d1",)))
		self.assertEqual(result.status, TerminalStatus.ASSIGNED)
		self.assertEqual(result.driver_id, "d2")
		self.assertEqual(self.gateway.messages_for("d1"), ["ride_offer", "ride_expired"])

	async def test_decline_before_offer_does_not_answer_it(self):
		store = self.store
		ride_id = self.ride.id

		class EarlyDeclineIndex(StaticGeoIndex):
			async def find_candidates(self, center, radius_meters, vehicle_class, exclude_ids):
				if not self.queries:
					store.decline(ride_id, "d1")
				return await super().find_candidates(center, radius_meters, vehicle_class, exclude_ids)

		self.geo = EarlyDeclineIndex()
		self.geo.add("d1", 100)

		result = await self.make_loop(max_radius_meters=1000).run(ride_id)

		self.assertEqual(self.gateway.messages_for("d1"), ["ride_offer", "ride_expired"])
		self.assertEqual(result.status, TerminalStatus.NO_DRIVER_FOUND)

	async def test_missed_cancel_is_picked_up_when_saving_progress(self):
		class DeafStore(InMemoryRequestStore):
			async def subscribe(self, request_id, on_change):
				return await super().subscribe(request_id, lambda change: None)

		self.store = DeafStore()
		self.ride = self.store.add(RideSnapshot(id=None, rider_id="rider-1", pickup=GeoPoint(0, 0)))
		for driver_id, distance in (("d1", 100), ("d2", 200), ("d3", 300)):
			self.geo.add(driver_id, distance)

		def respond(driver_id, request_id, payload):
			if payload["type"] == "ride_offer":
				self.store.cancel(request_id)

		self.gateway.on_notify = respond

		result = await self.make_loop().run(self.ride.id)

		self.assertEqual(self.gateway.offers_to(), ["d1"])
		self.assertEqual(result.status, TerminalStatus.CANCELED)
		self.assertIn("ride_cancelled", self.gateway.messages_for("d1"))

	async def test_concurrent_runs_dispatch_once(self):
		self.geo.add("d1", 100)
		self.geo.add("d2", 200)

		results = await asyncio.gather(
			self.make_loop().run(self.ride.id),
			self.make_loop().run(self.ride.id),
			return_exceptions=True,
		)

		self.assertEqual(self.gateway.offers_to(), ["d1", "d2"])
		finished = [r for r in results if not isinstance(r, Exception)]
		refused = [r for r in results if isinstance(r, DispatchInProgress)]
		self.assertEqual(len(finished), 1)
		self.assertEqual(len(refused), 1)
		self.assertEqual(finished[0].status, TerminalStatus.NO_DRIVER_FOUND)
		self.assertEqual(refused[0].request_id, self.ride.id)

	async def test_run_stops_after_losing_its_lease(self):
		self.geo.add("d1", 100)
		self.geo.add("d2", 200)

		async def take_over(driver_id, request_id, payload):
			if payload["type"] == "ride_offer" and driver_id == "d1":
				self.store.expire_lease(request_id)
				self.assertTrue(await self.store.claim_dispatch(request_id, "replacement", 60))

		self.gateway.on_notify = take_over

		with self.assertRaises(DispatchInProgress) as ctx:
			await self.make_loop().run(self.ride.id)

		self.assertEqual(ctx.exception.owner, "replacement")
		self.assertEqual(self.gateway.offers_to(), ["d1"])
		self.assertEqual(self.store.subscriber_count(self.ride.id), 0)
		ride = await self.store.get(self.ride.id)
		self.assertEqual(ride.status, RideStatus.SEARCHING)
		self.assertEqual(ride.dispatch_owner, "replacement")

	async def test_expired_lease_can_be_claimed(self):
		ride = self.store.add(RideSnapshot(id=None, rider_id="rider-6", pickup=GeoPoint(0, 0), status=RideStatus.SEARCHING))
		self.assertTrue(await self.store.claim_dispatch(ride.id, "first", 60))
		self.assertFalse(await self.store.claim_dispatch(ride.id, "second", 60))

		self.store.expire_lease(ride.id)

		self.assertTrue(await self.store.claim_dispatch(ride.id, "second", 60))
		self.assertFalse(await self.store.update_search_state(ride.id, 2000, ["d1"], owner="first"))
		self.assertTrue(await self.store.update_search_state(ride.id, 2000, ["d1"], owner="second", lease_seconds=60))
		self.assertFalse(await self.store.claim_dispatch(ride.id, "first", 60))


class ConditionalUpdateTests(SimpleTestCase):

	async def test_only_one_concurrent_acceptance_succeeds(self):
		store = InMemoryRequestStore()
		ride = store.add(RideSnapshot(id=None, rider_id="r", pickup=GeoPoint(0, 0), status=RideStatus.SEARCHING))

		results = await asyncio.gather(*[
			store.conditional_update_status(
				ride.id, RideStatus.SEARCHING, RideStatus.ACCEPTED, {"assigned_driver_id": driver_id},
			)
			for driver_id in ("d1", "d2", "d3")
		], return_exceptions=True)

		winners = [r for r in results if isinstance(r, RideSnapshot)]
		losers = [r for r in results if isinstance(r, PreconditionFailed)]
		self.assertEqual(len(winners), 1)
		self.assertEqual(len(losers), 2)
		self.assertEqual(losers[0].current_status, RideStatus.ACCEPTED)

		final = await store.get(ride.id)
		self.assertEqual(final.assigned_driver_id, winners[0].assigned_driver_id)

	async def test_search_state_is_frozen_after_settlement(self):
		store = InMemoryRequestStore()
		ride = store.add(RideSnapshot(id=None, rider_id="r", pickup=GeoPoint(0, 0), status=RideStatus.SEARCHING))

		self.assertTrue(await store.update_search_state(ride.id, 2000, ["d1"]))
		store.accept(ride.id, "d2")
		self.assertFalse(await store.update_search_state(ride.id, 3000, ["d3"]))

		final = await store.get(ride.id)
		self.assertEqual(final.search_radius_meters, 2000)
		self.assertEqual(final.excluded_driver_ids, ["d1"])
