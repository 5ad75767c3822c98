import asyncio

from django.test import SimpleTestCase

from services.matching.config import DispatchConfig
from services.matching.dispatch_loop import DispatchLoop
from services.matching.exceptions import DispatchInProgress
from services.matching.manager import DispatchManager
from services.matching.memory import InMemoryRequestStore, RecordingGateway, StaticGeoIndex
from services.matching.types import GeoPoint, RideSnapshot, RideStatus, TerminalStatus


class DispatchManagerTests(SimpleTestCase):

	def setUp(self):
		self.store = InMemoryRequestStore()
		self.geo = StaticGeoIndex()
		self.gateway = RecordingGateway()
		self.config = DispatchConfig(offer_timeout_seconds=0.05, max_radius_meters=1000, geo_retry_backoff_seconds=0)
		self.manager = DispatchManager(
			lambda: DispatchLoop(self.store, self.geo, self.gateway, config=self.config)
		)

	def add_ride(self):
		return self.store.add(RideSnapshot(id=None, rider_id="rider-1", pickup=GeoPoint(12.97, 77.59)))

	async def wait_for_offer(self):
		while not self.gateway.offers_to():
			await asyncio.sleep(0.005)

	async def test_start_twice_reuses_running_task(self):
		ride = self.add_ride()

		first = self.manager.start(ride.id)
		second = self.manager.start(ride.id)

		self.assertIs(first, second)
		self.assertEqual(first.get_name(), f"dispatch-{ride.id}")
		result = await self.manager.wait(ride.id)
		self.assertEqual(result.status, TerminalStatus.NO_DRIVER_FOUND)

	async def test_finished_task_is_forgotten(self):
		ride = self.add_ride()

		task = self.manager.start(ride.id)
		await task
		await asyncio.sleep(0)

		self.assertEqual(self.manager.running(), [])
		with self.assertRaises(KeyError):
			await self.manager.wait(ride.id)

	async def test_cancel_stops_dispatch_and_releases_subscription(self):
		self.config = DispatchConfig(offer_timeout_seconds=30, geo_retry_backoff_seconds=0)
		self.geo.add("d1", 100)
		ride = self.add_ride()

		task = self.manager.start(ride.id)
		await asyncio.wait_for(self.wait_for_offer(), 2)
		self.assertEqual(self.manager.running(), [ride.id])

		self.assertTrue(self.manager.cancel(ride.id))
		await asyncio.gather(task, return_exceptions=True)

		self.assertTrue(task.cancelled())
		self.assertEqual(self.store.subscriber_count(ride.id), 0)
		self.assertFalse(self.manager.cancel(ride.id))
		snapshot = await self.store.get(ride.id)
		self.assertEqual(snapshot.status, RideStatus.SEARCHING)

	async def test_shutdown_cancels_everything(self):
		self.config = DispatchConfig(offer_timeout_seconds=30, geo_retry_backoff_seconds=0)
		self.geo.add("d1", 100)
		rides = [self.add_ride(), self.add_ride()]

		tasks = [self.manager.start(ride.id) for ride in rides]
		await asyncio.wait_for(self.wait_for_offer(), 2)
		await self.manager.shutdown()

		self.assertTrue(all(task.done() for task in tasks))
		self.assertEqual(self.manager.running(), [])

	async def test_result_is_reported_when_dispatch_finishes(self):
		reported = []

		async def report(result):
			reported.append(result)

		self.manager = DispatchManager(
			lambda: DispatchLoop(self.store, self.geo, self.gateway, config=self.config),
			on_result=report,
		)
		ride = self.add_ride()

		result = await self.manager.start(ride.id)

		self.assertEqual(reported, [result])
		self.assertEqual(result.status, TerminalStatus.NO_DRIVER_FOUND)

	async def test_failing_report_does_not_lose_the_result(self):
		async def report(result):
			raise RuntimeError("rider channel down")

		self.manager = DispatchManager(
			lambda: DispatchLoop(self.store, self.geo, self.gateway, config=self.config),
			on_result=report,
		)
		ride = self.add_ride()

		with self.assertLogs('services.matching.manager', level='ERROR'):
			result = await self.manager.start(ride.id)

		self.assertEqual(result.status, TerminalStatus.NO_DRIVER_FOUND)

	async def test_ride_leased_elsewhere_is_dropped_quietly(self):
		ride = self.add_ride()
		await self.store.claim_dispatch(ride.id, "other-worker", 60)

		with self.assertLogs('services.matching.manager', level='INFO') as logs:
			task = self.manager.start(ride.id)
			await asyncio.gather(task, return_exceptions=True)
			await asyncio.sleep(0)

		self.assertIsInstance(task.exception(), DispatchInProgress)
		self.assertTrue(any("dispatched elsewhere" in line for line in logs.output))
		self.assertEqual(self.manager.running(), [])
