import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import redis
from asgiref.sync import async_to_sync
from channels.db import database_sync_to_async
from channels.layers import InMemoryChannelLayer, get_channel_layer
from channels.routing import URLRouter
from channels.testing import ApplicationCommunicator, WebsocketCommunicator
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings

from drivers.models import DriverProfile
from rides.models import RideRequest
from services.matching.exceptions import GeoIndexUnavailable, NotificationError
from services.matching.types import DispatchResult, GeoPoint, TerminalStatus
from services.ride_management.ride_lifecycle import send_dispatch

from .dispatch_worker import DISPATCH_CHANNEL, DispatchWorkerConsumer, request_dispatch, request_stop
from .geo import DriverLocationService, RedisGeoIndex
from .notifications import ChannelLayerGateway, notify_rider_event
from .routing import websocket_urlpatterns


class ChannelLayerGatewayTests(SimpleTestCase):
	async def test_offer_reaches_driver_group(self):
		layer = InMemoryChannelLayer()
		channel = await layer.new_channel()
		await layer.group_add('driver_d1', channel)

		await ChannelLayerGateway(layer).notify_driver('d1', 5, {'type': 'ride_offer', 'price': 120})

		message = await layer.receive(channel)
		self.assertEqual(message['type'], 'ride_offer')
		self.assertEqual(message['ride_id'], 5)
		self.assertEqual(message['driver_id'], 'd1')
		self.assertEqual(message['price'], 120)

	async def test_transport_failure_raises_notification_error(self):
		layer = MagicMock()
		layer.group_send = AsyncMock(side_effect=RuntimeError('redis down'))

		with self.assertRaises(NotificationError):
			await ChannelLayerGateway(layer).notify_driver('d1', 5, {'type': 'ride_expired'})


class RiderNotificationTests(TestCase):
	@patch('realtime.notifications.get_channel_layer')
	def test_event_goes_to_rider_group(self, mock_get_layer):
		layer = mock_get_layer.return_value
		layer.group_send = AsyncMock()
		ride = RideRequest.objects.create(
			rider_id='rider-1', pickup_latitude=28.6139, pickup_longitude=77.2090,
			status='accepted', assigned_driver_id='d1',
		)

		sent = notify_rider_event('ride_accepted', ride, 'Driver is on the way', extra={'driver_id': 'd1'})

		self.assertTrue(sent)
		group, payload = layer.group_send.call_args[0]
		self.assertEqual(group, 'user_rider-1')
		self.assertEqual(payload['type'], 'ride_accepted')
		self.assertEqual(payload['driver_id'], 'd1')
		self.assertEqual(payload['ride_data']['id'], ride.id)
		self.assertEqual(payload['message'], 'Driver is on the way')


class RedisGeoIndexTests(SimpleTestCase):
	def setUp(self):
		self.redis_client = MagicMock()
		self.metadata = {
			'driver:meta:d1': {'status': 'available', 'vehicle_class': 'standard', 'vehicle_number': 'DL-1'},
			'driver:meta:d2': {},
			'driver:meta:d4': {'status': 'busy', 'vehicle_class': 'standard'},
			'driver:meta:d5': {'status': 'available', 'vehicle_class': 'xl'},
		}
		self.redis_client.hgetall.side_effect = lambda key: self.metadata.get(key, {})
		self.redis_client.geosearch.return_value = [
			('d3', 40.0, (77.2090, 28.6140)),
			('d1', 120.5, (77.2091, 28.6149)),
			('d2', 300.0, (77.2100, 28.6160)),
			('d4', 350.0, (77.2100, 28.6170)),
			('d5', 400.0, (77.2100, 28.6175)),
		]
		self.service = DriverLocationService(redis_client=self.redis_client)

	async def test_filters_stale_busy_excluded_and_other_class(self):
		candidates = await RedisGeoIndex(self.service).find_candidates(
			GeoPoint(28.6139, 77.2090), 1000, 'standard', ['d3'],
		)

		self.assertEqual([c.driver_id for c in candidates], ['d1'])
		self.assertEqual(candidates[0].distance_meters, 120.5)
		self.assertEqual(candidates[0].latitude, 28.6149)
		kwargs = self.redis_client.geosearch.call_args.kwargs
		self.assertEqual(kwargs['radius'], 1000)
		self.assertEqual(kwargs['unit'], 'm')

	async def test_redis_error_is_reported_as_unavailable(self):
		self.redis_client.geosearch.side_effect = redis.ConnectionError('refused')

		with self.assertRaises(GeoIndexUnavailable):
			await RedisGeoIndex(self.service).find_candidates(GeoPoint(0, 0), 1000, '', [])

	def test_count_widens_when_filtered_drivers_fill_it(self):
		nearest_first = [
			('d2', 10.0, (77.2090, 28.6140)),
			('d4', 20.0, (77.2090, 28.6141)),
			('d5', 30.0, (77.2090, 28.6142)),
			('d3', 40.0, (77.2090, 28.6143)),
			('d1', 50.0, (77.2090, 28.6144)),
			('d6', 60.0, (77.2090, 28.6145)),
			('d7', 70.0, (77.2090, 28.6146)),
		]
		self.redis_client.geosearch.side_effect = lambda *args, **kwargs: nearest_first[:kwargs['count']]
		self.metadata['driver:meta:d6'] = {'status': 'available', 'vehicle_class': 'standard'}
		self.metadata['driver:meta:d7'] = {'status': 'available', 'vehicle_class': 'standard'}

		drivers = self.service.get_nearby_drivers(28.6139, 77.2090, 1000, 'standard', ['d3'], limit=2)

		self.assertEqual([d.driver_id for d in drivers], ['d1', 'd6'])
		counts = [c.kwargs['count'] for c in self.redis_client.geosearch.call_args_list]
		self.assertEqual(counts, [3, 6])
		fetched = [c.args[0] for c in self.redis_client.hgetall.call_args_list]
		self.assertEqual(len(fetched), len(set(fetched)))

	def test_count_stops_widening_when_radius_is_exhausted(self):
		drivers = self.service.get_nearby_drivers(28.6139, 77.2090, 1000, 'standard', [], limit=6)

		self.assertEqual([d.driver_id for d in drivers], ['d1'])
		self.assertEqual(self.redis_client.geosearch.call_count, 1)

	def test_location_update_tracks_presence(self):
		self.assertTrue(self.service.update_driver_location('d1', 28.61, 77.20, vehicle_class='xl', status='available'))
		self.redis_client.geoadd.assert_called_once_with('drivers:geo', (77.20, 28.61, 'd1'))
		self.redis_client.sadd.assert_called_once_with('drivers:online', 'd1')

		self.service.update_driver_location('d1', 28.61, 77.20, status='busy')
		self.redis_client.srem.assert_called_with('drivers:online', 'd1')

	def test_write_failure_returns_false(self):
		self.redis_client.geoadd.side_effect = redis.ConnectionError('refused')

		self.assertFalse(self.service.update_driver_location('d1', 28.61, 77.20))


class DriverConsumerTests(TransactionTestCase):
	def setUp(self):
		DriverProfile.objects.create(
			driver_id='d1', vehicle_number='DL-1001', status='available',
			current_latitude=28.6140, current_longitude=77.2095,
		)
		self.ride = RideRequest.objects.create(
			rider_id='rider-1', pickup_latitude=28.6139, pickup_longitude=77.2090, status='searching',
		)
		self.application = URLRouter(websocket_urlpatterns)

	async def connect(self, driver_id='d1'):
		communicator = WebsocketCommunicator(self.application, f'/ws/driver/{driver_id}/')
		connected, _ = await communicator.connect()
		return communicator, connected

	async def test_unknown_driver_is_refused(self):
		communicator, connected = await self.connect('ghost')

		self.assertFalse(connected)

	async def test_offer_is_forwarded_and_accept_confirmed(self):
		communicator, connected = await self.connect()
		self.assertTrue(connected)
		greeting = await communicator.receive_json_from()
		self.assertEqual(greeting['type'], 'connection_established')

		await get_channel_layer().group_send('driver_d1', {
			'type': 'ride_offer',
			'ride_id': self.ride.id,
			'ride_data': {'id': self.ride.id},
			'timeout_seconds': 60,
		})
		offer = await communicator.receive_json_from()
		self.assertEqual(offer['type'], 'new_ride_request')
		self.assertEqual(offer['ride_id'], self.ride.id)

		await communicator.send_json_to({'type': 'accept_ride', 'ride_id': self.ride.id})
		reply = await communicator.receive_json_from()
		self.assertEqual(reply['type'], 'ride_accept_confirmed')

		ride = await database_sync_to_async(RideRequest.objects.get)(id=self.ride.id)
		self.assertEqual(ride.assigned_driver_id, 'd1')

		await communicator.send_json_to({'type': 'accept_ride', 'ride_id': self.ride.id})
		reply = await communicator.receive_json_from()
		self.assertEqual(reply['type'], 'ride_accept_failed')

		await communicator.disconnect()

	async def test_decline_and_bad_messages(self):
		communicator, _ = await self.connect()
		await communicator.receive_json_from()

		await communicator.send_json_to({'type': 'decline_ride', 'ride_id': self.ride.id})
		reply = await communicator.receive_json_from()
		self.assertEqual(reply['type'], 'ride_decline_confirmed')

		await communicator.send_json_to({'type': 'accept_ride'})
		reply = await communicator.receive_json_from()
		self.assertEqual(reply['type'], 'error')

		await communicator.send_json_to({'type': 'teleport'})
		reply = await communicator.receive_json_from()
		self.assertEqual(reply['type'], 'error')

		await communicator.disconnect()

	async def test_status_update(self):
		communicator, _ = await self.connect()
		await communicator.receive_json_from()

		await communicator.send_json_to({'type': 'driver_status_update', 'status': 'offline'})
		reply = await communicator.receive_json_from()
		self.assertEqual(reply['type'], 'status_updated')

		profile = await database_sync_to_async(DriverProfile.objects.get)(driver_id='d1')
		self.assertEqual(profile.status, 'offline')

		await communicator.disconnect()

	async def test_decline_is_published_to_ride_group(self):
		layer = get_channel_layer()
		channel = await layer.new_channel()
		await layer.group_add(f'ride_{self.ride.id}', channel)
		communicator, _ = await self.connect()
		await communicator.receive_json_from()

		await communicator.send_json_to({'type': 'decline_ride', 'ride_id': self.ride.id})
		reply = await communicator.receive_json_from()
		self.assertEqual(reply['type'], 'ride_decline_confirmed')

		message = await asyncio.wait_for(layer.receive(channel), 2)
		self.assertEqual(message['type'], 'ride.declined')
		self.assertEqual(message['driver_id'], 'd1')

		await communicator.send_json_to({'type': 'decline_ride', 'ride_id': 999999})
		reply = await communicator.receive_json_from()
		self.assertEqual(reply['type'], 'ride_decline_confirmed')

		await communicator.disconnect()


class FakeDispatchLoop:
	def __init__(self, result=None, block=False):
		self.result = result
		self.block = block
		self.calls = []
		self.cancelled = False

	async def run(self, ride_id):
		self.calls.append(ride_id)
		if self.block:
			try:
				await asyncio.Event().wait()
			except asyncio.CancelledError:
				self.cancelled = True
				raise
		return self.result


async def wait_until(condition, timeout=2):
	async def poll():
		while not condition():
			await asyncio.sleep(0.01)
	await asyncio.wait_for(poll(), timeout)


class DispatchWorkerTests(TransactionTestCase):
	def worker(self):
		return ApplicationCommunicator(
			DispatchWorkerConsumer.as_asgi(), {'type': 'channel', 'channel': DISPATCH_CHANNEL},
		)

	@patch('realtime.dispatch_worker.notify_dispatch_result')
	async def test_start_runs_search_and_reports_result(self, mock_notify):
		result = DispatchResult(5, TerminalStatus.ASSIGNED, driver_id='d1', offers_sent=1)
		fake = FakeDispatchLoop(result)

		with patch('services.matching.factory.build_dispatch_loop', return_value=fake):
			communicator = self.worker()
			await communicator.send_input({'type': 'dispatch.start', 'ride_id': 5})
			await wait_until(lambda: mock_notify.called)
			await communicator.stop()

		self.assertEqual(fake.calls, [5])
		mock_notify.assert_called_once_with(result)

	@patch('realtime.dispatch_worker.notify_dispatch_result')
	async def test_stop_cancels_running_search(self, mock_notify):
		fake = FakeDispatchLoop(block=True)

		with patch('services.matching.factory.build_dispatch_loop', return_value=fake):
			communicator = self.worker()
			await communicator.send_input({'type': 'dispatch.start', 'ride_id': 5})
			await communicator.send_input({'type': 'dispatch.start', 'ride_id': 5})
			await wait_until(lambda: fake.calls)
			await communicator.send_input({'type': 'dispatch.stop', 'ride_id': 5})
			await wait_until(lambda: fake.cancelled)
			await communicator.stop()

		self.assertEqual(fake.calls, [5])
		mock_notify.assert_not_called()

	async def test_worker_shutdown_cancels_searches(self):
		fake = FakeDispatchLoop(block=True)

		with patch('services.matching.factory.build_dispatch_loop', return_value=fake):
			communicator = self.worker()
			await communicator.send_input({'type': 'dispatch.start', 'ride_id': 8})
			await wait_until(lambda: fake.calls)
			await communicator.stop()

		self.assertTrue(fake.cancelled)


class DispatchRequestTests(SimpleTestCase):
	def test_request_dispatch_sends_to_worker_channel(self):
		self.assertTrue(request_dispatch(7))
		self.assertTrue(request_stop(7))

		layer = get_channel_layer()
		first = async_to_sync(layer.receive)(DISPATCH_CHANNEL)
		second = async_to_sync(layer.receive)(DISPATCH_CHANNEL)
		self.assertEqual(first, {'type': 'dispatch.start', 'ride_id': 7})
		self.assertEqual(second, {'type': 'dispatch.stop', 'ride_id': 7})

	@patch('realtime.dispatch_worker.get_channel_layer')
	def test_unreachable_layer_is_reported(self, mock_get_layer):
		mock_get_layer.return_value.send = AsyncMock(side_effect=RuntimeError('redis down'))

		with self.assertLogs('realtime.dispatch_worker', level='ERROR'):
			self.assertFalse(request_dispatch(7))

	@override_settings(DISPATCH_RUNNER='worker')
	@patch('realtime.dispatch_worker.request_dispatch')
	def test_worker_runner_routes_to_channel(self, mock_request):
		send_dispatch(7)

		mock_request.assert_called_once_with(7)


class ChannelLayerSettingsTests(SimpleTestCase):
	def test_processes_share_a_redis_layer_outside_tests(self):
		from dispatch_backend.settings import base

		self.assertEqual(base.CHANNEL_LAYERS['default']['BACKEND'], 'channels_redis.core.RedisChannelLayer')
