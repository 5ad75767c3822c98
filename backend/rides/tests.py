import asyncio
from datetime import timedelta
from io import StringIO
from unittest.mock import patch

from channels.db import database_sync_to_async
from channels.layers import InMemoryChannelLayer
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import SimpleTestCase, TestCase, TransactionTestCase
from django.utils import timezone
from rest_framework.test import APIRequestFactory

from common.utils.geo import point_in_polygon
from drivers.models import DriverProfile
from services import ride_management
from services.matching.config import DispatchConfig
from services.matching.dispatch_loop import DispatchLoop
from services.matching.memory import RecordingGateway, StaticGeoIndex
from services.matching.types import DispatchResult, RideStatus, TerminalStatus
from services.ride_management import (
	ActiveRideExistsError,
	DispatchInProgress,
	DriverNotAvailableError,
	InvalidTransition,
	PreconditionFailed,
	RideNotAvailableError,
	RideNotFoundError,
	ServiceUnavailableError,
)
from services.ride_management.store import ChannelSubscription, DjangoRequestStore, change_from_message

from .models import RedZone, RideRequest
from .tasks import dispatch_ride_task, release_scheduled_rides_task
from .views import accept_ride, cancel_ride, create_ride_request, decline_ride, red_zones, ride_detail

PUBLISH = 'services.ride_management.ride_lifecycle._publish'

# Square around Connaught Place, where make_ride puts the pickup
CONNAUGHT_SQUARE = [
	{'latitude': 28.60, 'longitude': 77.20},
	{'latitude': 28.60, 'longitude': 77.22},
	{'latitude': 28.62, 'longitude': 77.22},
	{'latitude': 28.62, 'longitude': 77.20},
]


def make_ride(**kwargs):
	values = {
		'rider_id': 'rider-1',
		'pickup_latitude': 28.6139,
		'pickup_longitude': 77.2090,
		'pickup_address': 'Connaught Place',
		'status': 'searching',
	}
	values.update(kwargs)
	return RideRequest.objects.create(**values)


def make_driver(driver_id, status='available', **kwargs):
	values = {
		'driver_id': driver_id,
		'vehicle_number': f'DL-{driver_id}',
		'status': status,
		'current_latitude': 28.6140,
		'current_longitude': 77.2095,
	}
	values.update(kwargs)
	return DriverProfile.objects.create(**values)


class RideLifecycleTests(TestCase):
	def setUp(self):
		self.driver_one = make_driver('d1')
		self.driver_two = make_driver('d2')

	@patch('rides.tasks.dispatch_ride_task')
	def test_create_queues_dispatch_after_commit(self, mock_task):
		with self.captureOnCommitCallbacks(execute=True) as callbacks:
			result = ride_management.create_ride_request('rider-9', 28.61, 77.20, pickup_address='Home')

		self.assertEqual(len(callbacks), 1)
		mock_task.delay.assert_called_once_with(result.ride.id)
		self.assertTrue(result.extra['dispatch_queued'])
		self.assertEqual(result.ride.status, 'created')
		self.assertEqual(result.ride.excluded_driver_ids, [])

	@patch('rides.tasks.dispatch_ride_task')
	def test_scheduled_ride_waits_for_release(self, mock_task):
		pickup = timezone.now() + timedelta(days=1)

		with self.captureOnCommitCallbacks(execute=True):
			result = ride_management.create_ride_request('rider-9', 28.61, 77.20, scheduled_time=pickup)

		mock_task.delay.assert_not_called()
		self.assertFalse(result.extra['dispatch_queued'])

	def test_rider_with_open_request_cannot_create_another(self):
		make_ride(rider_id='rider-9', status='created')

		with self.assertRaises(ActiveRideExistsError):
			ride_management.create_ride_request('rider-9', 28.61, 77.20)

	def test_settled_request_does_not_block_new_one(self):
		make_ride(rider_id='rider-9', status='expired')

		with patch('rides.tasks.dispatch_ride_task'):
			result = ride_management.create_ride_request('rider-9', 28.61, 77.20)

		self.assertTrue(result.success)

	def test_accept_assigns_driver_and_publishes_after_commit(self):
		ride = make_ride(excluded_driver_ids=['d1', 'd3'])

		with patch(PUBLISH) as mock_publish, self.captureOnCommitCallbacks(execute=True):
			result = ride_management.accept_ride(ride.id, 'd1')

		ride.refresh_from_db()
		self.driver_one.refresh_from_db()
		self.assertTrue(result.success)
		self.assertEqual(ride.status, 'accepted')
		self.assertEqual(ride.assigned_driver_id, 'd1')
		self.assertEqual(ride.excluded_driver_ids, ['d3'])
		self.assertIsNotNone(ride.settled_at)
		self.assertEqual(self.driver_one.status, 'busy')
		mock_publish.assert_called_once_with(ride.id, {
			'type': 'ride.status',
			'ride_id': ride.id,
			'status': 'accepted',
			'assigned_driver_id': 'd1',
		})

	def test_second_acceptance_is_refused(self):
		ride = make_ride()

		with patch(PUBLISH):
			ride_management.accept_ride(ride.id, 'd1')
			with self.assertRaises(RideNotAvailableError):
				ride_management.accept_ride(ride.id, 'd2')

		ride.refresh_from_db()
		self.driver_two.refresh_from_db()
		self.assertEqual(ride.assigned_driver_id, 'd1')
		self.assertEqual(self.driver_two.status, 'available')

	def test_unavailable_driver_cannot_accept(self):
		make_driver('d3', status='offline', vehicle_number='DL-OFF')
		ride = make_ride()

		with self.assertRaises(DriverNotAvailableError):
			ride_management.accept_ride(ride.id, 'd3')
		with self.assertRaises(RideNotFoundError):
			ride_management.accept_ride(ride.id, 'nobody')

		ride.refresh_from_db()
		self.assertEqual(ride.status, 'searching')

	def test_created_ride_cannot_be_accepted(self):
		ride = make_ride(status='created')

		with self.assertRaises(RideNotAvailableError):
			ride_management.accept_ride(ride.id, 'd1')

	def test_decline_publishes_to_ride_group(self):
		ride = make_ride()

		with patch(PUBLISH) as mock_publish:
			ride_management.decline_offer(ride.id, 'd1')

		mock_publish.assert_called_once_with(ride.id, {
			'type': 'ride.declined',
			'ride_id': ride.id,
			'driver_id': 'd1',
		})

	def test_decline_of_settled_ride_is_refused(self):
		ride = make_ride(status='accepted', assigned_driver_id='d2')

		with self.assertRaises(RideNotAvailableError):
			ride_management.decline_offer(ride.id, 'd1')

	def test_cancel_records_reason(self):
		ride = make_ride(status='created')

		with patch(PUBLISH):
			ride_management.cancel_ride(ride.id, reason='Changed plans', rider_id='rider-1')

		ride.refresh_from_db()
		self.assertEqual(ride.status, 'canceled')
		self.assertEqual(ride.cancellation_reason, 'Changed plans')
		self.assertIsNotNone(ride.settled_at)

	def test_cancel_checks_owner_and_state(self):
		ride = make_ride()

		with self.assertRaises(RideNotFoundError):
			ride_management.cancel_ride(ride.id, rider_id='someone-else')

		with patch(PUBLISH):
			ride_management.cancel_ride(ride.id)
		with self.assertRaises(RideNotAvailableError):
			ride_management.cancel_ride(ride.id)

	def test_conditional_update_requires_expected_status(self):
		ride = make_ride(status='expired')

		with self.assertRaises(PreconditionFailed) as ctx:
			ride_management.conditional_update_status(ride.id, 'searching', 'canceled')
		self.assertEqual(ctx.exception.current_status, RideStatus.EXPIRED)

		with self.assertRaises(InvalidTransition):
			ride_management.conditional_update_status(ride.id, 'expired', 'searching')

		with self.assertRaises(RideNotFoundError):
			ride_management.conditional_update_status(999999, 'created', 'searching')

	def test_search_state_merges_exclusions_while_searching(self):
		ride = make_ride(excluded_driver_ids=['d1'])

		self.assertTrue(ride_management.update_search_state(ride.id, 2000, ['d2', 'd1']))
		ride.refresh_from_db()
		self.assertEqual(ride.excluded_driver_ids, ['d1', 'd2'])
		self.assertEqual(ride.search_radius_meters, 2000)

		RideRequest.objects.filter(id=ride.id).update(status='expired')
		self.assertFalse(ride_management.update_search_state(ride.id, 3000, ['d3']))
		ride.refresh_from_db()
		self.assertEqual(ride.excluded_driver_ids, ['d1', 'd2'])

	@patch('rides.tasks.dispatch_ride_task')
	def test_release_scheduled_rides(self, mock_task):
		now = timezone.now()
		due = make_ride(status='created', scheduled_time=now + timedelta(minutes=5))
		make_ride(rider_id='rider-2', status='created', scheduled_time=now + timedelta(days=2))
		make_ride(rider_id='rider-3', status='canceled', scheduled_time=now + timedelta(minutes=1))

		with self.captureOnCommitCallbacks(execute=True):
			released = ride_management.release_scheduled_rides(now=now)

		self.assertEqual(released, [due.id])
		mock_task.delay.assert_called_once_with(due.id)

	@patch('rides.tasks.dispatch_ride_task')
	def test_release_does_not_queue_a_ride_twice(self, mock_task):
		now = timezone.now()
		due = make_ride(status='created', scheduled_time=now + timedelta(minutes=5))

		with self.captureOnCommitCallbacks(execute=True):
			first = ride_management.release_scheduled_rides(now=now)
			second = ride_management.release_scheduled_rides(now=now + timedelta(seconds=60))

		self.assertEqual(first, [due.id])
		self.assertEqual(second, [])
		mock_task.delay.assert_called_once_with(due.id)
		due.refresh_from_db()
		self.assertIsNotNone(due.dispatch_queued_at)

	def test_claim_dispatch_lease(self):
		ride = make_ride()

		self.assertTrue(ride_management.claim_dispatch(ride.id, 'worker-a', 60))
		self.assertFalse(ride_management.claim_dispatch(ride.id, 'worker-b', 60))
		self.assertTrue(ride_management.claim_dispatch(ride.id, 'worker-a', 60))
		ride.refresh_from_db()
		self.assertEqual(ride.dispatch_owner, 'worker-a')

		self.assertFalse(ride_management.update_search_state(ride.id, 2000, ['d1'], owner='worker-b'))

		RideRequest.objects.filter(id=ride.id).update(dispatch_lease_expires_at=timezone.now() - timedelta(seconds=1))
		self.assertTrue(ride_management.claim_dispatch(ride.id, 'worker-b', 60))
		self.assertFalse(ride_management.update_search_state(ride.id, 2000, ['d1'], owner='worker-a'))

		with self.assertRaises(RideNotFoundError):
			ride_management.claim_dispatch(999999, 'worker-a', 60)

	def test_settled_ride_cannot_be_claimed(self):
		ride = make_ride(status='canceled')

		self.assertFalse(ride_management.claim_dispatch(ride.id, 'worker-a', 60))

	def test_claim_clears_queue_mark(self):
		ride = make_ride(status='created', dispatch_queued_at=timezone.now())

		self.assertTrue(ride_management.claim_dispatch(ride.id, 'worker-a', 60))

		ride.refresh_from_db()
		self.assertIsNone(ride.dispatch_queued_at)

	def test_search_state_renews_lease_of_owner(self):
		ride = make_ride()
		ride_management.claim_dispatch(ride.id, 'worker-a', 60)
		ride.refresh_from_db()
		first_expiry = ride.dispatch_lease_expires_at

		self.assertTrue(ride_management.update_search_state(ride.id, 2000, ['d1'], owner='worker-a', lease_seconds=600))

		ride.refresh_from_db()
		self.assertGreater(ride.dispatch_lease_expires_at, first_expiry)
		self.assertEqual(ride.excluded_driver_ids, ['d1'])

	@patch('rides.tasks.dispatch_ride_task')
	def test_requeue_stalled_searches(self, mock_task):
		now = timezone.now()
		stalled = make_ride(dispatch_owner='gone', dispatch_lease_expires_at=now - timedelta(seconds=5))
		make_ride(rider_id='rider-2', dispatch_owner='alive', dispatch_lease_expires_at=now + timedelta(seconds=60))
		make_ride(rider_id='rider-3', status='created', dispatch_queued_at=now - timedelta(seconds=5))
		never_sent = make_ride(rider_id='rider-4', status='created', dispatch_queued_at=now - timedelta(hours=1))
		make_ride(rider_id='rider-5', status='created', scheduled_time=now + timedelta(days=1))
		make_ride(rider_id='rider-6', status='accepted', assigned_driver_id='d1')

		with self.captureOnCommitCallbacks(execute=True):
			requeued = ride_management.requeue_stalled_searches(now=now)

		self.assertEqual(set(requeued), {stalled.id, never_sent.id})
		self.assertEqual(mock_task.delay.call_count, 2)

		with self.captureOnCommitCallbacks(execute=True):
			self.assertEqual(ride_management.requeue_stalled_searches(now=now), [])

	def test_pickup_inside_red_zone_is_refused(self):
		RedZone.objects.create(name='Connaught', coordinates=CONNAUGHT_SQUARE)

		with self.assertRaises(ServiceUnavailableError) as ctx:
			ride_management.create_ride_request('rider-9', 28.6139, 77.2090)

		self.assertEqual(ctx.exception.zone.name, 'Connaught')
		self.assertFalse(RideRequest.objects.filter(rider_id='rider-9').exists())

	@patch('rides.tasks.dispatch_ride_task')
	def test_inactive_or_distant_zone_does_not_block(self, mock_task):
		RedZone.objects.create(name='Closed', coordinates=CONNAUGHT_SQUARE, is_active=False)
		RedZone.objects.create(name='Elsewhere', coordinates=[
			{'latitude': 19.0, 'longitude': 72.8},
			{'latitude': 19.0, 'longitude': 72.9},
			{'latitude': 19.1, 'longitude': 72.9},
		])

		result = ride_management.create_ride_request('rider-9', 28.6139, 77.2090)

		self.assertTrue(result.success)
		self.assertIsNone(ride_management.find_red_zone(28.6139, 77.2090))

	@patch('rides.tasks.dispatch_ride_task')
	def test_release_cancels_scheduled_ride_inside_red_zone(self, mock_task):
		now = timezone.now()
		ride = make_ride(status='created', scheduled_time=now + timedelta(minutes=5))
		RedZone.objects.create(name='Connaught', coordinates=CONNAUGHT_SQUARE)

		with patch(PUBLISH), self.captureOnCommitCallbacks(execute=True):
			released = ride_management.release_scheduled_rides(now=now)

		self.assertEqual(released, [])
		mock_task.delay.assert_not_called()
		ride.refresh_from_db()
		self.assertEqual(ride.status, 'canceled')
		self.assertEqual(ride.cancellation_reason, 'Service is temporarily unavailable in this area.')


class RideViewTests(TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()
		make_driver('d1')

	@patch('rides.tasks.dispatch_ride_task')
	def test_create_ride_request(self, mock_task):
		request = self.factory.post('/api/rides/', {
			'rider_id': 'rider-7',
			'pickup_latitude': '28.613900',
			'pickup_longitude': '77.209000',
			'dropoff_latitude': '28.612900',
			'dropoff_longitude': '77.229500',
			'dropoff_address': 'India Gate',
		}, format='json')
		response = create_ride_request(request)

		self.assertEqual(response.status_code, 201)
		self.assertEqual(response.data['status'], 'created')
		self.assertTrue(response.data['dispatch_queued'])
		self.assertTrue(RideRequest.objects.filter(rider_id='rider-7').exists())

	def test_create_requires_both_dropoff_coordinates(self):
		request = self.factory.post('/api/rides/', {
			'rider_id': 'rider-7',
			'pickup_latitude': '28.6139',
			'pickup_longitude': '77.2090',
			'dropoff_latitude': '28.6129',
		}, format='json')
		response = create_ride_request(request)

		self.assertEqual(response.status_code, 400)

	def test_ride_detail(self):
		ride = make_ride()

		response = ride_detail(self.factory.get(f'/api/rides/{ride.id}/'), ride_id=ride.id)
		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['status'], 'searching')
		self.assertFalse(response.data['driver_assigned'])

		missing = ride_detail(self.factory.get('/api/rides/999999/'), ride_id=999999)
		self.assertEqual(missing.status_code, 404)

	def test_create_inside_red_zone(self):
		RedZone.objects.create(name='Connaught', coordinates=CONNAUGHT_SQUARE)
		request = self.factory.post('/api/rides/', {
			'rider_id': 'rider-7',
			'pickup_latitude': '28.613900',
			'pickup_longitude': '77.209000',
		}, format='json')
		response = create_ride_request(request)

		self.assertEqual(response.status_code, 422)
		self.assertEqual(response.data['error'], 'service_unavailable')
		self.assertEqual(response.data['message'], 'Service is temporarily unavailable in this area.')
		self.assertEqual(response.data['zone'], 'Connaught')
		self.assertFalse(RideRequest.objects.filter(rider_id='rider-7').exists())

	def test_red_zones_lists_active_zones(self):
		RedZone.objects.create(name='Connaught', coordinates=CONNAUGHT_SQUARE)
		RedZone.objects.create(name='Lifted', coordinates=CONNAUGHT_SQUARE, is_active=False)

		response = red_zones(self.factory.get('/api/rides/red-zones/'))

		self.assertEqual(response.status_code, 200)
		self.assertEqual([zone['name'] for zone in response.data['data']], ['Connaught'])
		self.assertEqual(response.data['data'][0]['coordinates'], CONNAUGHT_SQUARE)

	def test_accept_and_conflict(self):
		ride = make_ride()
		make_driver('d2')

		with patch(PUBLISH):
			first = accept_ride(self.factory.post('/accept/', {'driver_id': 'd1'}, format='json'), ride_id=ride.id)
			second = accept_ride(self.factory.post('/accept/', {'driver_id': 'd2'}, format='json'), ride_id=ride.id)

		self.assertEqual(first.status_code, 200)
		self.assertEqual(first.data['ride']['assigned_driver_id'], 'd1')
		self.assertEqual(second.status_code, 409)
		self.assertEqual(second.data['error'], 'ride_not_available')

	def test_accept_by_busy_driver(self):
		make_driver('d5', status='busy')
		ride = make_ride()

		response = accept_ride(self.factory.post('/accept/', {'driver_id': 'd5'}, format='json'), ride_id=ride.id)

		self.assertEqual(response.status_code, 400)
		self.assertEqual(response.data['error'], 'driver_not_available')

	def test_decline(self):
		ride = make_ride()

		with patch(PUBLISH):
			response = decline_ride(self.factory.post('/decline/', {'driver_id': 'd1'}, format='json'), ride_id=ride.id)
		self.assertEqual(response.status_code, 200)

		RideRequest.objects.filter(id=ride.id).update(status='canceled')
		response = decline_ride(self.factory.post('/decline/', {'driver_id': 'd1'}, format='json'), ride_id=ride.id)
		self.assertEqual(response.status_code, 409)

	def test_cancel(self):
		ride = make_ride()

		with patch(PUBLISH):
			response = cancel_ride(self.factory.post('/cancel/', {'reason': 'Too slow'}, format='json'), ride_id=ride.id)
		self.assertEqual(response.status_code, 200)
		self.assertIsNotNone(response.data['cancelled_at'])

		again = cancel_ride(self.factory.post('/cancel/', {}, format='json'), ride_id=ride.id)
		self.assertEqual(again.status_code, 409)

		missing = cancel_ride(self.factory.post('/cancel/', {}, format='json'), ride_id=999999)
		self.assertEqual(missing.status_code, 404)


class FakeDispatchLoop:
	def __init__(self, result=None, error=None):
		self.result = result
		self.error = error
		self.calls = []

	async def run(self, ride_id):
		self.calls.append(ride_id)
		if self.error is not None:
			raise self.error
		return self.result


class DispatchTaskTests(TestCase):
	def setUp(self):
		self.ride = make_ride(status='accepted', assigned_driver_id='d1')

	@patch('realtime.notifications.notify_rider_event')
	def test_assigned_ride_notifies_rider(self, mock_notify):
		fake = FakeDispatchLoop(DispatchResult(self.ride.id, TerminalStatus.ASSIGNED, driver_id='d1', offers_sent=1))

		with patch('services.matching.factory.build_dispatch_loop', return_value=fake):
			result = dispatch_ride_task(self.ride.id)

		self.assertEqual(fake.calls, [self.ride.id])
		self.assertEqual(result['status'], 'assigned')
		self.assertEqual(result['driver_id'], 'd1')
		mock_notify.assert_called_once()
		args, kwargs = mock_notify.call_args
		self.assertEqual(args[0], 'ride_accepted')
		self.assertEqual(args[1].id, self.ride.id)
		self.assertEqual(kwargs['extra'], {'driver_id': 'd1'})

	@patch('realtime.notifications.notify_rider_event')
	def test_no_driver_found_notifies_rider(self, mock_notify):
		fake = FakeDispatchLoop(DispatchResult(self.ride.id, TerminalStatus.NO_DRIVER_FOUND))

		with patch('services.matching.factory.build_dispatch_loop', return_value=fake):
			result = dispatch_ride_task(self.ride.id)

		self.assertEqual(result['status'], 'no_driver_found')
		self.assertEqual(mock_notify.call_args[0][0], 'no_drivers_available')

	@patch('realtime.notifications.notify_rider_event')
	def test_cancelled_ride_sends_nothing(self, mock_notify):
		fake = FakeDispatchLoop(DispatchResult(self.ride.id, TerminalStatus.CANCELED))

		with patch('services.matching.factory.build_dispatch_loop', return_value=fake):
			dispatch_ride_task(self.ride.id)

		mock_notify.assert_not_called()

	def test_missing_ride(self):
		fake = FakeDispatchLoop(error=RideNotFoundError('Ride not found'))

		with patch('services.matching.factory.build_dispatch_loop', return_value=fake):
			self.assertIsNone(dispatch_ride_task(424242))

	@patch('realtime.notifications.notify_rider_event')
	def test_ride_dispatched_elsewhere_is_skipped(self, mock_notify):
		fake = FakeDispatchLoop(error=DispatchInProgress(self.ride.id, 'worker-a'))

		with patch('services.matching.factory.build_dispatch_loop', return_value=fake):
			self.assertIsNone(dispatch_ride_task(self.ride.id))

		mock_notify.assert_not_called()

	@patch('rides.tasks.dispatch_ride_task')
	def test_release_task_requeues_stalled_searches(self, mock_task):
		stalled = make_ride(rider_id='rider-6', dispatch_owner='gone', dispatch_lease_expires_at=timezone.now() - timedelta(minutes=5))

		with self.captureOnCommitCallbacks(execute=True):
			self.assertEqual(release_scheduled_rides_task(), 1)

		mock_task.delay.assert_called_once_with(stalled.id)

	@patch('rides.tasks.dispatch_ride_task')
	def test_release_task_counts_released_rides(self, mock_task):
		make_ride(rider_id='rider-5', status='created', scheduled_time=timezone.now() + timedelta(minutes=1))

		with self.captureOnCommitCallbacks(execute=True):
			self.assertEqual(release_scheduled_rides_task(), 1)

		mock_task.delay.assert_called_once()


class CleanupCommandTests(TestCase):
	def test_cleanup_deletes_only_old_settled_rides(self):
		old_settled = make_ride(status='expired')
		old_open = make_ride(rider_id='rider-2', status='searching')
		recent = make_ride(rider_id='rider-3', status='canceled')
		RideRequest.objects.filter(id__in=[old_settled.id, old_open.id]).update(
			created_at=timezone.now() - timedelta(days=45)
		)

		call_command('cleanup_old_data', days=30, dry_run=True, stdout=StringIO())
		self.assertEqual(RideRequest.objects.count(), 3)

		call_command('cleanup_old_data', days=30, stdout=StringIO())
		remaining = set(RideRequest.objects.values_list('id', flat=True))
		self.assertEqual(remaining, {old_open.id, recent.id})


class ChangeMessageTests(SimpleTestCase):
	def test_status_message(self):
		change = change_from_message({
			'type': 'ride.status', 'ride_id': 3, 'status': 'accepted', 'assigned_driver_id': 'd1',
		})
		self.assertEqual(change.request_id, 3)
		self.assertEqual(change.status, RideStatus.ACCEPTED)
		self.assertEqual(change.assigned_driver_id, 'd1')

	def test_decline_message(self):
		change = change_from_message({'type': 'ride.declined', 'ride_id': 3, 'driver_id': 7})
		self.assertIsNone(change.status)
		self.assertEqual(change.declined_driver_id, '7')

	def test_other_messages_are_ignored(self):
		self.assertIsNone(change_from_message({'type': 'ride_offer', 'ride_id': 3}))

	async def test_subscription_forwards_group_messages_until_closed(self):
		layer = InMemoryChannelLayer()
		changes = []
		subscription = await ChannelSubscription(layer, 'ride_3', changes.append).open()

		await layer.group_send('ride_3', {'type': 'ride.declined', 'ride_id': 3, 'driver_id': 'd1'})
		await layer.group_send('ride_3', {'type': 'unrelated'})
		await layer.group_send('ride_3', {'type': 'ride.status', 'ride_id': 3, 'status': 'canceled'})

		async def received_both():
			while len(changes) < 2:
				await asyncio.sleep(0.01)

		await asyncio.wait_for(received_both(), 2)
		await subscription.close()

		self.assertEqual(changes[0].declined_driver_id, 'd1')
		self.assertEqual(changes[1].status, RideStatus.CANCELED)
		self.assertNotIn(subscription.channel_name, layer.groups.get('ride_3', {}))

	async def test_malformed_message_does_not_stop_subscription(self):
		layer = InMemoryChannelLayer()
		changes = []
		subscription = await ChannelSubscription(layer, 'ride_3', changes.append).open()

		with self.assertLogs('services.ride_management.store', level='ERROR'):
			await layer.group_send('ride_3', {'type': 'ride.status', 'ride_id': 3, 'status': 'bogus'})
			await layer.group_send('ride_3', {'type': 'ride.declined', 'ride_id': 3})
			await layer.group_send('ride_3', {'type': 'ride.status', 'ride_id': 3, 'status': 'accepted', 'assigned_driver_id': 'd2'})

			async def received_valid():
				while not changes:
					await asyncio.sleep(0.01)

			await asyncio.wait_for(received_valid(), 2)
		await subscription.close()

		self.assertEqual(len(changes), 1)
		self.assertEqual(changes[0].status, RideStatus.ACCEPTED)
		self.assertEqual(changes[0].assigned_driver_id, 'd2')


class PointInPolygonTests(SimpleTestCase):
	def setUp(self):
		self.square = [(zone['latitude'], zone['longitude']) for zone in CONNAUGHT_SQUARE]

	def test_point_inside_and_outside_square(self):
		self.assertTrue(point_in_polygon(28.6139, 77.2090, self.square))
		self.assertFalse(point_in_polygon(28.6300, 77.2090, self.square))
		self.assertFalse(point_in_polygon(28.6139, 77.1990, self.square))

	def test_concave_polygon(self):
		# U shape open to the north: the notch is outside
		u_shape = [(0, 0), (0, 3), (3, 3), (3, 2), (1, 2), (1, 1), (3, 1), (3, 0)]
		self.assertTrue(point_in_polygon(0.5, 1.5, u_shape))
		self.assertTrue(point_in_polygon(2, 0.5, u_shape))
		self.assertFalse(point_in_polygon(2, 1.5, u_shape))

	def test_zone_needs_three_vertices(self):
		zone = RedZone(name='Line', coordinates=CONNAUGHT_SQUARE[:2])
		self.assertFalse(zone.contains(28.61, 77.21))


class DjangoRequestStoreTests(TransactionTestCase):
	def setUp(self):
		self.ride = make_ride(status='created')
		make_driver('d1')
		self.store = DjangoRequestStore()

	async def test_get_returns_snapshot(self):
		snapshot = await self.store.get(self.ride.id)

		self.assertEqual(snapshot.id, self.ride.id)
		self.assertEqual(snapshot.status, RideStatus.CREATED)
		self.assertAlmostEqual(snapshot.pickup.latitude, 28.6139)
		self.assertEqual(snapshot.pickup_address, 'Connaught Place')

		with self.assertRaises(RideNotFoundError):
			await self.store.get(999999)

	async def test_conditional_update_and_search_state(self):
		with patch(PUBLISH):
			snapshot = await self.store.conditional_update_status(self.ride.id, RideStatus.CREATED, RideStatus.SEARCHING)
			self.assertEqual(snapshot.status, RideStatus.SEARCHING)

			with self.assertRaises(PreconditionFailed):
				await self.store.conditional_update_status(self.ride.id, RideStatus.CREATED, RideStatus.SEARCHING)

			self.assertTrue(await self.store.update_search_state(self.ride.id, 2000, ['d9']))

		snapshot = await self.store.get(self.ride.id)
		self.assertEqual(snapshot.excluded_driver_ids, ['d9'])
		self.assertEqual(snapshot.search_radius_meters, 2000)

	async def test_decline_of_settled_ride_is_ignored(self):
		await database_sync_to_async(RideRequest.objects.filter(id=self.ride.id).update)(status='expired')

		await self.store.record_decline(self.ride.id, 'd1')

	async def test_claim_dispatch_through_store(self):
		self.assertTrue(await self.store.claim_dispatch(self.ride.id, 'worker-a', 60))
		self.assertFalse(await self.store.claim_dispatch(self.ride.id, 'worker-b', 60))

		snapshot = await self.store.get(self.ride.id)
		self.assertEqual(snapshot.dispatch_owner, 'worker-a')

	async def test_concurrent_runs_dispatch_once(self):
		geo = StaticGeoIndex()
		geo.add('d1', 100)
		gateway = RecordingGateway()
		config = DispatchConfig(offer_timeout_seconds=0.05, max_radius_meters=1000, geo_retry_backoff_seconds=0)

		results = await asyncio.wait_for(asyncio.gather(
			DispatchLoop(self.store, geo, gateway, config=config).run(self.ride.id),
			DispatchLoop(self.store, geo, gateway, config=config).run(self.ride.id),
			return_exceptions=True,
		), 10)

		self.assertEqual(gateway.offers_to(), ['d1'])
		self.assertEqual(len([r for r in results if isinstance(r, DispatchInProgress)]), 1)
		finished = [r for r in results if isinstance(r, DispatchResult)]
		self.assertEqual(len(finished), 1)
		self.assertEqual(finished[0].status, TerminalStatus.NO_DRIVER_FOUND)
		ride = await database_sync_to_async(RideRequest.objects.get)(id=self.ride.id)
		self.assertEqual(ride.status, 'expired')

	async def test_dispatch_loop_runs_against_database(self):
		geo = StaticGeoIndex()
		geo.add('d1', 100)

		async def respond(driver_id, request_id, payload):
			if payload['type'] == 'ride_offer':
				await database_sync_to_async(ride_management.accept_ride)(request_id, driver_id)

		gateway = RecordingGateway(on_notify=respond)
		config = DispatchConfig(offer_timeout_seconds=2, max_radius_meters=1000, geo_retry_backoff_seconds=0)
		dispatch_loop = DispatchLoop(self.store, geo, gateway, config=config)

		result = await asyncio.wait_for(dispatch_loop.run(self.ride.id), 10)

		self.assertEqual(result.status, TerminalStatus.ASSIGNED)
		self.assertEqual(result.driver_id, 'd1')
		ride = await database_sync_to_async(RideRequest.objects.get)(id=self.ride.id)
		self.assertEqual(ride.status, 'accepted')
		self.assertEqual(ride.assigned_driver_id, 'd1')


class DispatchCommandTests(TransactionTestCase):
	def test_dry_run_records_offers_without_saving(self):
		ride = make_ride(status='created')
		make_driver('d1')
		out = StringIO()

		call_command('dispatch_ride', ride.id, dry_run=True, timeout=0.05, stdout=out)

		output = out.getvalue()
		self.assertIn('Offers recorded: d1', output)
		self.assertIn('no_driver_found', output)
		ride.refresh_from_db()
		self.assertEqual(ride.status, 'created')
		self.assertEqual(ride.excluded_driver_ids, [])
		self.assertEqual(ride.search_radius_meters, 0)
		self.assertIsNone(ride.dispatch_owner)

	def test_dry_run_of_missing_ride(self):
		with self.assertRaises(CommandError):
			call_command('dispatch_ride', 999999, dry_run=True, stdout=StringIO())

	@patch('rides.management.commands.dispatch_ride.request_stop', return_value=True)
	def test_stop_asks_the_worker(self, mock_stop):
		out = StringIO()

		call_command('dispatch_ride', 42, stop=True, stdout=out)

		mock_stop.assert_called_once_with(42)
		self.assertIn('Stop requested for ride 42', out.getvalue())
