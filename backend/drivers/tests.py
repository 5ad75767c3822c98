from django.test import SimpleTestCase, TestCase, override_settings
from rest_framework.test import APIRequestFactory
from unittest.mock import patch

from common.utils import bounding_box, calculate_distance
from services.matching.types import GeoPoint

from .geo_index import DatabaseGeoIndex, find_available_drivers
from .models import DriverProfile
from .views import DriverLocationUpdateView, DriverProfileView, DriverStatusView

PICKUP = (28.6139, 77.2090)


class GeoUtilsTests(SimpleTestCase):
	def test_distance_is_symmetric_and_zero_at_same_point(self):
		self.assertEqual(calculate_distance(*PICKUP, *PICKUP), 0)
		there = calculate_distance(28.6139, 77.2090, 28.6129, 77.2295)
		back = calculate_distance(28.6129, 77.2295, 28.6139, 77.2090)
		self.assertAlmostEqual(there, back)
		# Connaught Place to India Gate, roughly 2 km
		self.assertTrue(1900 < there < 2100)

	def test_bounding_box_contains_radius(self):
		min_lat, max_lat, min_lon, max_lon = bounding_box(*PICKUP, 1000)
		self.assertLess(min_lat, PICKUP[0])
		self.assertGreater(max_lat, PICKUP[0])
		self.assertGreaterEqual(calculate_distance(*PICKUP, max_lat, PICKUP[1]), 990)
		self.assertGreaterEqual(calculate_distance(*PICKUP, PICKUP[0], max_lon), 990)


class DatabaseGeoIndexTests(TestCase):
	def setUp(self):
		def driver(driver_id, lat, lon, status='available', vehicle_class='standard'):
			return DriverProfile.objects.create(
				driver_id=driver_id,
				vehicle_number=f'DL-{driver_id}',
				vehicle_class=vehicle_class,
				status=status,
				current_latitude=lat,
				current_longitude=lon,
			)

		driver('near', 28.6145, 77.2090)       # ~70 m
		driver('mid', 28.6200, 77.2090)        # ~680 m
		driver('far', 28.6600, 77.2090)        # ~5 km
		driver('busy', 28.6140, 77.2090, status='busy')
		driver('offline', 28.6140, 77.2090, status='offline')
		driver('xl', 28.6150, 77.2090, vehicle_class='xl')
		DriverProfile.objects.create(driver_id='nowhere', vehicle_number='DL-NONE', status='available')

	def test_only_available_drivers_within_radius_nearest_first(self):
		candidates = find_available_drivers(*PICKUP, 1000)

		self.assertEqual([c.driver_id for c in candidates], ['near', 'xl', 'mid'])
		self.assertTrue(all(c.distance_meters <= 1000 for c in candidates))

	def test_vehicle_class_and_exclusions(self):
		standard = find_available_drivers(*PICKUP, 1000, vehicle_class='standard', exclude_ids=['near'])
		self.assertEqual([c.driver_id for c in standard], ['mid'])

		wide = find_available_drivers(*PICKUP, 10000, vehicle_class='standard')
		self.assertEqual([c.driver_id for c in wide], ['near', 'mid', 'far'])

	async def test_find_candidates(self):
		candidates = await DatabaseGeoIndex().find_candidates(GeoPoint(*PICKUP), 200, '', [])

		self.assertEqual([c.driver_id for c in candidates], ['near', 'xl'])


class DriverViewTests(TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()

	def test_profile_create_then_update(self):
		view = DriverProfileView.as_view()

		created = view(
			self.factory.post('/api/driver/d1/profile/', {'vehicle_number': 'DL-1001', 'vehicle_class': 'xl'}, format='json'),
			driver_id='d1',
		)
		self.assertEqual(created.status_code, 201)
		self.assertEqual(created.data['driver_id'], 'd1')
		self.assertEqual(created.data['status'], 'offline')

		updated = view(
			self.factory.post('/api/driver/d1/profile/', {'vehicle_class': 'standard'}, format='json'),
			driver_id='d1',
		)
		self.assertEqual(updated.status_code, 200)
		self.assertEqual(DriverProfile.objects.get(driver_id='d1').vehicle_class, 'standard')

	def test_unknown_driver(self):
		response = DriverStatusView.as_view()(self.factory.get('/api/driver/ghost/status/'), driver_id='ghost')
		self.assertEqual(response.status_code, 404)

	def test_status_and_location_updates(self):
		DriverProfile.objects.create(driver_id='d2', vehicle_number='DL-1002')

		status_response = DriverStatusView.as_view()(
			self.factory.put('/api/driver/d2/status/', {'status': 'available'}, format='json'),
			driver_id='d2',
		)
		self.assertEqual(status_response.status_code, 200)

		location_response = DriverLocationUpdateView.as_view()(
			self.factory.post('/api/driver/d2/location/', {'latitude': '28.614000', 'longitude': '77.209500'}, format='json'),
			driver_id='d2',
		)
		self.assertEqual(location_response.status_code, 200)
		self.assertEqual(location_response.data['status'], 'available')

		self.assertEqual([c.driver_id for c in find_available_drivers(*PICKUP, 500)], ['d2'])

	def test_invalid_status(self):
		DriverProfile.objects.create(driver_id='d3', vehicle_number='DL-1003')

		response = DriverStatusView.as_view()(
			self.factory.put('/api/driver/d3/status/', {'status': 'busy'}, format='json'),
			driver_id='d3',
		)
		self.assertEqual(response.status_code, 400)

	@override_settings(RIDE_DISPATCH={'GEO_INDEX_BACKEND': 'redis'})
	@patch('realtime.geo.get_driver_location_service')
	def test_updates_are_mirrored_to_redis_index(self, mock_service):
		DriverProfile.objects.create(driver_id='d4', vehicle_number='DL-1004', status='available')

		DriverLocationUpdateView.as_view()(
			self.factory.post('/api/driver/d4/location/', {'latitude': '28.614000', 'longitude': '77.209500'}, format='json'),
			driver_id='d4',
		)
		DriverStatusView.as_view()(
			self.factory.put('/api/driver/d4/status/', {'status': 'offline'}, format='json'),
			driver_id='d4',
		)

		service = mock_service.return_value
		service.update_driver_location.assert_called_once()
		self.assertEqual(service.update_driver_location.call_args[0][0], 'd4')
		service.remove_driver.assert_called_once_with('d4')
