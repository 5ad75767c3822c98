import math

from django.test import SimpleTestCase, override_settings

from services.matching.config import DispatchConfig, get_dispatch_config
from services.matching.exceptions import InvalidTransition
from services.matching.exclusion import ExclusionTracker
from services.matching.radius import RadiusExpander
from services.matching.state import check_transition
from services.matching.types import DriverCandidate, RideStatus


def candidate(driver_id, distance):
	return DriverCandidate(driver_id=driver_id, latitude=0.0, longitude=0.0, distance_meters=distance)


class RadiusExpanderTests(SimpleTestCase):

	def test_steps_by_fixed_amount_when_nothing_found(self):
		expander = RadiusExpander(step_meters=500)
		self.assertEqual(expander(1000), 1500)
		self.assertEqual(expander(1500, 0), 2000)

	def test_keeps_radius_when_candidates_found(self):
		expander = RadiusExpander(step_meters=500)
		self.assertEqual(expander(1000, 3), 1000)

	def test_follows_schedule_then_becomes_infinite(self):
		expander = RadiusExpander.from_schedule([1000, 2000, 3000])
		self.assertEqual(expander.initial(50), 1000)
		self.assertEqual(expander(1000), 2000)
		self.assertEqual(expander(2000), 3000)
		self.assertTrue(math.isinf(expander(3000)))

	def test_schedule_picks_next_value_above_current_radius(self):
		expander = RadiusExpander.from_schedule([1000, 2000, 3000])
		self.assertEqual(expander(1500), 2000)

	def test_initial_without_schedule_uses_default(self):
		self.assertEqual(RadiusExpander().initial(750), 750.0)

	def test_rejects_bad_parameters(self):
		with self.assertRaises(ValueError):
			RadiusExpander(step_meters=0)
		with self.assertRaises(ValueError):
			RadiusExpander.from_schedule([2000, 1000])
		with self.assertRaises(ValueError):
			RadiusExpander.from_schedule([-1, 1000])


class ExclusionTrackerTests(SimpleTestCase):

	def test_fresh_orders_by_distance_and_skips_excluded(self):
		tracker = ExclusionTracker(["d2"])
		fresh = tracker.fresh([candidate("d3", 900), candidate("d2", 100), candidate("d1", 300)])
		self.assertEqual([c.driver_id for c in fresh], ["d1", "d3"])

	def test_ties_keep_index_order(self):
		tracker = ExclusionTracker()
		fresh = tracker.fresh([candidate("b", 100), candidate("a", 100), candidate("c", 50)])
		self.assertEqual([c.driver_id for c in fresh], ["c", "b", "a"])

	def test_duplicate_in_one_response_is_kept_once(self):
		tracker = ExclusionTracker()
		fresh = tracker.fresh([candidate("d1", 100), candidate("d1", 120)])
		self.assertEqual(len(fresh), 1)
		self.assertEqual(fresh[0].distance_meters, 100)

	def test_add_is_idempotent_and_ordered(self):
		tracker = ExclusionTracker()
		self.assertTrue(tracker.add("d1"))
		self.assertTrue(tracker.add(7))
		self.assertFalse(tracker.add("d1"))
		self.assertEqual(tracker.snapshot(), ["d1", "7"])
		self.assertIn(7, tracker)
		self.assertEqual(len(tracker), 2)


class DispatchConfigTests(SimpleTestCase):

	def test_from_mapping_reads_setting_keys(self):
		config = DispatchConfig.from_mapping({
			"OFFER_TIMEOUT_SECONDS": 30,
			"MAX_RADIUS_METERS": 5000,
			"RADIUS_SCHEDULE_METERS": [1000, 3000],
			"UNKNOWN_KEY": 1,
		})
		self.assertEqual(config.offer_timeout_seconds, 30)
		self.assertEqual(config.max_radius_meters, 5000)
		self.assertEqual(config.radius_schedule_meters, (1000, 3000))
		self.assertEqual(config.radius_expander()(1000), 3000)

	def test_defaults_match_one_km_steps_up_to_ten_km(self):
		config = DispatchConfig()
		self.assertEqual(config.offer_timeout_seconds, 60)
		self.assertEqual(config.initial_radius_meters, 1000)
		self.assertEqual(config.radius_step_meters, 1000)
		self.assertEqual(config.max_radius_meters, 10000)

	def test_rejects_invalid_values(self):
		with self.assertRaises(ValueError):
			DispatchConfig(offer_timeout_seconds=0)
		with self.assertRaises(ValueError):
			DispatchConfig(geo_index_backend="postgis")
		with self.assertRaises(ValueError):
			DispatchConfig(max_offers=0)

	def test_lease_must_outlive_an_offer(self):
		with self.assertRaises(ValueError):
			DispatchConfig(offer_timeout_seconds=60, lease_seconds=60)
		config = DispatchConfig.from_mapping({"OFFER_TIMEOUT_SECONDS": 120, "LEASE_SECONDS": 400})
		self.assertEqual(config.lease_seconds, 400)

	@override_settings(RIDE_DISPATCH={"OFFER_TIMEOUT_SECONDS": 15, "GEO_INDEX_BACKEND": "redis"})
	def test_get_dispatch_config_reads_settings_and_overrides(self):
		config = get_dispatch_config({"MAX_OFFERS": 4})
		self.assertEqual(config.offer_timeout_seconds, 15)
		self.assertEqual(config.geo_index_backend, "redis")
		self.assertEqual(config.max_offers, 4)


class TransitionTests(SimpleTestCase):

	def test_allowed_transitions(self):
		self.assertEqual(
			check_transition("created", "searching"),
			(RideStatus.CREATED, RideStatus.SEARCHING),
		)
		check_transition(RideStatus.SEARCHING, RideStatus.EXPIRED)
		check_transition(RideStatus.CREATED, RideStatus.CANCELED)
		check_transition(RideStatus.SEARCHING, RideStatus.ACCEPTED, {"assigned_driver_id": "d1"})

	def test_terminal_states_are_final(self):
		for status in (RideStatus.ACCEPTED, RideStatus.CANCELED, RideStatus.EXPIRED):
			with self.assertRaises(InvalidTransition):
				check_transition(status, RideStatus.SEARCHING)

	def test_acceptance_requires_driver(self):
		with self.assertRaises(InvalidTransition):
			check_transition(RideStatus.SEARCHING, RideStatus.ACCEPTED)
		with self.assertRaises(InvalidTransition):
			check_transition(RideStatus.SEARCHING, RideStatus.EXPIRED, {"assigned_driver_id": "d1"})

	def test_unknown_status(self):
		with self.assertRaises(InvalidTransition):
			check_transition("pending", "searching")
