import math
import unittest

import numpy as np

from grid_sampling import (
    EmptyInputError,
    SampledPoint,
    compute_sample_rate,
    locate_coordinates,
    match_coordinate,
    sample_grid,
    summarize,
    valid_value_mask,
)


class SampleGridTests(unittest.TestCase):
    def test_small_grid_without_reduction(self):
        result = sample_grid([1, 2, 3, 4], [10, 20], [30, 40], max_points=100)
        self.assertEqual(result.sample_rate, 1)
        self.assertEqual(result.total_points, 4)
        self.assertEqual(
            result.points,
            [
                SampledPoint(lat=10.0, lon=30.0, value=1.0),
                SampledPoint(lat=10.0, lon=40.0, value=2.0),
                SampledPoint(lat=20.0, lon=30.0, value=3.0),
                SampledPoint(lat=20.0, lon=40.0, value=4.0),
            ],
        )
        self.assertEqual(result.sampled_lat, [10.0, 20.0])
        self.assertEqual(result.sampled_lon, [30.0, 40.0])

        stats = summarize(result.points, result.total_points, result.sample_rate)
        self.assertEqual(stats.min, 1.0)
        self.assertEqual(stats.max, 4.0)
        self.assertAlmostEqual(stats.mean, 2.5)
        self.assertEqual(stats.count, 4)
        self.assertEqual(stats.to_dict()["totalPoints"], 4)
        self.assertEqual(stats.to_dict()["sampleRate"], 1)

    def test_sentinel_value_is_dropped(self):
        result = sample_grid([1e35, 2, 3, 4], [10, 20], [30, 40], max_points=100)
        self.assertEqual(len(result.points), 3)
        self.assertEqual([p.value for p in result.points], [2.0, 3.0, 4.0])
        # Coordinate vectors are not affected by value filtering.
        self.assertEqual(result.sampled_lat, [10.0, 20.0])
        self.assertEqual(result.sampled_lon, [30.0, 40.0])

        stats = summarize(result.points, result.total_points, result.sample_rate)
        self.assertEqual(stats.min, 2.0)
        self.assertEqual(stats.max, 4.0)
        self.assertAlmostEqual(stats.mean, 3.0)

    def test_large_grid_uses_integer_stride(self):
        height = width = 1000
        values = np.ones(height * width, dtype=np.float32)
        lat = np.linspace(-90.0, 90.0, height)
        lon = np.linspace(-180.0, 180.0, width)

        result = sample_grid(values, lat, lon, max_points=50000)
        self.assertEqual(result.sample_rate, 20)
        self.assertEqual(len(result.sampled_lat), 50)
        self.assertEqual(len(result.sampled_lon), 50)
        self.assertEqual(len(result.points), 2500)
        self.assertLessEqual(len(result.points), 50000)
        self.assertEqual(result.total_points, 1_000_000)
        np.testing.assert_allclose(result.sampled_lat, lat[::20])

    def test_sample_rate_formula(self):
        for height, width, max_points in [(1, 1, 1), (3, 7, 5), (10, 10, 3), (0, 5, 10), (100, 37, 101), (5, 5, 25)]:
            lat = np.arange(height, dtype=float)
            lon = np.arange(width, dtype=float)
            result = sample_grid(np.zeros(height * width), lat, lon, max_points)
            expected = max(1, math.ceil(height * width / max_points))
            self.assertEqual(result.sample_rate, expected, (height, width, max_points))

    def test_max_points_above_total_keeps_every_valid_cell_once(self):
        values = [1.0, None, 3.0, float("nan"), 5.0, float("inf")]
        result = sample_grid(values, [0.0, 1.0], [0.0, 1.0, 2.0], max_points=6)
        self.assertEqual(result.sample_rate, 1)
        self.assertEqual(
            [(p.lat, p.lon, p.value) for p in result.points],
            [(0.0, 0.0, 1.0), (0.0, 2.0, 3.0), (1.0, 1.0, 5.0)],
        )

    def test_stride_visits_rows_and_columns(self):
        grid = np.arange(16, dtype=float).reshape(4, 4)
        result = sample_grid(grid.reshape(-1), [0, 1, 2, 3], [0, 10, 20, 30], max_points=8)
        self.assertEqual(result.sample_rate, 2)
        self.assertEqual([p.value for p in result.points], [0.0, 2.0, 8.0, 10.0])
        self.assertEqual(result.sampled_lat, [0.0, 2.0])
        self.assertEqual(result.sampled_lon, [0.0, 20.0])

    def test_emitted_values_are_always_valid(self):
        rng = np.random.default_rng(7)
        values = rng.normal(size=60 * 80)
        values[rng.integers(0, values.size, 500)] = np.nan
        values[rng.integers(0, values.size, 500)] = 9.96921e36
        values[rng.integers(0, values.size, 50)] = -np.inf
        result = sample_grid(values, np.arange(60), np.arange(80), max_points=1000)
        self.assertTrue(result.points)
        for point in result.points:
            self.assertTrue(math.isfinite(point.value))
            self.assertLess(abs(point.value), 1e30)

    def test_masked_cells_are_invalid(self):
        values = np.ma.masked_array([1.0, 2.0, 3.0, 4.0], mask=[False, True, False, False])
        result = sample_grid(values, [0, 1], [0, 1], max_points=10)
        self.assertEqual([p.value for p in result.points], [1.0, 3.0, 4.0])

    def test_sampling_is_deterministic(self):
        rng = np.random.default_rng(3)
        values = rng.normal(size=123 * 77)
        first = sample_grid(values, np.arange(123), np.arange(77), max_points=500)
        second = sample_grid(values, np.arange(123), np.arange(77), max_points=500)
        self.assertEqual(first, second)

    def test_all_invalid_grid_yields_no_points(self):
        result = sample_grid([np.nan, 1e30, -1e31, None], [0, 1], [0, 1], max_points=10)
        self.assertEqual(result.points, [])
        with self.assertRaises(EmptyInputError):
            summarize(result.points, result.total_points, result.sample_rate)

    def test_length_mismatch_is_rejected(self):
        with self.assertRaises(ValueError):
            sample_grid([1, 2, 3], [0, 1], [0, 1], max_points=10)

    def test_non_positive_max_points_is_rejected(self):
        with self.assertRaises(ValueError):
            compute_sample_rate(10, 0)
        with self.assertRaises(ValueError):
            sample_grid([1, 2, 3, 4], [0, 1], [0, 1], max_points=-5)


class ValueValidityTests(unittest.TestCase):
    def test_mask_rules(self):
        values = [0.0, -9.99e29, None, np.nan, np.inf, 1e30, -1e30, 9.99e29]
        mask = valid_value_mask(values)
        self.assertEqual(mask.tolist(), [True, True, False, False, False, False, False, True])


class CoordinateLocatorTests(unittest.TestCase):
    def test_capitalized_name_matches_without_attributes(self):
        location = locate_coordinates(["time", "Latitude", "Longitude", "sst"])
        self.assertTrue(location.resolved)
        self.assertEqual(location.latitude.name, "Latitude")
        self.assertEqual(location.latitude.rule, "substring")
        self.assertEqual(location.longitude.name, "Longitude")

    def test_substring_rule_accepts_rotated_pole_names(self):
        # Known false positive of the substring rule: rotated latitude still matches.
        match = match_coordinate("latitude", ["time", "rlat"], {"rlat": {"standard_name": "grid_latitude"}})
        self.assertTrue(match.matched)
        self.assertEqual(match.name, "rlat")
        self.assertEqual(match.rule, "substring")

    def test_exact_axis_names(self):
        location = locate_coordinates(["time", "y", "x", "precip"])
        self.assertEqual(location.latitude.name, "y")
        self.assertEqual(location.latitude.rule, "exact")
        self.assertEqual(location.longitude.name, "x")
        self.assertEqual(location.longitude.rule, "exact")

    def test_axis_names_must_match_exactly(self):
        location = locate_coordinates(["xc", "yc", "value"])
        self.assertFalse(location.latitude.matched)
        self.assertFalse(location.longitude.matched)

    def test_standard_name_overrides_name_heuristics(self):
        metadata = {
            "lat_bnds": {},
            "nav_lat": {"standard_name": "latitude"},
            "lon_bnds": {},
            "nav_lon": {"standard_name": "longitude"},
        }
        location = locate_coordinates(["lat_bnds", "lon_bnds", "nav_lat", "nav_lon"], metadata)
        self.assertEqual(location.latitude.name, "nav_lat")
        self.assertEqual(location.latitude.rule, "standard_name")
        self.assertEqual(location.longitude.name, "nav_lon")

    def test_standard_name_resolves_unconventional_names(self):
        metadata = {"phi": {"standard_name": "latitude"}, "lambda": {"standard_name": "longitude"}}
        location = locate_coordinates(["phi", "lambda", "t2m"], metadata)
        self.assertEqual(location.latitude.name, "phi")
        self.assertEqual(location.longitude.name, "lambda")

    def test_first_matching_name_wins(self):
        location = locate_coordinates(["lat", "latitude", "y", "lon", "x"])
        self.assertEqual(location.latitude.name, "lat")
        self.assertEqual(location.longitude.name, "lon")

    def test_unmatched_axis_is_none(self):
        location = locate_coordinates(["time", "lat", "temperature"])
        self.assertTrue(location.latitude.matched)
        self.assertFalse(location.longitude.matched)
        self.assertIsNone(location.longitude.name)
        self.assertFalse(location.resolved)

    def test_unknown_role_is_rejected(self):
        with self.assertRaises(ValueError):
            match_coordinate("altitude", ["alt"])


if __name__ == "__main__":
    unittest.main()
