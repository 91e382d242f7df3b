import math
import unittest

import numpy as np

from roadscan.utils.geo import (
    EARTH_RADIUS_FEET,
    clean_coordinates,
    coordinate_distance_feet,
    cumulative_distances_feet,
    haversine_distance_feet,
    line_chunk,
    line_slice_along,
    midpoint,
    normalize_coordinate,
    path_length_feet,
    point_to_line_distance_feet,
    point_within_buffer,
)

LNG = -122.0
LAT = 37.0


def feet_north(feet):
    return math.degrees(feet / EARTH_RADIUS_FEET)


def feet_east(feet, lat=LAT):
    return math.degrees(feet / (EARTH_RADIUS_FEET * math.cos(math.radians(lat))))


class TestDistances(unittest.TestCase):

    def test_one_degree_of_latitude(self):
        expected = EARTH_RADIUS_FEET * math.pi / 180
        self.assertAlmostEqual(haversine_distance_feet(0.0, 0.0, 1.0, 0.0), expected, places=3)

    def test_vectorised(self):
        result = haversine_distance_feet(np.array([LAT, LAT]), np.array([LNG, LNG]),
                                         np.array([LAT + feet_north(100), LAT + feet_north(250)]),
                                         np.array([LNG, LNG]))
        np.testing.assert_allclose(result, [100.0, 250.0], rtol=1e-6)

    def test_coordinate_order_is_lng_lat(self):
        a = (LNG, LAT)
        b = (LNG, LAT + feet_north(300))
        self.assertAlmostEqual(coordinate_distance_feet(a, b), 300.0, places=3)

    def test_cumulative_and_path_length(self):
        coords = [(LNG, LAT), (LNG, LAT + feet_north(100)), (LNG, LAT + feet_north(300))]
        np.testing.assert_allclose(cumulative_distances_feet(coords), [0.0, 100.0, 300.0], atol=1e-6)
        self.assertAlmostEqual(path_length_feet(coords), 300.0, places=3)
        self.assertEqual(path_length_feet(coords[:1]), 0.0)
        self.assertEqual(len(cumulative_distances_feet([])), 0)


class TestLineOperations(unittest.TestCase):

    def setUp(self):
        self.line = [(LNG, LAT), (LNG, LAT + feet_north(1200))]

    def test_chunk_lengths(self):
        chunks = line_chunk(self.line, 500)
        self.assertEqual(len(chunks), 3)
        lengths = [path_length_feet(chunk) for chunk in chunks]
        self.assertAlmostEqual(lengths[0], 500.0, places=3)
        self.assertAlmostEqual(lengths[1], 500.0, places=3)
        self.assertAlmostEqual(lengths[2], 200.0, places=3)
        self.assertEqual(chunks[0][0], self.line[0])

    def test_chunk_degenerate_inputs(self):
        self.assertEqual(line_chunk(self.line[:1], 500), [])
        self.assertEqual(line_chunk([(LNG, LAT), (LNG, LAT)], 500), [])
        self.assertEqual(line_chunk(self.line, 0), [])

    def test_slice_keeps_interior_vertices(self):
        line = [(LNG, LAT), (LNG, LAT + feet_north(100)), (LNG, LAT + feet_north(200))]
        sliced = line_slice_along(line, 50, 150)
        self.assertEqual(len(sliced), 3)
        self.assertEqual(sliced[1], line[1])
        self.assertAlmostEqual(path_length_feet(sliced), 100.0, places=3)

    def test_point_to_line_distance(self):
        point = (LNG + feet_east(20), LAT + feet_north(600))
        self.assertAlmostEqual(point_to_line_distance_feet(point, self.line), 20.0, places=2)
        beyond_end = (LNG, LAT + feet_north(1230))
        self.assertAlmostEqual(point_to_line_distance_feet(beyond_end, self.line), 30.0, places=2)
        self.assertEqual(point_to_line_distance_feet(point, []), float("inf"))

    def test_buffer_membership(self):
        self.assertTrue(point_within_buffer((LNG + feet_east(24), LAT + feet_north(10)), self.line, 25))
        self.assertFalse(point_within_buffer((LNG + feet_east(26), LAT + feet_north(10)), self.line, 25))


class TestCoordinateHelpers(unittest.TestCase):

    def test_clean_coordinates(self):
        coords = [[1, 2], [float("nan"), 2], "x", [True, 1], [3.0, 4.0, 10.0], None]
        self.assertEqual(clean_coordinates(coords), [(1.0, 2.0), (3.0, 4.0)])
        self.assertEqual(clean_coordinates(None), [])

    def test_midpoint(self):
        self.assertEqual(midpoint((0, 0), (2, 4)), (1.0, 2.0))
        self.assertEqual(midpoint(None, (2, 4)), (2.0, 4.0))
        self.assertIsNone(midpoint(None, None))

    def test_normalize_coordinate(self):
        self.assertEqual(normalize_coordinate([LNG, LAT]), (LNG, LAT))
        self.assertEqual(normalize_coordinate({'lat': LAT, 'lon': LNG}), (LNG, LAT))
        self.assertEqual(normalize_coordinate({'latitude': '37.0', 'longitude': '-122.0'}), (LNG, LAT))
        self.assertIsNone(normalize_coordinate({'lat': LAT}))


if __name__ == '__main__':
    unittest.main()
