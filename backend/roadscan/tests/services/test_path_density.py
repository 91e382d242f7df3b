import math
import unittest

from roadscan.models.pavement import PercentileThresholds
from roadscan.services.path_density import (
    PathDensityCalculator,
    build_continuous_paths,
    classify_density,
    compute_path_density,
    percentile,
)
from roadscan.utils.config import DEFAULT_CONFIG
from roadscan.utils.geo import EARTH_RADIUS_FEET

LNG = -122.0
LAT = 37.0


def north(feet):
    return LAT + math.degrees(feet / EARTH_RADIUS_FEET)


def east(feet):
    return LNG + math.degrees(feet / (EARTH_RADIUS_FEET * math.cos(math.radians(LAT))))


def frame(lng, lat, timestamp=None, count=1):
    properties = {"detection_count_in_frame": count}
    if timestamp is not None:
        properties["globalTimestamp"] = timestamp
    return {"type": "Feature", "geometry": {"type": "Point", "coordinates": [lng, lat]}, "properties": properties}


class TestPercentiles(unittest.TestCase):

    def test_nearest_rank(self):
        values = [1.0, 2.0, 3.0, 4.0]
        self.assertEqual(percentile(values, 50), 2.0)
        self.assertEqual(percentile(values, 70), 3.0)
        self.assertEqual(percentile(values, 85), 4.0)
        self.assertEqual(percentile([7.0], 50), 7.0)
        self.assertEqual(percentile([], 50), 0.0)

    def test_classification_bands(self):
        thresholds = PercentileThresholds(p50=1.0, p70=2.0, p85=3.0)
        self.assertEqual(classify_density(0.5, thresholds), ("low", "#00FF00"))
        self.assertEqual(classify_density(1.0, thresholds), ("low", "#00FF00"))
        self.assertEqual(classify_density(1.5, thresholds), ("moderate", "#FFFF00"))
        self.assertEqual(classify_density(2.5, thresholds), ("high", "#FFA500"))
        self.assertEqual(classify_density(3.5, thresholds), ("severe", "#FF0000"))


class TestContinuousPaths(unittest.TestCase):

    def test_split_on_time_gaps(self):
        features = [
            frame(LNG, north(0), 0),
            frame(LNG, north(100), 20000),
            frame(LNG, north(10), 1000),
            frame(LNG, north(20), 2000),
            frame(LNG, north(110), 21000),
            frame(LNG, north(500), 50000),
            frame(LNG, north(600)),
        ]
        paths = build_continuous_paths(features, 10000)
        self.assertEqual(len(paths), 2)
        self.assertEqual(len(paths[0]), 3)
        self.assertEqual(paths[0][1], (LNG, north(10)))
        self.assertEqual(len(paths[1]), 2)

    def test_gap_equal_to_threshold_does_not_split(self):
        paths = build_continuous_paths([frame(LNG, north(0), 0), frame(LNG, north(50), 10000)], 10000)
        self.assertEqual(len(paths), 1)


class TestPathDensityCalculator(unittest.TestCase):

    def setUp(self):
        self.calculator = PathDensityCalculator(DEFAULT_CONFIG)
        # one pass north, a point every 100 ft, one detection each
        self.path = [frame(LNG, north(i * 100), i * 1000) for i in range(11)]

    def test_chunks_and_counts(self):
        result = self.calculator.compute(self.path)
        self.assertEqual(result.path_count, 1)
        self.assertEqual(len(result.segments), 2)
        for segment in result.segments:
            self.assertAlmostEqual(segment.actual_length_feet, 500.0, places=3)
            self.assertEqual(segment.detections_in_segment, 6)
            self.assertAlmostEqual(segment.crack_density, 6 / 500, places=6)
        self.assertAlmostEqual(result.min_density, result.max_density)

    def test_buffer_radius_and_percentile_classes(self):
        features = self.path + [
            frame(east(10), north(200), count=3),
            frame(east(100), north(200), count=5),
            frame(east(5), north(300), count=0),
        ]
        result = self.calculator.compute(features)
        first, second = result.segments
        self.assertEqual(first.detections_in_segment, 9)
        self.assertEqual(second.detections_in_segment, 6)
        self.assertAlmostEqual(result.percentile_thresholds.p50, 6 / 500, places=6)
        self.assertAlmostEqual(result.percentile_thresholds.p70, 9 / 500, places=6)
        self.assertEqual((first.density_class, first.density_color), ("moderate", "#FFFF00"))
        self.assertEqual(second.density_class, "low")
        self.assertAlmostEqual(result.max_density, 9 / 500, places=6)

    def test_too_few_features(self):
        result = self.calculator.compute(self.path[:1])
        self.assertEqual(result.segments, [])
        self.assertEqual(result.max_density, 0.0)

    def test_module_helper_and_feature_output(self):
        result = compute_path_density(self.path, {"path_density": {"segment_length_feet": 250}})
        self.assertEqual(len(result.segments), 4)
        feature = result.segments[0].to_feature()
        self.assertEqual(feature["geometry"]["type"], "LineString")
        self.assertIn("crack_density", feature["properties"])

    def test_default_config(self):
        self.assertEqual(len(compute_path_density(self.path).segments), 2)


if __name__ == '__main__':
    unittest.main()
