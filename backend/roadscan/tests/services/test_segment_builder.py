import copy
import math
import unittest
from unittest.mock import patch

from roadscan.models.pavement import GpsFrame, VideoSegment, VideoSegmentIndex
from roadscan.services.gps_frames import FrameSegmentMap
from roadscan.services.segment_builder import SegmentBuilder
from roadscan.utils.config import DEFAULT_CONFIG
from roadscan.utils.geo import EARTH_RADIUS_FEET
from roadscan.utils.storage import StorageUrlResolver

LNG = -122.0
LAT = 37.0
JOB = "job-1"


def lat_at(feet):
    return LAT + math.degrees(feet / EARTH_RADIUS_FEET)


def gps_frames(distances_feet, seconds_apart=1.0):
    return [
        GpsFrame(frame_id=i, timestamp=i * seconds_apart, latitude=lat_at(feet), longitude=LNG)
        for i, feet in enumerate(distances_feet)
    ]


def parent_feature(child_tracks, parent_id="P1", job_id=JOB, **extra):
    properties = {"parent_track_id": parent_id, "job_id": job_id, "child_tracks": child_tracks}
    properties.update(extra)
    return {"type": "Feature", "geometry": None, "properties": properties}


def child_track(track_id="C1", frame_range=(0, 2), defects=None, coordinates=None, **extra):
    track = {
        "track_id": track_id,
        "frame_range": list(frame_range) if frame_range is not None else None,
        "coordinates": coordinates if coordinates is not None else [[LNG, lat_at(0)], [LNG, lat_at(600)]],
        "defects": defects if defects is not None else [
            {"defect_type": "longitudinal", "severity": "Medium", "frame_id": 1},
        ],
    }
    track.update(extra)
    return track


def make_builder(**segmentation):
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["segmentation"].update(segmentation)
    return SegmentBuilder(config, StorageUrlResolver.from_config(config))


class TestGpsSegmentation(unittest.TestCase):

    def setUp(self):
        self.builder = make_builder()

    def test_damage_duplicated_across_spanned_segments(self):
        segments = self.builder.build([parent_feature([child_track()])], {JOB: gps_frames([0, 300, 600])})

        self.assertEqual([s.segment_index for s in segments], [0, 1])
        self.assertEqual([s.segment_id for s in segments], [1, 2])
        for segment in segments:
            self.assertEqual(segment.damage_count, 1)
            self.assertEqual(segment.job_id, JOB)
            self.assertEqual(segment.track_ids, ["C1", "P1"])
            self.assertEqual(segment.defect_types, ["longitudinal"])
            self.assertEqual(segment.job_ids, [JOB])
            self.assertEqual(len(segment.overlapping_tracks), 1)

        first, second = segments
        self.assertEqual(len(first.coordinates), 2)
        # a lone GPS frame is duplicated into a two-point line
        self.assertEqual(second.coordinates[0], second.coordinates[1])
        self.assertEqual((first.start_feet, first.end_feet), (0.0, 528.0))
        self.assertEqual((second.start_feet, second.end_feet), (528.0, 1056.0))
        self.assertEqual(first.overlapping_tracks[0].start_feet, 0.0)
        self.assertEqual(first.overlapping_tracks[0].end_feet, 528.0)
        self.assertEqual(second.overlapping_tracks[0].start_feet, 528.0)

    def test_astm_pci_from_counted_defects(self):
        segments = self.builder.build([parent_feature([child_track()])], {JOB: gps_frames([0, 300, 600])})
        # longitudinal Medium, count 1 -> deduct 2
        self.assertEqual(segments[0].astm_pci.pci_score, 98.0)
        self.assertEqual(segments[0].astm_pci.damage_metrics.severity_distribution, {"longitudinal": {"Medium": 1}})
        self.assertIsNone(segments[0].pci)

    def test_sealed_cracks_never_count(self):
        defects = [
            {"defect_type": "Sealed Crack", "frame_id": 1},
            {"defect_type": "alligator", "frame_id": 1},
        ]
        segments = self.builder.build([parent_feature([child_track(defects=defects)])], {JOB: gps_frames([0, 300, 600])})
        self.assertEqual(segments[0].damage_count, 1)

    def test_slow_frames_do_not_count(self):
        # 300 ft per 100 s is about 2 mph
        segments = self.builder.build([parent_feature([child_track()])],
                                      {JOB: gps_frames([0, 300, 600], seconds_apart=100.0)})
        self.assertEqual([s.damage_count for s in segments], [0, 0])

    def test_unknown_speed_counts(self):
        frame_map = FrameSegmentMap(gps_frames([0, 300]), 528)
        index = self.builder.index_tracks([parent_feature([child_track(defects=[{"defect_type": "pothole", "frame_id": 0}])])])
        child = next(iter(index.children.values()))
        self.assertEqual(self.builder.counted_defects(child, frame_map), [("pothole", "Medium")])

    def test_parent_in_one_segment_keeps_all_children_there(self):
        children = [
            child_track("C1", frame_range=(0, 1)),
            child_track("C2", frame_range=None, defects=[{"defect_type": "transverse", "severity": "High"}]),
        ]
        segments = self.builder.build([parent_feature(children, frame_range=[0, 1])], {JOB: gps_frames([0, 300, 600])})
        self.assertEqual(len(segments), 1)
        self.assertEqual(segments[0].segment_index, 0)
        self.assertEqual(segments[0].damage_count, 2)
        self.assertEqual(segments[0].track_ids, ["C1", "P1", "C2"])

    def test_child_without_frames_falls_back_to_first_parent_segment(self):
        children = [
            child_track("C1", frame_range=(0, 2)),
            child_track("C2", frame_range=None, defects=[{"defect_type": "transverse"}]),
        ]
        segments = self.builder.build([parent_feature(children)], {JOB: gps_frames([0, 300, 600])})
        self.assertEqual([s.damage_count for s in segments], [2, 1])

    def test_video_segment_scores_matching_segment(self):
        video_index = VideoSegmentIndex(job_id=JOB, segments=[
            VideoSegment(segment_id=1, frame_range=[0, 1], hls={"master_playlist_url": "https://cdn.example.com/1.m3u8"},
                         pixel_percentage_with_projections={"alligator": 1}),
        ])
        segments = self.builder.build([parent_feature([child_track()])], {JOB: gps_frames([0, 300, 600])}, {JOB: video_index})
        first, second = segments
        self.assertEqual(first.pci.pci_score, 72.0)
        self.assertEqual(first.pixel_percentages.alligator, 1.0)
        self.assertEqual(first.video_segment["master_playlist_url"], "https://cdn.example.com/1.m3u8")
        self.assertIsNone(second.pci)
        self.assertIsNone(second.video_segment)

    def test_feature_output(self):
        segments = self.builder.build([parent_feature([child_track()])], {JOB: gps_frames([0, 300, 600])})
        feature = segments[0].to_feature()
        self.assertEqual(feature["geometry"]["type"], "LineString")
        self.assertEqual(feature["properties"]["segment_id"], 1)
        self.assertEqual(feature["properties"]["damage_count"], 1)
        self.assertIsNone(feature["properties"]["pci_score"])
        self.assertEqual(feature["properties"]["astm_pci_details"]["pci_score"], 98.0)

    def test_jobs_sorted_with_thread_pool(self):
        builder = make_builder(max_workers=2)
        features = [
            parent_feature([child_track()], parent_id="B", job_id="b-job"),
            parent_feature([child_track()], parent_id="A", job_id="a-job"),
        ]
        frames = gps_frames([0, 300, 600])
        segments = builder.build(features, {"a-job": frames, "b-job": frames})
        self.assertEqual([(s.job_id, s.segment_index) for s in segments],
                         [("a-job", 0), ("a-job", 1), ("b-job", 0), ("b-job", 1)])

    def test_job_id_from_source_url(self):
        feature = parent_feature([child_track()], job_id=None,
                                 sourceUrl="https://b.s3.amazonaws.com/customer_outputs/acme/job-9/parent_tracks.geojson")
        segments = self.builder.build([feature], {"job-9": gps_frames([0, 300, 600])})
        self.assertEqual(segments[0].job_id, "job-9")
        self.assertEqual(len(segments), 2)


class TestTrackIndexing(unittest.TestCase):

    def setUp(self):
        self.builder = make_builder()

    def test_child_fields(self):
        raw = child_track(
            measured_real_length=10,
            defects=[
                {"defect_type": "Alligator", "severity": {"joint_severity": "High"}, "frame_id": 4,
                 "images": {"thumbnail": None, "polygon_overlay": "s3://roadscan-data-dev-usw2/p.png"},
                 "gps_coordinates": {"timestamp": 1700000000500}},
                {"defect_type": "pothole", "severity": "Low", "frame_number": 1, "timestamp": 1700000000000},
            ],
        )
        index = self.builder.index_tracks([parent_feature([raw], sourceUrl="s3://b/parent_tracks.geojson")])
        key, child = next(iter(index.children.items()))

        self.assertEqual(child.parent_track_id, "P1")
        self.assertEqual(child.defect_types, ["alligator", "pothole"])
        self.assertEqual(child.severity_labels, ["High", "Low"])
        self.assertEqual(child.representative_thumbnail,
                         "https://roadscan-data-dev-usw2.s3.us-west-2.amazonaws.com/p.png")
        self.assertEqual(child.frame_ids, [0, 1, 2, 4])
        self.assertEqual(index.child_frame_spans[key], (0, 4))
        self.assertEqual(child.track_start_ts, 1700000000000.0)
        self.assertAlmostEqual(child.track_length_feet, 32.8084)
        self.assertEqual(child.source_geojson_url, "s3://b/parent_tracks.geojson")

    def test_track_length_fallbacks(self):
        by_gps = self.builder.index_tracks([parent_feature([child_track(gps_length_m=100)])])
        self.assertAlmostEqual(next(iter(by_gps.children.values())).track_length_feet, 328.084)

        by_geometry = self.builder.index_tracks([parent_feature([child_track()])])
        self.assertAlmostEqual(next(iter(by_geometry.children.values())).track_length_feet, 600.0, places=3)

    def test_malformed_entries_skipped(self):
        index = self.builder.index_tracks([None, {"properties": None}, parent_feature(["junk", child_track()])])
        self.assertEqual(len(index.parents), 1)
        self.assertEqual(len(index.children), 1)


class TestWithoutGps(unittest.TestCase):

    def test_single_segment_fallback(self):
        builder = make_builder()
        with self.assertLogs('roadscan', level='WARNING'):
            segments = builder.build([parent_feature([child_track()])])
        self.assertEqual(len(segments), 1)
        self.assertEqual(segments[0].segment_index, 0)
        self.assertEqual(segments[0].damage_count, 1)
        self.assertEqual(segments[0].coordinates, [(LNG, lat_at(0)), (LNG, lat_at(600))])

    def test_segment_without_geometry_dropped(self):
        builder = make_builder()
        segments = builder.build([parent_feature([child_track(coordinates=[])])])
        self.assertEqual(segments, [])

    def test_geometric_chunking(self):
        builder = make_builder(no_gps_strategy="geometric")
        track = child_track(coordinates=[[LNG, lat_at(0)], [LNG, lat_at(1200)]])
        segments = builder.build([parent_feature([track])])

        self.assertEqual([s.segment_id for s in segments], [1, 2, 3])
        self.assertEqual([s.damage_count for s in segments], [1, 1, 1])
        self.assertAlmostEqual(segments[0].segment_length_feet, 500.0, places=3)
        self.assertAlmostEqual(segments[2].segment_length_feet, 200.0, places=3)

    def test_geometric_ids_skip_zero_length_chunks(self):
        builder = make_builder(no_gps_strategy="geometric")
        chunks = [
            [(LNG, lat_at(0)), (LNG, lat_at(500))],
            [(LNG, lat_at(500)), (LNG, lat_at(500))],
            [(LNG, lat_at(500)), (LNG, lat_at(900))],
        ]
        track = child_track(coordinates=[[LNG, lat_at(0)], [LNG, lat_at(900)]])
        with patch("roadscan.services.segment_builder.line_chunk", return_value=chunks):
            segments = builder.build([parent_feature([track])])

        self.assertEqual([s.segment_id for s in segments], [1, 2])
        self.assertEqual([s.segment_index for s in segments], [0, 1])

    def test_video_segment_matched_by_position(self):
        builder = make_builder()
        video_index = VideoSegmentIndex(job_id=JOB, segments=[
            VideoSegment(segment_id=1, gps_start=[LNG, lat_at(5000)], gps_end=[LNG, lat_at(6000)],
                         pixel_percentage_with_projections={"alligator": 5}),
            VideoSegment(segment_id=7, gps_start=[LNG, lat_at(200)], gps_end=[LNG, lat_at(400)],
                         hls={"master_playlist_url": "https://cdn.example.com/7.m3u8"},
                         pixel_percentage_with_projections={"alligator": 1}),
        ])
        with self.assertLogs('roadscan', level='WARNING'):
            segments = builder.build([parent_feature([child_track()])], None, {JOB: video_index})

        self.assertEqual(len(segments), 1)
        self.assertEqual(segments[0].pci.pci_score, 72.0)
        self.assertEqual(segments[0].video_segment["master_playlist_url"], "https://cdn.example.com/7.m3u8")

    def test_geometric_chains_tracks_by_start_time(self):
        builder = make_builder(no_gps_strategy="geometric")
        later = child_track("late", frame_range=(50, 60), coordinates=[[LNG, lat_at(400)], [LNG, lat_at(800)]])
        earlier = child_track("early", frame_range=(0, 10), coordinates=[[LNG, lat_at(0)], [LNG, lat_at(400)]])
        segments = builder.build([parent_feature([later, earlier])])

        self.assertEqual(len(segments), 2)
        self.assertEqual(segments[0].track_ids, ["early", "P1", "late"])
        self.assertEqual(segments[1].track_ids, ["late", "P1"])


if __name__ == '__main__':
    unittest.main()
