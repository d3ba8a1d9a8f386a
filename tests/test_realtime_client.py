"""Tests for RealtimeDelayClient."""

import unittest
from unittest.mock import patch, MagicMock
import sys
from pathlib import Path

import requests
from google.transit import gtfs_realtime_pb2

# Add src to path so we can import trainalert
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from trainalert.realtime_client import RealtimeDelayClient


def create_feed() -> bytes:
    """GTFS-Realtime feed with a late, an early and an unreported trip."""
    feed = gtfs_realtime_pb2.FeedMessage()
    feed.header.gtfs_realtime_version = "2.0"

    late = feed.entity.add()
    late.id = "1"
    late.trip_update.trip.trip_id = "301G"
    late.trip_update.delay = 250

    per_stop = feed.entity.add()
    per_stop.id = "2"
    per_stop.trip_update.trip.trip_id = "303G"
    first = per_stop.trip_update.stop_time_update.add()
    first.stop_id = "tokyo"
    first.departure.delay = 120

    early = feed.entity.add()
    early.id = "3"
    early.trip_update.trip.trip_id = "305G"
    early.trip_update.delay = -60

    unknown = feed.entity.add()
    unknown.id = "4"
    unknown.trip_update.trip.trip_id = "307G"
    stop = unknown.trip_update.stop_time_update.add()
    stop.stop_id = "kanda"
    stop.arrival.time = 1_800_000_000

    return feed.SerializeToString()


class TestRealtimeDelayClient(unittest.TestCase):
    """Test GTFS-Realtime delay fetching."""

    def setUp(self):
        self.session = MagicMock()
        mock_response = MagicMock()
        mock_response.content = create_feed()
        self.session.get.return_value = mock_response
        self.client = RealtimeDelayClient(["http://test/feed"], session=self.session)

    def test_parses_trip_and_stop_delays(self):
        delays = self.client.get_delays()
        self.assertEqual(delays, {"301G": 5, "303G": 2, "305G": 0})

    def test_get_delay_minutes(self):
        self.assertEqual(self.client.get_delay_minutes("301G"), 5)
        self.assertIsNone(self.client.get_delay_minutes("307G"))

    def test_feed_cached_within_ttl(self):
        self.client.get_delays()
        self.client.get_delays()
        self.assertEqual(self.session.get.call_count, 1)

    @patch("trainalert.realtime_client.time.time")
    def test_feed_refetched_after_ttl(self, mock_time):
        mock_time.return_value = 1000.0
        self.client.get_delays()
        mock_time.return_value = 1031.0
        self.client.get_delays()
        self.assertEqual(self.session.get.call_count, 2)

    def test_clear_cache(self):
        self.client.get_delays()
        self.client.clear_cache()
        self.client.get_delays()
        self.assertEqual(self.session.get.call_count, 2)

    def test_fetch_failure_is_skipped(self):
        self.session.get.side_effect = requests.ConnectionError("down")
        self.assertEqual(self.client.get_delays(), {})

    def test_corrupt_feed_is_skipped(self):
        self.session.get.return_value.content = b"\xff\xff not a protobuf"
        self.assertEqual(self.client.get_delays(), {})


def create_operator_feed() -> bytes:
    """Feed whose trip ids are not bare train numbers."""
    feed = gtfs_realtime_pb2.FeedMessage()
    feed.header.gtfs_realtime_version = "2.0"

    suffixed = feed.entity.add()
    suffixed.id = "1"
    suffixed.trip_update.trip.trip_id = "odpt.Train:JR-East.Yamanote.1103G"
    suffixed.trip_update.delay = 180

    labelled = feed.entity.add()
    labelled.id = "2"
    labelled.trip_update.trip.trip_id = "20261019_000042"
    labelled.trip_update.vehicle.label = "1505M"
    labelled.trip_update.delay = 61

    opaque = feed.entity.add()
    opaque.id = "3"
    opaque.trip_update.trip.trip_id = "4001301"
    opaque.trip_update.delay = 420

    return feed.SerializeToString()


class TestTrainNumberMatching(unittest.TestCase):
    """Test matching timetable train numbers to realtime trips."""

    def setUp(self):
        self.session = MagicMock()
        self.session.get.return_value.content = create_operator_feed()

    def test_train_number_at_end_of_trip_id(self):
        client = RealtimeDelayClient(["http://test/feed"], session=self.session)
        self.assertEqual(client.get_delay_minutes("1103G"), 3)

    def test_train_number_from_vehicle_label(self):
        client = RealtimeDelayClient(["http://test/feed"], session=self.session)
        self.assertEqual(client.get_delay_minutes("1505M"), 2)

    def test_configured_trip_id_mapping(self):
        client = RealtimeDelayClient(["http://test/feed"], session=self.session)
        self.assertIsNone(client.get_delay_minutes("301G"))

        mapped = RealtimeDelayClient(["http://test/feed"], session=self.session, trip_ids={"301G": "4001301"})
        self.assertEqual(mapped.get_delay_minutes("301G"), 7)

    def test_pattern_can_be_disabled(self):
        client = RealtimeDelayClient(["http://test/feed"], session=self.session, train_number_pattern=None)
        self.assertIsNone(client.get_delay_minutes("1103G"))
        self.assertEqual(client.get_delay_minutes("1505M"), 2)

    def test_get_delays_keyed_by_trip_id(self):
        client = RealtimeDelayClient(["http://test/feed"], session=self.session)
        self.assertEqual(
            client.get_delays(),
            {"odpt.Train:JR-East.Yamanote.1103G": 3, "20261019_000042": 2, "4001301": 7},
        )


if __name__ == "__main__":
    unittest.main()
