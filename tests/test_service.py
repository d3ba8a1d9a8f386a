"""Tests for TrainAlertService."""

import os
import tempfile
import unittest
from datetime import time
from unittest.mock import MagicMock
import sys
from pathlib import Path

from google.transit import gtfs_realtime_pb2

# Add src to path so we can import trainalert
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from trainalert.config import TrainAlertConfig
from trainalert.models import AlertConfig, NotificationKind, Weekday
from trainalert.odpt_client import OdptTimetableSource
from trainalert.realtime_client import RealtimeDelayClient
from trainalert.service import TrainAlertService

from fakes import MONDAY, FakeTimetableSource, at, build_graph, entries, sequence
from test_reference_loader import ROUTES, STOP_TIMES, STOPS, TRIPS


def make_source() -> FakeTimetableSource:
    source = FakeTimetableSource()
    source.add(entries("a", "red", [("R1", "08:10")]))
    source.add(entries("b", "red", [("R1", "08:40")]))
    source.sequences["R1"] = sequence("R1", "red", [("a", None, "08:10"), ("b", "08:40", None)])
    return source


class TestTrainAlertService(unittest.IsolatedAsyncioTestCase):
    """Test the service facade."""

    def setUp(self):
        self.delay_client = MagicMock(spec=RealtimeDelayClient)
        self.service = TrainAlertService(build_graph(), make_source(), delay_client=self.delay_client)

    async def test_search_then_schedule(self):
        routes = await self.service.search("a", "b", at("08:00"))
        points = self.service.schedule_notifications(
            AlertConfig(lead_minutes=10, departure_reminder=False), routes[0], at("07:00")
        )

        self.assertEqual(len(points), 1)
        self.assertEqual(points[0].station_id, "b")
        self.assertEqual(points[0].trigger_time, at("08:30"))
        self.assertIs(points[0].kind, NotificationKind.ARRIVAL)

    async def test_search_by_name(self):
        routes = await self.service.search_by_name("Akasaka", "Red Line", "Bakurocho駅", "Red Line", at("08:00"))
        self.assertEqual(routes[0].sections[0].train_id, "R1")

    def test_next_occurrence(self):
        config = AlertConfig(repeat_days=Weekday.MONDAY | Weekday.WEDNESDAY)
        result = self.service.next_occurrence(config, time(7, 55), at("09:00", MONDAY.replace(day=20)))
        self.assertEqual(result, at("07:55", MONDAY.replace(day=21)))

    async def test_apply_delays(self):
        routes = await self.service.search("a", "b", at("08:00"))
        config = AlertConfig(lead_minutes=10, departure_reminder=False)
        points = self.service.schedule_notifications(config, routes[0], at("07:00"))

        self.delay_client.get_delay_minutes.return_value = 4
        delayed = self.service.apply_delays(points, routes[0], at("07:00"))

        self.delay_client.get_delay_minutes.assert_called_once_with("R1")
        self.assertEqual(delayed[0].trigger_time, at("08:34"))

    async def test_apply_delays_without_report(self):
        routes = await self.service.search("a", "b", at("08:00"))
        points = self.service.schedule_notifications(AlertConfig(), routes[0], at("07:00"))
        self.delay_client.get_delay_minutes.return_value = None
        self.assertEqual(self.service.apply_delays(points, routes[0], at("07:00")), points)

    async def test_cleanup(self):
        await self.service.search("a", "b", at("08:00"))
        self.service.cleanup()
        self.assertEqual(len(self.service.cache), 0)
        self.delay_client.clear_cache.assert_called_once()


def odpt_shaped_source() -> FakeTimetableSource:
    """Train numbers as ODPT publishes them: 301G on red a -> c, 1103G on blue c -> z."""
    source = FakeTimetableSource()
    source.add(entries("a", "red", [("301G", "08:10")]))
    source.add(entries("c", "red", [("301G", "08:25")]))
    source.add(entries("c", "blue", [("1103G", "08:31")]))
    source.add(entries("z", "blue", [("1103G", "08:40")]))
    source.sequences["301G"] = sequence("301G", "red", [("a", None, "08:10"), ("b", "08:17", "08:18"), ("c", "08:25", None)])
    source.sequences["1103G"] = sequence("1103G", "blue", [("c", None, "08:31"), ("y", "08:35", "08:35"), ("z", "08:40", None)])
    return source


def delay_feed(trip_id: str, seconds: int) -> bytes:
    feed = gtfs_realtime_pb2.FeedMessage()
    feed.header.gtfs_realtime_version = "2.0"
    entity = feed.entity.add()
    entity.id = "1"
    entity.trip_update.trip.trip_id = trip_id
    entity.trip_update.delay = seconds
    return feed.SerializeToString()


class TestRealtimeDelays(unittest.IsolatedAsyncioTestCase):
    """Test delays from a GTFS-Realtime feed on a route with a change."""

    def setUp(self):
        self.session = MagicMock()
        self.session.get.return_value.content = delay_feed("odpt.Train:Blue.1103G", 600)
        delay_client = RealtimeDelayClient(["http://test/feed"], session=self.session)
        self.service = TrainAlertService(build_graph(), odpt_shaped_source(), delay_client=delay_client)

    async def test_final_train_delay_found_by_train_number(self):
        routes = await self.service.search("a", "z", at("08:00"))
        self.assertEqual(routes[0].sections[-1].train_id, "1103G")

        points = self.service.schedule_notifications(AlertConfig(lead_minutes=5), routes[0], at("07:00"))
        delayed = self.service.apply_delays(points, routes[0], at("07:00"))
        by_kind = {p.kind: p.trigger_time for p in delayed}

        self.assertEqual(by_kind[NotificationKind.ARRIVAL], at("08:45"))
        self.assertEqual(by_kind[NotificationKind.DEPARTURE], at("08:08"))
        self.assertEqual(by_kind[NotificationKind.TRANSFER], at("08:25"))

    async def test_unreported_train_leaves_points(self):
        self.session.get.return_value.content = delay_feed("odpt.Train:Red.301G", 600)
        routes = await self.service.search("a", "z", at("08:00"))
        points = self.service.schedule_notifications(AlertConfig(), routes[0], at("07:00"))
        self.assertEqual(self.service.apply_delays(points, routes[0], at("07:00")), points)


class TestFromConfig(unittest.TestCase):
    """Test wiring a service from configuration."""

    def test_builds_graph_and_odpt_source(self):
        with tempfile.TemporaryDirectory() as directory:
            for name, content in {
                "stops.txt": STOPS, "routes.txt": ROUTES, "trips.txt": TRIPS, "stop_times.txt": STOP_TIMES,
            }.items():
                with open(os.path.join(directory, name), "w", encoding="utf-8") as f:
                    f.write(content)
            config = TrainAlertConfig(odpt_api_key="secret", gtfs_directory=directory, max_results=3)
            service = TrainAlertService.from_config(config)

        self.assertIsInstance(service.source, OdptTimetableSource)
        self.assertEqual(service.graph.supported_lines(), ["BLUE", "RED"])
        self.assertEqual(service.engine.max_results, 3)
        self.assertIsNone(service.delay_client)

    def test_realtime_client_gets_trip_mapping(self):
        with tempfile.TemporaryDirectory() as directory:
            for name, content in {
                "stops.txt": STOPS, "routes.txt": ROUTES, "trips.txt": TRIPS, "stop_times.txt": STOP_TIMES,
            }.items():
                with open(os.path.join(directory, name), "w", encoding="utf-8") as f:
                    f.write(content)
            config = TrainAlertConfig(
                gtfs_directory=directory,
                realtime_feed_urls=["http://test/feed"],
                realtime_trip_ids={"301G": "4001301"},
            )
            service = TrainAlertService.from_config(config)

        self.assertIsInstance(service.delay_client, RealtimeDelayClient)
        self.assertEqual(service.delay_client.trip_ids, {"301G": "4001301"})

    def test_requires_reference_data(self):
        with self.assertRaises(ValueError):
            TrainAlertService.from_config(TrainAlertConfig(odpt_api_key="secret"))


if __name__ == "__main__":
    unittest.main()
