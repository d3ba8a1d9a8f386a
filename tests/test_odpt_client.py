"""Tests for OdptTimetableSource."""

import unittest
from unittest.mock import MagicMock
import sys
from pathlib import Path

import requests

# Add src to path so we can import trainalert
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from trainalert.errors import AmbiguousStation, NetworkFailure, NoData, StationNotFound
from trainalert.models import CalendarType
from trainalert.odpt_client import OdptTimetableSource

YAMANOTE = "odpt.Railway:JR-East.Yamanote"
TOKYO = "odpt.Station:JR-East.Yamanote.Tokyo"
KANDA = "odpt.Station:JR-East.Yamanote.Kanda"


def response(payload, status_code=200):
    mock_response = MagicMock()
    mock_response.status_code = status_code
    mock_response.json.return_value = payload
    return mock_response


class TestOdptTimetableSource(unittest.IsolatedAsyncioTestCase):
    """Test ODPT request building and parsing."""

    def setUp(self):
        self.session = MagicMock()
        self.source = OdptTimetableSource(
            "secret",
            session=self.session,
            station_aliases={("tokyo", YAMANOTE): TOKYO, ("kanda", YAMANOTE): KANDA},
            railway_ids={"Yamanote": YAMANOTE},
        )

    def test_api_key_required(self):
        with self.assertRaises(ValueError):
            OdptTimetableSource("")

    async def test_fetch_station_timetable(self):
        self.session.get.return_value = response([{
            "odpt:stationTimetableObject": [
                {"odpt:departureTime": "08:10", "odpt:train": "odpt.Train:JR-East.Yamanote.301G",
                 "odpt:destinationStation": [KANDA]},
                {"odpt:departureTime": "08:15", "odpt:trainNumber": "303G"},
                {"odpt:trainNumber": "305G"},
            ],
        }])

        entries = await self.source.fetch_station_timetable("tokyo", YAMANOTE, CalendarType.SATURDAY_HOLIDAY)

        self.assertEqual([(e.train_id, e.time) for e in entries], [("301G", "08:10"), ("303G", "08:15")])
        self.assertEqual(entries[0].destination, "kanda")
        self.assertEqual(entries[0].station_id, "tokyo")
        self.assertIs(entries[0].calendar, CalendarType.SATURDAY_HOLIDAY)

        url = self.session.get.call_args[0][0]
        params = self.session.get.call_args[1]["params"]
        self.assertTrue(url.endswith("/odpt:StationTimetable"))
        self.assertEqual(params["acl:consumerKey"], "secret")
        self.assertEqual(params["odpt:station"], TOKYO)
        self.assertEqual(params["odpt:calendar"], "odpt.Calendar:SaturdayHoliday")

    async def test_fetch_train_stop_sequence(self):
        self.session.get.return_value = response([{
            "odpt:trainTimetableObject": [
                {"odpt:departureStation": TOKYO, "odpt:departureTime": "08:10"},
                {"odpt:departureStation": KANDA, "odpt:departureTime": "08:12"},
                {"odpt:arrivalStation": "odpt.Station:JR-East.Yamanote.Akihabara", "odpt:arrivalTime": "08:14"},
            ],
        }])

        result = await self.source.fetch_train_stop_sequence("301G", YAMANOTE, CalendarType.WEEKDAY)

        self.assertEqual(
            [stop.station_id for stop in result.stops],
            ["tokyo", "kanda", "odpt.Station:JR-East.Yamanote.Akihabara"],
        )
        self.assertEqual(result.stops[-1].arrival_time, "08:14")
        self.assertEqual(result.index_of("kanda"), 1)
        self.assertEqual(self.session.get.call_args[1]["params"]["odpt:trainNumber"], "301G")

    async def test_fetch_train_stop_sequence_missing(self):
        self.session.get.return_value = response([])
        result = await self.source.fetch_train_stop_sequence("999G", YAMANOTE, CalendarType.WEEKDAY)
        self.assertIsNone(result)

    async def test_connection_error_becomes_network_failure(self):
        self.session.get.side_effect = requests.ConnectionError("unreachable")
        with self.assertRaises(NetworkFailure):
            await self.source.fetch_station_timetable("tokyo", YAMANOTE, CalendarType.WEEKDAY)

    async def test_http_errors(self):
        self.session.get.return_value = response(None, status_code=404)
        with self.assertRaises(NoData):
            await self.source.fetch_station_timetable("tokyo", YAMANOTE, CalendarType.WEEKDAY)

        self.session.get.return_value = response(None, status_code=503)
        with self.assertRaises(NetworkFailure):
            await self.source.fetch_station_timetable("tokyo", YAMANOTE, CalendarType.WEEKDAY)

    async def test_unexpected_payload(self):
        self.session.get.return_value = response({"error": "bad key"})
        with self.assertRaises(NetworkFailure):
            await self.source.fetch_station_timetable("tokyo", YAMANOTE, CalendarType.WEEKDAY)

    async def test_resolve_station_identity(self):
        self.session.get.return_value = response([{"owl:sameAs": TOKYO}])
        station_id = await self.source.resolve_station_identity("東京", "Yamanote")

        self.assertEqual(station_id, "tokyo")
        params = self.session.get.call_args[1]["params"]
        self.assertEqual(params["dc:title"], "東京")
        self.assertEqual(params["odpt:railway"], YAMANOTE)

    async def test_resolve_station_identity_errors(self):
        self.session.get.return_value = response([])
        with self.assertRaises(StationNotFound):
            await self.source.resolve_station_identity("Nowhere", YAMANOTE)

        self.session.get.return_value = response([{"owl:sameAs": TOKYO}, {"owl:sameAs": KANDA}])
        with self.assertRaises(AmbiguousStation):
            await self.source.resolve_station_identity("Somewhere", YAMANOTE)

        with self.assertRaises(StationNotFound):
            await self.source.resolve_station_identity("東京", "Unknown Line")


if __name__ == "__main__":
    unittest.main()
