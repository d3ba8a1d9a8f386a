"""Tests for StationGraph."""

import unittest
import sys
from pathlib import Path

# Add src to path so we can import trainalert
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from trainalert.errors import UnknownStation
from trainalert.models import Line, Station
from trainalert.station_graph import StationGraph

from fakes import build_graph


class TestStationGraph(unittest.TestCase):
    """Test graph construction and queries."""

    def setUp(self):
        self.graph = build_graph(transfer_minutes={"c": 5})

    def test_station_lines_recomputed_from_lines(self):
        """Stations learn their lines from the line definitions."""
        self.assertEqual(self.graph.lines_for("c"), ["red", "blue"])
        self.assertEqual(self.graph.lines_for("a"), ["red"])

    def test_unknown_station_raises(self):
        with self.assertRaises(UnknownStation):
            self.graph.station("nowhere")
        with self.assertRaises(LookupError):
            self.graph.lines_for("nowhere")

    def test_given_stations_left_untouched(self):
        stations = [Station("a", "A", 0.0, 0.0, lines=["stale"]), Station("b", "B", 0.0, 0.0)]
        graph = StationGraph(stations, [Line("red", "Red", ["a", "b"])])

        self.assertEqual(graph.lines_for("a"), ["red"])
        self.assertEqual(stations[0].lines, ["stale"])
        self.assertEqual(stations[1].lines, [])
        self.assertIsNot(graph.station("a"), stations[0])

    def test_line_reversed(self):
        line = self.graph.line("blue")
        backwards = line.reversed()

        self.assertEqual(backwards.station_ids, ["z", "y", "c", "x"])
        self.assertEqual(backwards.line_id, "blue")
        self.assertEqual(line.station_ids, ["x", "c", "y", "z"])

    def test_line_referencing_missing_station_rejected(self):
        stations = [Station("a", "A", 0.0, 0.0)]
        with self.assertRaises(UnknownStation):
            StationGraph(stations, [Line("red", "Red", ["a", "b"])])

    def test_common_lines(self):
        self.assertEqual(self.graph.common_lines("a", "d"), ["red"])
        self.assertEqual(self.graph.common_lines("a", "z"), [])
        self.assertTrue(self.graph.same_line("x", "z"))
        self.assertFalse(self.graph.same_line("a", "g1"))

    def test_transfer_time_override_and_default(self):
        self.assertEqual(self.graph.transfer_time("c"), 5)
        self.assertEqual(self.graph.transfer_time("a"), 3)

    def test_transfer_edges_at_shared_station(self):
        edges = self.graph.transfer_edges("c")
        pairs = {(edge.from_line, edge.to_line) for edge in edges}
        self.assertEqual(pairs, {("red", "blue"), ("blue", "red")})
        self.assertTrue(all(edge.minutes == 5 for edge in edges))
        self.assertEqual(self.graph.transfer_edges("a"), [])

    def test_neighbors_ride_and_transfer(self):
        """Riding hops go both ways; transfers leave from the excluded line."""
        neighbors = self.graph.neighbors("c", exclude_line="red")
        rides = {(n.station.station_id, n.line.line_id) for n in neighbors if n.transfer is None}
        transfers = {(n.transfer.from_line, n.transfer.to_line) for n in neighbors if n.transfer}

        self.assertEqual(rides, {("x", "blue"), ("y", "blue")})
        self.assertEqual(transfers, {("red", "blue")})

    def test_neighbors_at_line_end(self):
        neighbors = self.graph.neighbors("a")
        self.assertEqual({n.station.station_id for n in neighbors}, {"b"})

    def test_stations_between_either_direction(self):
        self.assertEqual(self.graph.stations_between("red", "a", "d"), ["a", "b", "c", "d"])
        self.assertEqual(self.graph.stations_between("red", "d", "b"), ["d", "c", "b"])

    def test_stations_between_off_line(self):
        with self.assertRaises(UnknownStation):
            self.graph.stations_between("red", "a", "z")

    def test_estimated_minutes(self):
        self.assertEqual(self.graph.estimated_minutes("red", "a", "e"), 8)

    def test_unknown_line(self):
        with self.assertRaises(UnknownStation) as ctx:
            self.graph.line("purple")
        self.assertEqual(ctx.exception.kind, "line")

    def test_supported_lines_sorted(self):
        self.assertEqual(self.graph.supported_lines(), ["blue", "green", "red"])


if __name__ == "__main__":
    unittest.main()
