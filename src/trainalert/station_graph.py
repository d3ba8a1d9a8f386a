"""Read-only graph of stations, lines and transfer edges."""

import logging
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .errors import UnknownStation
from .models import Line, Station, TransferEdge

logger = logging.getLogger(__name__)

DEFAULT_TRANSFER_MINUTES = 3
DEFAULT_MINUTES_PER_STATION = 2


@dataclass(frozen=True, eq=False)
class Neighbor:
    """A station reachable in one hop, and how."""
    station: Station
    line: Line
    transfer: Optional[TransferEdge] = None  # Set when the hop is a change of line

    def _key(self) -> Tuple[str, str, Optional[TransferEdge]]:
        return (self.station.station_id, self.line.line_id, self.transfer)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Neighbor):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())


class StationGraph:
    """
    Stations, lines and the transfer edges where lines meet.

    Built once from reference data and never mutated afterwards, so it can be
    shared between concurrent searches without locking.
    """

    def __init__(
        self,
        stations: Iterable[Station],
        lines: Iterable[Line],
        transfer_minutes: Optional[Dict[str, int]] = None,
        default_transfer_minutes: int = DEFAULT_TRANSFER_MINUTES,
        minutes_per_station: int = DEFAULT_MINUTES_PER_STATION,
    ):
        """
        Args:
            stations: All stations. The graph keeps copies whose ``lines`` are
                recomputed from ``lines``; the given objects are left as they are.
            lines: All lines in canonical direction.
            transfer_minutes: Per-station transfer time overrides.
            default_transfer_minutes: Transfer time for stations without an override.
            minutes_per_station: Average ride time between adjacent stations, used
                for search costs and as the last-resort duration estimate.
        """
        given: Dict[str, Station] = {s.station_id: s for s in stations}
        self._lines: Dict[str, Line] = {}
        self._transfer_minutes = dict(transfer_minutes or {})
        self.default_transfer_minutes = default_transfer_minutes
        self.minutes_per_station = minutes_per_station
        self._lines_by_station: Dict[str, List[str]] = {}

        for line in lines:
            missing = [sid for sid in line.station_ids if sid not in given]
            if missing:
                raise UnknownStation(missing[0])
            self._lines[line.line_id] = line
            for station_id in line.station_ids:
                served = self._lines_by_station.setdefault(station_id, [])
                if line.line_id not in served:
                    served.append(line.line_id)

        # Copies, so the caller's stations keep their own line lists
        self._stations: Dict[str, Station] = {
            station_id: replace(station, lines=list(self._lines_by_station.get(station_id, [])))
            for station_id, station in given.items()
        }

        self._transfers: Dict[str, List[TransferEdge]] = {}
        for station_id, line_ids in self._lines_by_station.items():
            if len(line_ids) < 2:
                continue
            minutes = self.transfer_time(station_id)
            self._transfers[station_id] = [
                TransferEdge(station_id, from_line, to_line, minutes)
                for from_line in line_ids
                for to_line in line_ids
                if from_line != to_line
            ]

        logger.debug(
            f"Built station graph with {len(self._stations)} stations, "
            f"{len(self._lines)} lines and {len(self._transfers)} transfer stations"
        )

    def station(self, station_id: str) -> Station:
        if station_id not in self._stations:
            raise UnknownStation(station_id)
        return self._stations[station_id]

    def line(self, line_id: str) -> Line:
        if line_id not in self._lines:
            raise UnknownStation(line_id, kind="line")
        return self._lines[line_id]

    def has_station(self, station_id: str) -> bool:
        return station_id in self._stations

    @property
    def stations(self) -> List[Station]:
        return list(self._stations.values())

    @property
    def lines(self) -> List[Line]:
        return list(self._lines.values())

    def supported_lines(self) -> List[str]:
        return sorted(self._lines)

    def lines_for(self, station_id: str) -> List[str]:
        return list(self.station(station_id).lines)

    def common_lines(self, a: str, b: str) -> List[str]:
        """Lines serving both stations, in the first station's order."""
        other = set(self.lines_for(b))
        return [line_id for line_id in self.lines_for(a) if line_id in other]

    def same_line(self, a: str, b: str) -> bool:
        return bool(self.common_lines(a, b))

    def transfer_time(self, station_id: str) -> int:
        """Minimum minutes needed to change lines at a station."""
        self.station(station_id)
        return self._transfer_minutes.get(station_id, self.default_transfer_minutes)

    def transfer_edges(self, station_id: str) -> List[TransferEdge]:
        self.station(station_id)
        return list(self._transfers.get(station_id, []))

    def neighbors(self, station_id: str, exclude_line: Optional[str] = None) -> Set[Neighbor]:
        """
        Stations one hop away from a station.

        Riding hops go to the adjacent stations on every line serving the station
        except ``exclude_line``. Transfer hops stay at the station and move from
        ``exclude_line`` (or any line, when not given) onto another line.
        """
        station = self.station(station_id)
        result: Set[Neighbor] = set()

        for line_id in station.lines:
            if line_id == exclude_line:
                continue
            line = self._lines[line_id]
            for index, sid in enumerate(line.station_ids):
                if sid != station_id:
                    continue
                if index > 0:
                    result.add(Neighbor(self._stations[line.station_ids[index - 1]], line, None))
                if index + 1 < len(line.station_ids):
                    result.add(Neighbor(self._stations[line.station_ids[index + 1]], line, None))

        for edge in self._transfers.get(station_id, []):
            if exclude_line is not None and edge.from_line != exclude_line:
                continue
            result.add(Neighbor(station, self._lines[edge.to_line], edge))

        return result

    def stations_between(self, line_id: str, origin: str, destination: str) -> List[str]:
        """
        Station ids ridden from origin to destination on a line, ends included.

        Follows the canonical order or its inverse, whichever leads there.
        """
        line = self.line(line_id)
        start = line.index_of(origin)
        end = line.index_of(destination)
        if start is None:
            raise UnknownStation(origin)
        if end is None:
            raise UnknownStation(destination)
        if start <= end:
            return line.station_ids[start:end + 1]
        backwards = line.reversed()
        last = len(line.station_ids) - 1
        return backwards.station_ids[last - start:last - end + 1]

    def estimated_minutes(self, line_id: str, origin: str, destination: str) -> int:
        """Heuristic ride time from the number of stations between two stops."""
        hops = len(self.stations_between(line_id, origin, destination)) - 1
        return hops * self.minutes_per_station

