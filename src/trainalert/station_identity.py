"""Maps human-entered station names to canonical station ids."""

import logging
import unicodedata
from typing import Dict, List, Optional, Tuple

from .errors import AmbiguousStation
from .station_graph import StationGraph
from .timetable_source import TimetableSource

logger = logging.getLogger(__name__)

_SUFFIXES = ("駅", " station")


def normalize_station_name(name: str) -> str:
    """
    Normalize a station name for comparison.

    Full-width characters are folded to their ASCII forms, case is ignored and
    a trailing "駅" or "Station" is dropped.
    """
    folded = unicodedata.normalize("NFKC", name).strip().casefold()
    for suffix in _SUFFIXES:
        if folded.endswith(suffix) and len(folded) > len(suffix):
            folded = folded[: -len(suffix)].rstrip()
    return folded


class StationResolver:
    """
    Resolves (station name, line name) pairs to canonical station ids.

    The station graph is consulted first. Names it cannot settle are passed to
    the timetable source. Results are memoized per normalized pair.
    """

    def __init__(self, source: TimetableSource, graph: Optional[StationGraph] = None):
        self.source = source
        self.graph = graph
        self._resolved: Dict[Tuple[str, str], str] = {}
        self._by_name: Dict[str, List[str]] = {}
        if graph is not None:
            for station in graph.stations:
                self._by_name.setdefault(normalize_station_name(station.name), []).append(station.station_id)

    async def resolve(self, name: str, line_name: str) -> str:
        """
        Get the canonical id of a station.

        Raises:
            AmbiguousStation: If more than one station matches on the line.
            StationNotFound: If no station matches.
        """
        key = (normalize_station_name(name), line_name.strip().casefold())
        if key in self._resolved:
            return self._resolved[key]

        candidates = self._local_candidates(key[0], line_name)
        if len(candidates) > 1:
            raise AmbiguousStation(name, candidates)
        if candidates:
            station_id = candidates[0]
        else:
            logger.debug(f"'{name}' on {line_name} not in the station graph; asking the source")
            station_id = await self.source.resolve_station_identity(name, line_name)

        self._resolved[key] = station_id
        logger.debug(f"Resolved '{name}' on {line_name} to {station_id}")
        return station_id

    def forget(self) -> None:
        """Drop memoized resolutions."""
        self._resolved.clear()

    def _local_candidates(self, normalized: str, line_name: str) -> List[str]:
        station_ids = self._by_name.get(normalized, [])
        if len(station_ids) <= 1 or self.graph is None:
            return list(station_ids)
        # Same name in several places: narrow down by line
        wanted = line_name.strip().casefold()
        on_line = [
            sid for sid in station_ids
            if any(
                line_id.casefold() == wanted or self.graph.line(line_id).name.casefold() == wanted
                for line_id in self.graph.lines_for(sid)
            )
        ]
        return on_line or list(station_ids)
