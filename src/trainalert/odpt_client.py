"""Timetable source backed by the ODPT (Open Data for Public Transportation) API."""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

import requests

from .errors import AmbiguousStation, NetworkFailure, NoData, StationNotFound
from .models import CalendarType, Stop, TimetableEntry, TrainStopSequence

logger = logging.getLogger(__name__)

ODPT_BASE_URL = "https://api.odpt.org/api/v4"
DEFAULT_TIMEOUT = 15.0

CALENDAR_IDS = {
    CalendarType.WEEKDAY: "odpt.Calendar:Weekday",
    CalendarType.SATURDAY: "odpt.Calendar:Saturday",
    CalendarType.HOLIDAY: "odpt.Calendar:Holiday",
    CalendarType.SATURDAY_HOLIDAY: "odpt.Calendar:SaturdayHoliday",
}


class OdptTimetableSource:
    """
    Fetches station timetables and train stop sequences from ODPT.

    ODPT gives the same physical station a different id on every railway
    (``odpt.Station:JR-East.Yamanote.Tokyo`` vs ``odpt.Station:JR-East.ChuoRapid.Tokyo``).
    ``station_aliases`` maps (canonical station id, line id) to the ODPT id so the
    rest of the library can treat a transfer station as one station. Unmapped
    ids are passed through unchanged.

    Requests are blocking and run in a worker thread.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = ODPT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        station_aliases: Optional[Dict[Tuple[str, str], str]] = None,
        railway_ids: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Args:
            api_key: ODPT consumer key.
            base_url: API root.
            timeout: Per-request timeout in seconds.
            station_aliases: (station id, line id) -> ODPT station id.
            railway_ids: Display line name -> ODPT railway id, for identity lookups.
            session: Optional requests session to reuse.
        """
        if not api_key:
            raise ValueError("An ODPT API key is required")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._aliases = dict(station_aliases or {})
        self._canonical = {odpt_id: station_id for (station_id, _), odpt_id in self._aliases.items()}
        self._railway_ids = dict(railway_ids or {})
        self.session = session or requests.Session()

    async def fetch_station_timetable(
        self, station_id: str, line_id: str, calendar: CalendarType
    ) -> List[TimetableEntry]:
        payload = await self._request(
            "odpt:StationTimetable",
            {
                "odpt:station": self._aliases.get((station_id, line_id), station_id),
                "odpt:railway": line_id,
                "odpt:calendar": CALENDAR_IDS[calendar],
            },
        )

        entries: List[TimetableEntry] = []
        for timetable in payload:
            for obj in timetable.get("odpt:stationTimetableObject", []):
                departs = obj.get("odpt:departureTime") or obj.get("odpt:arrivalTime")
                train_id = obj.get("odpt:trainNumber") or _last_segment(obj.get("odpt:train"))
                if not departs or not train_id:
                    continue
                destinations = obj.get("odpt:destinationStation") or []
                entries.append(TimetableEntry(
                    train_id=train_id,
                    time=departs,
                    calendar=calendar,
                    line_id=line_id,
                    station_id=station_id,
                    destination=self._canonical_station(destinations[0]) if destinations else None,
                ))

        logger.debug(f"ODPT returned {len(entries)} departures for {station_id} on {line_id}")
        return entries

    async def fetch_train_stop_sequence(
        self, train_id: str, line_id: str, calendar: CalendarType
    ) -> Optional[TrainStopSequence]:
        payload = await self._request(
            "odpt:TrainTimetable",
            {
                "odpt:railway": line_id,
                "odpt:calendar": CALENDAR_IDS[calendar],
                "odpt:trainNumber": train_id,
            },
        )
        if not payload:
            return None

        stops: List[Stop] = []
        for obj in payload[0].get("odpt:trainTimetableObject", []):
            odpt_station = obj.get("odpt:departureStation") or obj.get("odpt:arrivalStation")
            if not odpt_station:
                continue
            stops.append(Stop(
                station_id=self._canonical_station(odpt_station),
                arrival_time=obj.get("odpt:arrivalTime"),
                departure_time=obj.get("odpt:departureTime"),
            ))
        return TrainStopSequence(train_id=train_id, line_id=line_id, calendar=calendar, stops=stops)

    async def resolve_station_identity(self, name: str, line_name: str) -> str:
        """
        Map a station name on a line to its canonical station id.

        Raises:
            StationNotFound: If ODPT knows no such station on the line.
            AmbiguousStation: If several stations match.
        """
        railway = line_name if line_name.startswith("odpt.Railway:") else self._railway_ids.get(line_name)
        if railway is None:
            raise StationNotFound(name, line_name)

        try:
            payload = await self._request("odpt:Station", {"dc:title": name, "odpt:railway": railway})
        except NoData:
            payload = []
        matches = sorted({item["owl:sameAs"] for item in payload if item.get("owl:sameAs")})
        if not matches:
            raise StationNotFound(name, line_name)
        if len(matches) > 1:
            raise AmbiguousStation(name, matches)
        return self._canonical_station(matches[0])

    async def _request(self, resource: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._get, resource, params)

    def _get(self, resource: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        url = f"{self.base_url}/{resource}"
        query = {"acl:consumerKey": self.api_key, **params}
        try:
            response = self.session.get(url, params=query, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Failed to fetch {resource}: {e}")
            raise NetworkFailure(f"{resource}: {e}") from e

        if response.status_code == 404:
            raise NoData(f"{resource} has no data for {params}")
        if response.status_code == 429:
            raise NetworkFailure(f"{resource}: rate limit exceeded")
        if response.status_code >= 400:
            raise NetworkFailure(f"{resource} returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            raise NetworkFailure(f"{resource} returned invalid JSON") from e
        if not isinstance(payload, list):
            raise NetworkFailure(f"{resource} returned {type(payload).__name__}, expected a list")
        return payload

    def _canonical_station(self, odpt_id: str) -> str:
        return self._canonical.get(odpt_id, odpt_id)


def _last_segment(value: Optional[str]) -> Optional[str]:
    """'odpt.Train:JR-East.Yamanote.301G' -> '301G'"""
    if not value:
        return None
    return value.rsplit(".", 1)[-1]
