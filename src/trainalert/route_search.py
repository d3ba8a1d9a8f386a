"""Route search over live timetables: same-line lookups and multi-leg transfers."""

import asyncio
import heapq
import itertools
import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Collection, Dict, FrozenSet, List, Optional, Sequence, Tuple, Union

from .errors import (
    DataUnavailable,
    DirectionMismatch,
    SearchSuperseded,
    TrainAlertError,
    UnsupportedRoute,
)
from .models import (
    CacheEntry,
    CalendarType,
    RouteResult,
    RouteSection,
    TimetableEntry,
    calendar_for_date,
)
from .station_graph import StationGraph
from .timetable_cache import TimetableCache
from .timeutil import resolve_clock, service_date_for

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESULTS = 10
DEFAULT_MAX_TRANSFERS = 3
DEFAULT_MAX_CANDIDATE_PATHS = 8
DEFAULT_OPTIONS_PER_PATH = 3
# A planning state may be settled more than once so alternative paths survive
MAX_STATE_VISITS = 2


class SearchState(str, Enum):
    IDLE = "idle"
    RESOLVING_DIRECT = "resolving_direct"
    RESOLVING_GRAPH = "resolving_graph"
    FETCHING = "fetching"
    RECONCILING = "reconciling"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS = {
    SearchState.IDLE: {SearchState.RESOLVING_DIRECT, SearchState.RESOLVING_GRAPH, SearchState.FAILED},
    SearchState.RESOLVING_DIRECT: {SearchState.FETCHING, SearchState.FAILED},
    SearchState.RESOLVING_GRAPH: {SearchState.FETCHING, SearchState.FAILED},
    SearchState.FETCHING: {SearchState.RECONCILING, SearchState.FAILED},
    SearchState.RECONCILING: {SearchState.DONE, SearchState.FAILED},
    SearchState.DONE: set(),
    SearchState.FAILED: set(),
}


@dataclass
class SearchOutcome:
    """Everything a search produced, including why it found nothing."""
    routes: List[RouteResult]
    state: SearchState
    generation: int
    failure: Optional[TrainAlertError] = None

    @property
    def ok(self) -> bool:
        return self.state is SearchState.DONE and bool(self.routes)


@dataclass(frozen=True)
class LegPlan:
    """A ride planned on the graph before any timetable is consulted."""
    line_id: str
    origin: str
    destination: str


@dataclass(frozen=True)
class PathPlan:
    legs: Tuple[LegPlan, ...]
    estimated_minutes: int

    @property
    def transfer_count(self) -> int:
        return len(self.legs) - 1


@dataclass(frozen=True)
class _PathState:
    station_id: str
    line_id: str
    index: int  # Position on the line, so loop lines with a repeated station stay unambiguous
    direction: int  # +1 along the canonical order, -1 against it
    transfers: int
    board_station: str
    legs: Tuple[LegPlan, ...] = ()
    lines_used: FrozenSet[str] = field(default_factory=frozenset)


class _SearchRequest:
    """Tracks one search through its states."""

    def __init__(self, generation: int, origin: str, destination: str, depart_after: datetime):
        self.generation = generation
        self.origin = origin
        self.destination = destination
        self.depart_after = depart_after
        self.state = SearchState.IDLE

    def advance(self, state: SearchState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid search transition {self.state.value} -> {state.value}")
        logger.debug(f"Search #{self.generation}: {self.state.value} -> {state.value}")
        self.state = state


Timetables = Dict[Tuple[str, str], Union[CacheEntry, DataUnavailable]]


class RouteSearchEngine:
    """
    Finds train routes between two stations.

    Stations sharing a line are searched in direct mode: trains listed in both
    station timetables are checked against their stop sequences to confirm they
    run from origin to destination. Other pairs are searched in graph mode:
    candidate paths are planned on the station graph and each leg is resolved
    with the direct procedure, leaving each transfer its minimum change time.

    A newer call to search() supersedes an older one still running.
    """

    def __init__(
        self,
        graph: StationGraph,
        cache: TimetableCache,
        max_results: int = DEFAULT_MAX_RESULTS,
        max_transfers: int = DEFAULT_MAX_TRANSFERS,
        max_candidate_paths: int = DEFAULT_MAX_CANDIDATE_PATHS,
        options_per_path: int = DEFAULT_OPTIONS_PER_PATH,
        holidays: Collection[date] = (),
    ):
        self.graph = graph
        self.cache = cache
        self.max_results = max_results
        self.max_transfers = max_transfers
        self.max_candidate_paths = max_candidate_paths
        self.options_per_path = options_per_path
        self.holidays = holidays
        self.latest: Optional[SearchOutcome] = None
        self._generation = 0
        self._current: Optional[asyncio.Future] = None

    @property
    def generation(self) -> int:
        return self._generation

    async def search(self, origin: str, destination: str, depart_after: datetime) -> List[RouteResult]:
        """
        Search routes departing at or after ``depart_after``.

        Returns:
            Ranked routes, at most ``max_results``. Empty when the stations share a
            line but no train runs between them.

        Raises:
            UnknownStation: If either station is not in the graph.
            DataUnavailable: If required timetables are missing in every calendar.
            UnsupportedRoute: If no cross-line path could be resolved.
            SearchSuperseded: If a newer search started before this one finished.
        """
        outcome = await self.search_detailed(origin, destination, depart_after)
        if isinstance(outcome.failure, (DataUnavailable, UnsupportedRoute)):
            raise outcome.failure
        return outcome.routes

    async def search_detailed(
        self, origin: str, destination: str, depart_after: datetime
    ) -> SearchOutcome:
        """Like search(), but reports failures in the outcome instead of raising them."""
        self._generation += 1
        generation = self._generation
        previous = self._current
        if previous is not None and not previous.done():
            logger.debug(f"Search #{generation} supersedes an in-flight search")
            previous.cancel()

        task = asyncio.ensure_future(self._run(origin, destination, depart_after, generation))
        self._current = task
        try:
            outcome = await task
        except asyncio.CancelledError:
            if generation != self._generation:
                raise SearchSuperseded(generation, self._generation) from None
            raise
        if generation != self._generation:
            logger.debug(f"Discarding stale result of search #{generation}")
            raise SearchSuperseded(generation, self._generation)
        self.latest = outcome
        return outcome

    def plan_paths(self, origin: str, destination: str) -> List[PathPlan]:
        """
        Plan candidate line paths from origin to destination, cheapest first.

        Costs are estimated ride minutes plus transfer times; at most
        ``max_transfers`` changes and ``max_candidate_paths`` paths.
        """
        graph = self.graph
        graph.station(destination)
        counter = itertools.count()
        heap: List[Tuple[int, int, _PathState]] = []

        for line_id in graph.lines_for(origin):
            index = graph.line(line_id).index_of(origin)
            for direction in (1, -1):
                state = _PathState(origin, line_id, index, direction, 0, origin, (), frozenset([line_id]))
                heapq.heappush(heap, (0, next(counter), state))

        visits: Dict[tuple, int] = {}
        plans: List[PathPlan] = []
        seen = set()

        while heap and len(plans) < self.max_candidate_paths:
            cost, _, state = heapq.heappop(heap)
            key = (state.station_id, state.line_id, state.direction, state.transfers)
            if visits.get(key, 0) >= MAX_STATE_VISITS:
                continue
            visits[key] = visits.get(key, 0) + 1

            if state.station_id == destination:
                legs = state.legs + (LegPlan(state.line_id, state.board_station, destination),)
                if legs not in seen:
                    seen.add(legs)
                    plans.append(PathPlan(legs, cost))
                continue

            line = graph.line(state.line_id)
            next_index = state.index + state.direction
            if 0 <= next_index < len(line.station_ids):
                moved = replace(state, station_id=line.station_ids[next_index], index=next_index)
                heapq.heappush(heap, (cost + graph.minutes_per_station, next(counter), moved))

            if state.station_id == state.board_station or state.transfers >= self.max_transfers:
                continue
            leg = LegPlan(state.line_id, state.board_station, state.station_id)
            for neighbor in graph.neighbors(state.station_id, exclude_line=state.line_id):
                edge = neighbor.transfer
                if edge is None or edge.to_line in state.lines_used:
                    continue
                index = neighbor.line.index_of(state.station_id)
                for direction in (1, -1):
                    changed = _PathState(
                        station_id=state.station_id,
                        line_id=edge.to_line,
                        index=index,
                        direction=direction,
                        transfers=state.transfers + 1,
                        board_station=state.station_id,
                        legs=state.legs + (leg,),
                        lines_used=state.lines_used | {edge.to_line},
                    )
                    heapq.heappush(heap, (cost + edge.minutes, next(counter), changed))

        logger.debug(f"Planned {len(plans)} candidate paths from {origin} to {destination}")
        return plans

    async def _run(
        self, origin: str, destination: str, depart_after: datetime, generation: int
    ) -> SearchOutcome:
        self.graph.station(origin)
        self.graph.station(destination)
        if origin == destination:
            raise ValueError("Origin and destination are the same station")

        request = _SearchRequest(generation, origin, destination, depart_after)
        service_date = service_date_for(depart_after)
        calendar = calendar_for_date(service_date, self.holidays)
        common = self.graph.common_lines(origin, destination)

        try:
            if common:
                request.advance(SearchState.RESOLVING_DIRECT)
                routes, failure = await self._search_direct(request, common, calendar, service_date)
            else:
                request.advance(SearchState.RESOLVING_GRAPH)
                routes, failure = await self._search_graph(request, calendar, service_date)
        except DataUnavailable as e:
            request.advance(SearchState.FAILED)
            return SearchOutcome([], request.state, generation, e.with_supported_lines(self.graph.supported_lines()))
        except UnsupportedRoute as e:
            request.advance(SearchState.FAILED)
            return SearchOutcome([], request.state, generation, e)

        request.advance(SearchState.DONE)
        logger.info(
            f"Search #{generation} {origin} -> {destination} after {depart_after:%H:%M} "
            f"({calendar.value}): {len(routes)} routes"
        )
        return SearchOutcome(routes, request.state, generation, failure)

    async def _search_direct(
        self,
        request: _SearchRequest,
        line_ids: Sequence[str],
        calendar: CalendarType,
        service_date: date,
    ) -> Tuple[List[RouteResult], Optional[TrainAlertError]]:
        origin, destination = request.origin, request.destination
        request.advance(SearchState.FETCHING)
        pairs = [(station, line_id) for line_id in line_ids for station in (origin, destination)]
        timetables = await self._fetch_timetables(pairs, calendar)
        request.advance(SearchState.RECONCILING)

        sections: List[RouteSection] = []
        unavailable: List[DataUnavailable] = []
        mismatch: Optional[DirectionMismatch] = None
        for line_id in line_ids:
            try:
                origin_entry, destination_entry = self._leg_timetables(timetables, line_id, origin, destination)
                sections.extend(
                    await self._resolve_leg(
                        line_id, origin, destination, request.depart_after,
                        origin_entry, destination_entry, service_date, self.max_results,
                    )
                )
            except DataUnavailable as e:
                unavailable.append(e)
            except DirectionMismatch as e:
                mismatch = e

        if not sections and len(unavailable) == len(line_ids):
            raise unavailable[0]
        sections = self._prefer_actual(sections)
        sections.sort(key=lambda s: (s.departure_time, s.arrival_time))
        routes = [RouteResult([section]) for section in sections[:self.max_results]]
        return routes, (mismatch if not routes else None)

    async def _search_graph(
        self, request: _SearchRequest, calendar: CalendarType, service_date: date
    ) -> Tuple[List[RouteResult], Optional[TrainAlertError]]:
        origin, destination = request.origin, request.destination
        supported = self.graph.supported_lines()
        plans = self.plan_paths(origin, destination)
        if not plans:
            logger.warning(f"No path within {self.max_transfers} transfers from {origin} to {destination}")
            raise UnsupportedRoute(origin, destination, supported)

        request.advance(SearchState.FETCHING)
        pairs = [
            (station, leg.line_id)
            for plan in plans
            for leg in plan.legs
            for station in (leg.origin, leg.destination)
        ]
        timetables = await self._fetch_timetables(pairs, calendar)
        request.advance(SearchState.RECONCILING)

        resolved = await asyncio.gather(
            *(self._resolve_path(plan, timetables, request.depart_after, service_date) for plan in plans)
        )
        routes = self._dedupe([route for group in resolved for route in group])
        if not routes:
            missing = [t for t in timetables.values() if isinstance(t, DataUnavailable)]
            blocked = [
                plan for plan in plans
                if any(
                    isinstance(timetables.get((station, leg.line_id)), DataUnavailable)
                    for leg in plan.legs
                    for station in (leg.origin, leg.destination)
                )
            ]
            if missing and len(blocked) == len(plans):
                raise missing[0]
            logger.warning(f"None of {len(plans)} candidate paths from {origin} to {destination} resolved")
            raise UnsupportedRoute(origin, destination, supported)

        routes.sort(key=lambda r: (r.is_estimated_time, r.arrival_time, r.transfer_count, r.departure_time))
        return routes[:self.max_results], None

    async def _resolve_path(
        self, plan: PathPlan, timetables: Timetables, depart_after: datetime, service_date: date
    ) -> List[RouteResult]:
        first = plan.legs[0]
        try:
            origin_entry, destination_entry = self._leg_timetables(
                timetables, first.line_id, first.origin, first.destination
            )
            options = await self._resolve_leg(
                first.line_id, first.origin, first.destination, depart_after,
                origin_entry, destination_entry, service_date, self.options_per_path,
            )
        except (DataUnavailable, DirectionMismatch) as e:
            logger.debug(f"Discarding path {self._describe(plan)}: {e}")
            return []

        chains = await asyncio.gather(
            *(self._chain(plan, option, timetables, service_date) for option in options)
        )
        return [RouteResult(sections) for sections in chains if sections]

    async def _chain(
        self, plan: PathPlan, first: RouteSection, timetables: Timetables, service_date: date
    ) -> Optional[List[RouteSection]]:
        sections = [first]
        for leg in plan.legs[1:]:
            previous = sections[-1]
            ready_at = previous.arrival_time + timedelta(minutes=self.graph.transfer_time(leg.origin))
            try:
                origin_entry, destination_entry = self._leg_timetables(
                    timetables, leg.line_id, leg.origin, leg.destination
                )
                resolved = await self._resolve_leg(
                    leg.line_id, leg.origin, leg.destination, ready_at,
                    origin_entry, destination_entry, service_date, 1,
                )
            except (DataUnavailable, DirectionMismatch) as e:
                logger.debug(f"Leg {leg.origin} -> {leg.destination} on {leg.line_id} unresolved: {e}")
                return None
            if not resolved:
                return None
            sections.append(resolved[0])
        return sections

    async def _resolve_leg(
        self,
        line_id: str,
        origin: str,
        destination: str,
        depart_after: datetime,
        origin_entry: CacheEntry,
        destination_entry: CacheEntry,
        service_date: date,
        limit: int,
    ) -> List[RouteSection]:
        """
        Resolve trains running origin -> destination on one line.

        Returns at most ``limit`` sections by departure. Estimated sections are
        only returned when no train could be confirmed from its stop sequence.

        Raises:
            DirectionMismatch: If every shared train runs the other way.
        """
        tz = depart_after.tzinfo
        at_destination = {entry.train_id: entry for entry in destination_entry.entries}
        candidates = sorted(
            (
                entry for entry in origin_entry.entries
                if entry.train_id in at_destination
                and resolve_clock(service_date, entry.time, tz) >= depart_after
            ),
            key=lambda entry: entry.service_minutes,
        )
        if not candidates:
            logger.debug(
                f"No common trains {origin} -> {destination} on {line_id} after {depart_after:%H:%M}"
            )
            return []

        actual: List[RouteSection] = []
        estimated: List[RouteSection] = []
        mismatches = 0
        examined = 0
        # Shared trains include both directions; examine in batches until enough confirm
        for start in range(0, len(candidates), limit):
            batch = candidates[start:start + limit]
            results = await asyncio.gather(
                *(
                    self._resolve_train(entry, at_destination[entry.train_id], line_id,
                                        origin, destination, service_date, tz)
                    for entry in batch
                )
            )
            for result in results:
                examined += 1
                if isinstance(result, DirectionMismatch):
                    mismatches += 1
                    logger.debug(str(result))
                elif result.departure_time < depart_after:
                    # Stop sequence disagrees with the station timetable
                    logger.debug(f"Train {result.train_id} leaves {origin} before {depart_after:%H:%M}")
                elif result.is_actual_time:
                    actual.append(result)
                else:
                    estimated.append(result)
            if len(actual) >= limit:
                break

        if examined and mismatches == examined:
            raise DirectionMismatch(candidates[0].train_id, origin, destination)
        sections = actual or estimated
        sections.sort(key=lambda s: s.departure_time)
        return sections[:limit]

    async def _resolve_train(
        self,
        entry: TimetableEntry,
        destination_entry: TimetableEntry,
        line_id: str,
        origin: str,
        destination: str,
        service_date: date,
        tz,
    ) -> Union[RouteSection, DirectionMismatch]:
        sequence = await self.cache.get_stop_sequence(entry.train_id, line_id, entry.calendar)
        if sequence is None:
            return self._estimate_section(entry, destination_entry, line_id, origin, destination, service_date, tz)

        stops = sequence.between(origin, destination)
        if stops is None or stops[0].is_passing or stops[-1].is_passing:
            return DirectionMismatch(entry.train_id, origin, destination)

        departure = resolve_clock(service_date, stops[0].departure_time or stops[0].arrival_time, tz)
        arrival = resolve_clock(service_date, stops[-1].arrival_time or stops[-1].departure_time, tz)
        if departure > arrival:
            return DirectionMismatch(entry.train_id, origin, destination)

        return RouteSection(
            departure_station=origin,
            arrival_station=destination,
            line_id=line_id,
            departure_time=departure,
            arrival_time=arrival,
            train_id=entry.train_id,
            intermediate_stops=[
                self._station_name(stop.station_id, stop.name) for stop in stops[1:-1] if not stop.is_passing
            ],
            stops=list(stops),
            is_actual_time=True,
            destination=entry.destination,
        )

    def _estimate_section(
        self,
        entry: TimetableEntry,
        destination_entry: TimetableEntry,
        line_id: str,
        origin: str,
        destination: str,
        service_date: date,
        tz,
    ) -> Union[RouteSection, DirectionMismatch]:
        """Last resort when a train's stop sequence is unavailable."""
        departure = resolve_clock(service_date, entry.time, tz)
        later = resolve_clock(service_date, destination_entry.time, tz)
        if later < departure:
            # The train reaches the destination first, so it runs the other way
            return DirectionMismatch(entry.train_id, origin, destination)
        if later == departure:
            later = departure + timedelta(minutes=self.graph.estimated_minutes(line_id, origin, destination))
        between = self.graph.stations_between(line_id, origin, destination)
        return RouteSection(
            departure_station=origin,
            arrival_station=destination,
            line_id=line_id,
            departure_time=departure,
            arrival_time=later,
            train_id=entry.train_id,
            intermediate_stops=[self._station_name(sid) for sid in between[1:-1]],
            is_actual_time=False,
            destination=entry.destination,
        )

    async def _fetch_timetables(
        self, pairs: Sequence[Tuple[str, str]], calendar: CalendarType
    ) -> Timetables:
        """Fetch every (station, line) timetable concurrently and join."""
        unique = list(dict.fromkeys(pairs))
        results = await asyncio.gather(
            *(self.cache.get_entry(station, line_id, calendar) for station, line_id in unique),
            return_exceptions=True,
        )
        timetables: Timetables = {}
        for pair, result in zip(unique, results):
            if isinstance(result, BaseException) and not isinstance(result, DataUnavailable):
                raise result
            timetables[pair] = result
        logger.debug(f"Fetched {len(unique)} timetables for {calendar.value}")
        return timetables

    @staticmethod
    def _leg_timetables(
        timetables: Timetables, line_id: str, origin: str, destination: str
    ) -> Tuple[CacheEntry, CacheEntry]:
        origin_entry = timetables[(origin, line_id)]
        destination_entry = timetables[(destination, line_id)]
        if isinstance(origin_entry, DataUnavailable):
            raise origin_entry
        if isinstance(destination_entry, DataUnavailable):
            raise destination_entry
        return origin_entry, destination_entry

    @staticmethod
    def _prefer_actual(sections: List[RouteSection]) -> List[RouteSection]:
        actual = [s for s in sections if s.is_actual_time]
        return actual or sections

    @staticmethod
    def _dedupe(routes: List[RouteResult]) -> List[RouteResult]:
        unique: Dict[tuple, RouteResult] = {}
        for route in routes:
            signature = tuple(
                (s.line_id, s.train_id, s.departure_station, s.departure_time) for s in route.sections
            )
            unique.setdefault(signature, route)
        return list(unique.values())

    def _station_name(self, station_id: str, name: Optional[str] = None) -> str:
        if name:
            return name
        if self.graph.has_station(station_id):
            return self.graph.station(station_id).name
        return station_id

    @staticmethod
    def _describe(plan: PathPlan) -> str:
        return " / ".join(f"{leg.origin}-{leg.destination} ({leg.line_id})" for leg in plan.legs)
