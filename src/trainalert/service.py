"""Main TrainAlert service class."""

import logging
from datetime import datetime, time
from typing import List, Optional, Union

from .config import TrainAlertConfig
from .models import AlertConfig, NotificationPoint, RouteResult, Weekday
from .notification_scheduler import NotificationScheduler
from .odpt_client import OdptTimetableSource
from .realtime_client import RealtimeDelayClient
from .reference_loader import ReferenceDataLoader
from .repeat_schedule import RepeatScheduleEngine
from .route_search import RouteSearchEngine
from .station_graph import StationGraph
from .station_identity import StationResolver
from .timetable_cache import TimetableCache
from .timetable_source import TimetableSource

logger = logging.getLogger(__name__)


class TrainAlertService:
    """
    Finds train routes and plans the alerts that wake a rider before their stop.

    This class provides methods to:
    - Search routes between two stations, by id or by name
    - Compute notification points for an alert on a route
    - Compute the next firing of a repeating alert
    - Shift scheduled points by a reported train delay
    """

    def __init__(
        self,
        graph: StationGraph,
        source: TimetableSource,
        config: Optional[TrainAlertConfig] = None,
        delay_client: Optional[RealtimeDelayClient] = None,
    ):
        """
        Initialize the service.

        Args:
            graph: Station graph, usually from ReferenceDataLoader.build_graph().
            source: Where timetables come from.
            config: Cache and search settings; defaults when omitted.
            delay_client: Optional realtime delay feed.
        """
        self.config = config or TrainAlertConfig()
        self.graph = graph
        self.source = source
        self.cache = TimetableCache(
            source,
            ttl=self.config.timetable_ttl,
            fetch_timeout=self.config.fetch_timeout,
            retry_budget=self.config.retry_budget,
            empty_backoff=self.config.empty_backoff,
        )
        self.engine = RouteSearchEngine(
            graph,
            self.cache,
            max_results=self.config.max_results,
            max_transfers=self.config.max_transfers,
            holidays=set(self.config.holidays),
        )
        self.scheduler = NotificationScheduler(graph)
        self.repeats = RepeatScheduleEngine()
        self.resolver = StationResolver(source, graph)
        self.delay_client = delay_client

    @classmethod
    def from_config(cls, config: TrainAlertConfig) -> "TrainAlertService":
        """
        Build a service from configuration: GTFS reference data, ODPT
        timetables and, when feeds are configured, realtime delays.

        Raises:
            ValueError: If no GTFS source is configured.
        """
        loader = ReferenceDataLoader()
        if config.gtfs_directory:
            loader.load_from_files(config.gtfs_directory)
        elif config.gtfs_url:
            loader.load_from_url(config.gtfs_url)
        else:
            raise ValueError("Configure gtfs_directory or gtfs_url to build the station graph")
        graph = loader.build_graph(
            default_transfer_minutes=config.default_transfer_minutes,
            minutes_per_station=config.minutes_per_station,
        )
        loader.clear()

        source = OdptTimetableSource(
            config.odpt_api_key,
            base_url=config.odpt_base_url,
            timeout=config.odpt_timeout,
            station_aliases=config.station_aliases,
            railway_ids=config.railway_ids,
        )
        delay_client = None
        if config.realtime_feed_urls:
            delay_client = RealtimeDelayClient(
                config.realtime_feed_urls,
                cache_ttl=config.realtime_cache_ttl,
                trip_ids=config.realtime_trip_ids,
                train_number_pattern=config.realtime_train_number_pattern,
            )
        return cls(graph, source, config=config, delay_client=delay_client)

    async def search(self, origin: str, destination: str, depart_after: datetime) -> List[RouteResult]:
        """
        Search routes between two station ids.

        Args:
            origin: Origin station id.
            destination: Destination station id.
            depart_after: Earliest departure, timezone-aware.

        Returns:
            Ranked routes; see RouteSearchEngine.search().
        """
        routes = await self.engine.search(origin, destination, depart_after)
        logger.info(f"Found {len(routes)} routes from {origin} to {destination}")
        return routes

    async def search_by_name(
        self,
        origin_name: str,
        origin_line: str,
        destination_name: str,
        destination_line: str,
        depart_after: datetime,
    ) -> List[RouteResult]:
        """Search routes between stations given as (name, line name) pairs."""
        origin = await self.resolver.resolve(origin_name, origin_line)
        destination = await self.resolver.resolve(destination_name, destination_line)
        return await self.search(origin, destination, depart_after)

    def schedule_notifications(
        self, config: AlertConfig, route: RouteResult, now: Optional[datetime] = None
    ) -> List[NotificationPoint]:
        """Future notification points of an alert on a route."""
        return self.scheduler.schedule_notifications(config, route, now)

    def next_occurrence(
        self,
        config: Union[AlertConfig, Weekday, int],
        reference_time_of_day: time,
        now: datetime,
    ) -> Optional[datetime]:
        """Next firing time of a repeating alert, or None."""
        return self.repeats.next_occurrence(config, reference_time_of_day, now)

    def apply_delays(
        self,
        points: List[NotificationPoint],
        route: RouteResult,
        now: Optional[datetime] = None,
    ) -> List[NotificationPoint]:
        """
        Shift notification points by the delay of the route's final train.

        Only points that belong to that train move; see
        NotificationScheduler.apply_delay(). Points are returned unchanged
        when no delay feed is configured or the train is not reported.
        """
        if self.delay_client is None:
            return list(points)
        train_id = route.sections[-1].train_id
        delay = self.delay_client.get_delay_minutes(train_id)
        if not delay:
            return list(points)
        logger.info(f"Train {train_id} is running {delay} min late")
        return self.scheduler.apply_delay(
            points, delay, route.arrival_time, now, single_section=len(route.sections) == 1
        )

    def cleanup(self) -> None:
        """Drop cached timetables, feeds and resolved stations."""
        self.cache.clear()
        self.resolver.forget()
        if self.delay_client is not None:
            self.delay_client.clear_cache()
        logger.debug("Cleared cached data")
