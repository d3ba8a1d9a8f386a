"""Turns a route and alert settings into absolute notification times."""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Tuple

from .errors import PastTrigger
from .models import (
    AlertConfig,
    NotificationKind,
    NotificationPoint,
    RouteResult,
    RouteSection,
    TriggerMode,
)
from .station_graph import StationGraph
from .timeutil import resolve_clock, service_date_for

logger = logging.getLogger(__name__)

DEPARTURE_REMINDER_MINUTES = 2


@dataclass
class ScheduleDiff:
    """What to cancel and what to add when a schedule is regenerated."""
    cancel: List[str]
    add: List[NotificationPoint]

    @property
    def is_empty(self) -> bool:
        return not self.cancel and not self.add


class NotificationScheduler:
    """
    Computes the notification points for an alert on a route.

    Points are:
    - a departure reminder two minutes before the first train leaves,
    - one transfer point per change of line (if enabled),
    - station countdown points while approaching the destination (snooze),
    - the arrival point, ``lead_minutes`` before arrival or on proximity.

    Points whose time has already passed are dropped.
    """

    def __init__(
        self,
        graph: Optional[StationGraph] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            graph: Used to interpolate countdown times on estimated sections.
            clock: Returns the current time; defaults to the wall clock in the
                route's timezone.
        """
        self.graph = graph
        self._clock = clock

    def schedule_notifications(
        self, config: AlertConfig, route: RouteResult, now: Optional[datetime] = None
    ) -> List[NotificationPoint]:
        """
        Compute every future notification point for a route.

        Returns:
            Points in firing order; proximity-triggered points come last.
        """
        if not config.active:
            logger.debug(f"Alert {config.alert_id} is inactive; nothing to schedule")
            return []

        now = now or self._now(route)
        last = route.sections[-1]
        points: List[NotificationPoint] = []

        if config.departure_reminder:
            points.append(NotificationPoint(
                station_id=route.departure_station,
                trigger_time=route.departure_time - timedelta(minutes=DEPARTURE_REMINDER_MINUTES),
                kind=NotificationKind.DEPARTURE,
                config=config,
            ))

        if config.transfer_notifications:
            for section in route.sections[:-1]:
                points.append(NotificationPoint(
                    station_id=section.arrival_station,
                    trigger_time=section.arrival_time,
                    kind=NotificationKind.TRANSFER,
                    config=config,
                ))

        points.extend(self._countdown_points(config, last))

        if config.trigger_mode is TriggerMode.TIME:
            points.append(NotificationPoint(
                station_id=last.arrival_station,
                trigger_time=last.arrival_time - timedelta(minutes=config.lead_minutes),
                kind=NotificationKind.ARRIVAL,
                config=config,
            ))
        else:
            # Proximity is evaluated by the location layer; record the intent only
            points.append(NotificationPoint(
                station_id=last.arrival_station,
                trigger_time=None,
                kind=NotificationKind.ARRIVAL,
                config=config,
                proximity_radius_m=config.proximity_radius_m,
            ))

        scheduled = self._drop_past(points, now, route.arrival_time)
        logger.debug(f"Scheduled {len(scheduled)} of {len(points)} points for alert {config.alert_id}")
        return scheduled

    def apply_delay(
        self,
        points: Iterable[NotificationPoint],
        delay_minutes: int,
        arrival_time: datetime,
        now: Optional[datetime] = None,
        single_section: bool = True,
    ) -> List[NotificationPoint]:
        """
        Shift the points that belong to the delayed final train.

        Arrival and countdown points always move. The departure reminder moves
        only when the final train is also the first one; transfer points stay
        with the earlier trains they were computed from.

        Args:
            points: Previously scheduled points.
            delay_minutes: Current delay of the final train.
            arrival_time: Scheduled arrival at the destination.
            now: Current time.
            single_section: Whether the route is a single train.
        """
        delay = timedelta(minutes=delay_minutes)
        kinds = {NotificationKind.ARRIVAL, NotificationKind.STATION_COUNTDOWN}
        if single_section:
            kinds.add(NotificationKind.DEPARTURE)

        shifted = []
        moved = 0
        for point in points:
            if point.trigger_time is not None and point.kind in kinds:
                point = replace(point, trigger_time=point.trigger_time + delay)
                moved += 1
            shifted.append(point)
        now = now or (self._clock() if self._clock else datetime.now(arrival_time.tzinfo))
        if delay_minutes:
            logger.info(f"Shifted {moved} of {len(shifted)} notification points by {delay_minutes} min")
        return self._drop_past(shifted, now, arrival_time + delay)

    @staticmethod
    def diff_schedules(
        previous: Iterable[NotificationPoint], current: Iterable[NotificationPoint]
    ) -> ScheduleDiff:
        """Compare two schedules by identifier and trigger time."""
        before = {point.identifier: point for point in previous}
        after = {point.identifier: point for point in current}
        cancel = [
            identifier for identifier, point in before.items()
            if identifier not in after or after[identifier].trigger_time != point.trigger_time
        ]
        add = [
            point for identifier, point in after.items()
            if identifier not in before or before[identifier].trigger_time != point.trigger_time
        ]
        return ScheduleDiff(cancel=cancel, add=add)

    def _countdown_points(self, config: AlertConfig, section: RouteSection) -> List[NotificationPoint]:
        thresholds = config.snooze.thresholds
        if not thresholds:
            return []
        calls = self._calls(section)
        if not calls:
            logger.debug(f"No stop list for {section.departure_station} -> {section.arrival_station}")
            return []

        destination_index = len(calls) - 1
        points = []
        for remaining in thresholds:
            index = destination_index - remaining
            if index < 0:
                logger.debug(f"Route has fewer than {remaining} stations before arrival")
                continue
            station_id, at = calls[index]
            points.append(NotificationPoint(
                station_id=station_id,
                trigger_time=at,
                kind=NotificationKind.STATION_COUNTDOWN,
                config=config,
                stations_remaining=remaining,
            ))
        return points

    def _calls(self, section: RouteSection) -> List[Tuple[str, datetime]]:
        """Stations the train stops at on a section, with the time it leaves each."""
        if section.stops:
            service_date = service_date_for(section.departure_time)
            tz = section.departure_time.tzinfo
            calls = []
            for stop in section.stops:
                if stop.is_passing:
                    continue
                at = resolve_clock(service_date, stop.departure_time or stop.arrival_time, tz)
                calls.append((stop.station_id, at))
            return calls

        if self.graph is None:
            return []
        # Estimated section: spread the ride evenly over the stations in between
        station_ids = self.graph.stations_between(
            section.line_id, section.departure_station, section.arrival_station
        )
        hops = len(station_ids) - 1
        step = (section.arrival_time - section.departure_time) / hops
        return [(sid, section.departure_time + step * i) for i, sid in enumerate(station_ids)]

    @staticmethod
    def _drop_past(
        points: List[NotificationPoint], now: datetime, arrival_time: datetime
    ) -> List[NotificationPoint]:
        kept = []
        for point in points:
            try:
                _ensure_future(point, now, arrival_time)
            except PastTrigger as e:
                logger.debug(f"Dropping notification: {e}")
                continue
            kept.append(point)
        kept.sort(key=lambda p: (p.trigger_time is None, p.trigger_time or arrival_time))
        return kept

    def _now(self, route: RouteResult) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(route.departure_time.tzinfo)


def _ensure_future(point: NotificationPoint, now: datetime, arrival_time: datetime) -> None:
    """Raise PastTrigger if a point could no longer fire."""
    if point.trigger_time is None:
        if arrival_time <= now:
            raise PastTrigger(point.identifier, arrival_time)
    elif point.trigger_time <= now:
        raise PastTrigger(point.identifier, point.trigger_time)
