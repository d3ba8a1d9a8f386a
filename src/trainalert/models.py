"""Data models for TrainAlert."""

import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum, IntFlag
from typing import Callable, Collection, List, Optional, Tuple

from .timeutil import service_minutes


class CalendarType(str, Enum):
    """Service-pattern variant a timetable belongs to."""
    WEEKDAY = "weekday"
    SATURDAY = "saturday"
    HOLIDAY = "holiday"
    SATURDAY_HOLIDAY = "saturday_holiday"  # Combined variant used by many operators

    def fallback_order(self) -> List["CalendarType"]:
        """This calendar first, then weekday, then the saturday-or-holiday variants."""
        order = [self]
        for calendar in CALENDAR_PRIORITY:
            if calendar not in order:
                order.append(calendar)
        return order


CALENDAR_PRIORITY = [
    CalendarType.WEEKDAY,
    CalendarType.SATURDAY_HOLIDAY,
    CalendarType.SATURDAY,
    CalendarType.HOLIDAY,
]


def calendar_for_date(service_date: date, holidays: Collection[date] = ()) -> CalendarType:
    """Map a service date onto the calendar type its timetable uses."""
    if service_date in holidays or service_date.weekday() == 6:
        return CalendarType.HOLIDAY
    if service_date.weekday() == 5:
        return CalendarType.SATURDAY
    return CalendarType.WEEKDAY


@dataclass
class Station:
    """Represents a physical station shared by every line that stops there."""
    station_id: str
    name: str
    latitude: float
    longitude: float
    lines: List[str] = field(default_factory=list)  # Line IDs served at this station


@dataclass
class Line:
    """A line with its stations in one canonical direction."""
    line_id: str
    name: str
    station_ids: List[str]
    operator: Optional[str] = None

    def index_of(self, station_id: str) -> Optional[int]:
        try:
            return self.station_ids.index(station_id)
        except ValueError:
            return None

    def reversed(self) -> "Line":
        """The same line in the opposite direction."""
        return replace(self, station_ids=list(reversed(self.station_ids)))


@dataclass(frozen=True)
class TransferEdge:
    """A change between two lines at one station."""
    station_id: str
    from_line: str
    to_line: str
    minutes: int  # Minimum walk/dwell time


@dataclass(frozen=True)
class TimetableEntry:
    """One scheduled departure of a train from a station."""
    train_id: str
    time: str  # "HH:MM" as published
    calendar: CalendarType
    line_id: str
    station_id: str
    destination: Optional[str] = None

    @property
    def service_minutes(self) -> int:
        return service_minutes(self.time)


@dataclass(frozen=True)
class Stop:
    """A station in a train's stop sequence."""
    station_id: str
    arrival_time: Optional[str] = None
    departure_time: Optional[str] = None
    name: Optional[str] = None

    @property
    def is_passing(self) -> bool:
        """Listed without any time: the train runs through without stopping."""
        return self.arrival_time is None and self.departure_time is None


@dataclass
class TrainStopSequence:
    """Ordered stops of one train, used for direction and true elapsed time."""
    train_id: str
    line_id: str
    calendar: CalendarType
    stops: List[Stop]

    def index_of(self, station_id: str) -> Optional[int]:
        for index, stop in enumerate(self.stops):
            if stop.station_id == station_id:
                return index
        return None

    def between(self, origin: str, destination: str) -> Optional[List[Stop]]:
        """
        Stops from origin to destination inclusive.

        Returns None unless the train calls at both and reaches the destination
        after the origin.
        """
        origin_index = self.index_of(origin)
        destination_index = self.index_of(destination)
        if origin_index is None or destination_index is None:
            return None
        if destination_index <= origin_index:
            return None
        return self.stops[origin_index:destination_index + 1]


@dataclass
class CacheEntry:
    """Timetable entries cached for one (station, line, calendar) key."""
    station_id: str
    line_id: str
    calendar: CalendarType  # The calendar that actually produced the entries
    entries: List[TimetableEntry]
    fetched_at: float
    ttl: float

    @property
    def key(self) -> Tuple[str, str, CalendarType]:
        return (self.station_id, self.line_id, self.calendar)

    def is_expired(self, now: float) -> bool:
        return now - self.fetched_at >= self.ttl


@dataclass
class RouteSection:
    """One uninterrupted ride on a single line."""
    departure_station: str
    arrival_station: str
    line_id: str
    departure_time: datetime
    arrival_time: datetime
    train_id: Optional[str] = None
    intermediate_stops: List[str] = field(default_factory=list)  # Station names between the two ends
    stops: List[Stop] = field(default_factory=list)  # Slice of the stop sequence, ends included
    is_actual_time: bool = True
    destination: Optional[str] = None

    def __post_init__(self):
        if self.departure_time > self.arrival_time:
            raise ValueError(
                f"Section {self.departure_station} -> {self.arrival_station} "
                f"departs {self.departure_time} after it arrives {self.arrival_time}"
            )

    @property
    def duration_minutes(self) -> int:
        return int((self.arrival_time - self.departure_time).total_seconds() // 60)


@dataclass
class RouteResult:
    """A complete journey made of one or more sections."""
    sections: List[RouteSection]

    def __post_init__(self):
        if not self.sections:
            raise ValueError("A route needs at least one section")
        for previous, following in zip(self.sections, self.sections[1:]):
            if previous.arrival_station != following.departure_station:
                raise ValueError(
                    f"Route breaks between {previous.arrival_station} "
                    f"and {following.departure_station}"
                )

    @property
    def transfer_count(self) -> int:
        return len(self.sections) - 1

    @property
    def departure_station(self) -> str:
        return self.sections[0].departure_station

    @property
    def arrival_station(self) -> str:
        return self.sections[-1].arrival_station

    @property
    def departure_time(self) -> datetime:
        return self.sections[0].departure_time

    @property
    def arrival_time(self) -> datetime:
        return self.sections[-1].arrival_time

    @property
    def duration_minutes(self) -> int:
        return int((self.arrival_time - self.departure_time).total_seconds() // 60)

    @property
    def is_actual_time(self) -> bool:
        return all(section.is_actual_time for section in self.sections)

    @property
    def is_estimated_time(self) -> bool:
        return not self.is_actual_time

    @property
    def transfer_stations(self) -> List[str]:
        return [section.arrival_station for section in self.sections[:-1]]

    def respects_transfer_times(self, transfer_time: Callable[[str], int]) -> bool:
        """True if every change leaves at least the station's transfer time."""
        for previous, following in zip(self.sections, self.sections[1:]):
            buffer = following.departure_time - previous.arrival_time
            if buffer.total_seconds() < transfer_time(previous.arrival_station) * 60:
                return False
        return True


class Weekday(IntFlag):
    """Repeat-day bits, aligned with date.weekday() (Monday == 0)."""
    NONE = 0
    MONDAY = 1 << 0
    TUESDAY = 1 << 1
    WEDNESDAY = 1 << 2
    THURSDAY = 1 << 3
    FRIDAY = 1 << 4
    SATURDAY = 1 << 5
    SUNDAY = 1 << 6

    @classmethod
    def for_date(cls, day: date) -> "Weekday":
        return cls(1 << day.weekday())


WEEKDAYS = Weekday.MONDAY | Weekday.TUESDAY | Weekday.WEDNESDAY | Weekday.THURSDAY | Weekday.FRIDAY
WEEKENDS = Weekday.SATURDAY | Weekday.SUNDAY
EVERY_DAY = WEEKDAYS | WEEKENDS


class RepeatPattern(str, Enum):
    """Named repeat presets."""
    NONE = "none"
    DAILY = "daily"
    WEEKDAYS = "weekdays"
    WEEKENDS = "weekends"
    CUSTOM = "custom"

    def days(self, custom: Weekday = Weekday.NONE) -> Weekday:
        if self is RepeatPattern.DAILY:
            return EVERY_DAY
        if self is RepeatPattern.WEEKDAYS:
            return WEEKDAYS
        if self is RepeatPattern.WEEKENDS:
            return WEEKENDS
        if self is RepeatPattern.CUSTOM:
            return custom
        return Weekday.NONE


class TriggerMode(str, Enum):
    TIME = "time"
    PROXIMITY = "proximity"


@dataclass(frozen=True)
class SnoozePolicy:
    """Repeated countdown alerts as the train approaches the destination."""
    enabled: bool = False
    start_stations_before: int = 3

    @property
    def thresholds(self) -> List[int]:
        """Stations-remaining values to alert at, furthest first (e.g. 3, 2, 1)."""
        if not self.enabled:
            return []
        return list(range(self.start_stations_before, 0, -1))


@dataclass
class AlertConfig:
    """User alert settings for one route."""
    lead_minutes: Optional[int] = 5
    proximity_radius_m: Optional[float] = None
    snooze: SnoozePolicy = field(default_factory=SnoozePolicy)
    repeat_days: Weekday = Weekday.NONE
    active: bool = True
    transfer_notifications: bool = True
    departure_reminder: bool = True
    alert_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        if (self.lead_minutes is None) == (self.proximity_radius_m is None):
            raise ValueError("Set exactly one of lead_minutes or proximity_radius_m")
        if self.lead_minutes is not None and not 0 <= self.lead_minutes <= 60:
            raise ValueError(f"lead_minutes must be 0-60, got {self.lead_minutes}")
        if self.proximity_radius_m is not None and not 50 <= self.proximity_radius_m <= 10_000:
            raise ValueError(f"proximity_radius_m must be 50-10000, got {self.proximity_radius_m}")
        if self.snooze.enabled and not 1 <= self.snooze.start_stations_before <= 5:
            raise ValueError(
                f"snooze must start 1-5 stations before, got {self.snooze.start_stations_before}"
            )
        self.repeat_days = Weekday(self.repeat_days)

    @property
    def trigger_mode(self) -> TriggerMode:
        if self.proximity_radius_m is not None:
            return TriggerMode.PROXIMITY
        return TriggerMode.TIME

    @property
    def is_repeating(self) -> bool:
        return bool(self.repeat_days)


class NotificationKind(str, Enum):
    ARRIVAL = "arrival"
    TRANSFER = "transfer"
    DEPARTURE = "departure"
    STATION_COUNTDOWN = "station_countdown"


@dataclass(frozen=True)
class NotificationPoint:
    """One alert to fire, either at an absolute time or on proximity."""
    station_id: str
    trigger_time: Optional[datetime]  # None for proximity-triggered arrival points
    kind: NotificationKind
    config: AlertConfig = field(compare=False, repr=False)
    stations_remaining: Optional[int] = None
    proximity_radius_m: Optional[float] = None

    @property
    def identifier(self) -> str:
        """Stable id so a regenerated schedule can be diffed against the old one."""
        parts = [self.config.alert_id, self.kind.value, self.station_id]
        if self.stations_remaining is not None:
            parts.append(str(self.stations_remaining))
        return ":".join(parts)

    @property
    def is_proximity(self) -> bool:
        return self.trigger_time is None
