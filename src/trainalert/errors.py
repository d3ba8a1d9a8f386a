"""Exception taxonomy for TrainAlert."""

from typing import Iterable, List, Optional


class TrainAlertError(Exception):
    """Base class for every error raised by the library."""


class UnknownStation(TrainAlertError, LookupError):
    """A station or line id is not part of the station graph."""

    def __init__(self, identifier: str, kind: str = "station"):
        self.identifier = identifier
        self.kind = kind
        super().__init__(f"Unknown {kind}: {identifier}")


class DataUnavailable(TrainAlertError):
    """No timetable data across every calendar fallback."""

    def __init__(
        self,
        reason: str,
        station_id: Optional[str] = None,
        line_id: Optional[str] = None,
        supported_lines: Iterable[str] = (),
    ):
        self.reason = reason
        self.station_id = station_id
        self.line_id = line_id
        self.supported_lines: List[str] = sorted(supported_lines)
        super().__init__(reason)

    def with_supported_lines(self, supported_lines: Iterable[str]) -> "DataUnavailable":
        """Return a copy that also names the lines the caller can use."""
        return DataUnavailable(self.reason, self.station_id, self.line_id, supported_lines)


class DirectionMismatch(TrainAlertError):
    """A train does not reach the destination after the origin."""

    def __init__(self, train_id: str, origin: str, destination: str):
        self.train_id = train_id
        self.origin = origin
        self.destination = destination
        super().__init__(f"Train {train_id} does not run {origin} -> {destination}")


class UnsupportedRoute(TrainAlertError):
    """A cross-line search found no path whose legs could all be resolved."""

    def __init__(self, origin: str, destination: str, supported_lines: Iterable[str] = ()):
        self.origin = origin
        self.destination = destination
        self.supported_lines: List[str] = sorted(supported_lines)
        super().__init__(f"No resolvable route from {origin} to {destination}")


class StaleCacheEntry(TrainAlertError):
    """A cached timetable turned out to be empty and was evicted."""

    def __init__(self, key: tuple):
        self.key = key
        super().__init__(f"Evicted empty cache entry {key}")


class PastTrigger(TrainAlertError):
    """A computed notification time has already elapsed."""

    def __init__(self, identifier: str, trigger_time):
        self.identifier = identifier
        self.trigger_time = trigger_time
        super().__init__(f"Trigger {identifier} at {trigger_time} is in the past")


class SearchSuperseded(TrainAlertError):
    """A newer search replaced this one before it finished."""

    def __init__(self, generation: int, current: int):
        self.generation = generation
        self.current = current
        super().__init__(f"Search #{generation} superseded by #{current}")


class TimetableSourceError(TrainAlertError):
    """Raised by a timetable provider."""


class NetworkFailure(TimetableSourceError):
    """The provider could not be reached or answered with an error status."""


class NoData(TimetableSourceError):
    """The provider has no data for the request."""


class StationIdentityError(TimetableSourceError):
    """A station name could not be mapped onto one canonical id."""


class AmbiguousStation(StationIdentityError):
    """More than one station matches a name on a line."""

    def __init__(self, name: str, candidates: Iterable[str]):
        self.name = name
        self.candidates = list(candidates)
        super().__init__(f"'{name}' matches {len(self.candidates)} stations")


class StationNotFound(StationIdentityError):
    """No station matches a name on a line."""

    def __init__(self, name: str, line_name: str = ""):
        self.name = name
        self.line_name = line_name
        super().__init__(f"No station named '{name}' on '{line_name}'")
