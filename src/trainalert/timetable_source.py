"""Interface of the external timetable provider."""

from typing import List, Optional, Protocol

from .models import CalendarType, TimetableEntry, TrainStopSequence


class TimetableSource(Protocol):
    """
    Asynchronous timetable provider.

    Implementations raise ``NetworkFailure`` when the provider cannot be reached
    and ``NoData`` (or return an empty list) when it has nothing for the request.
    """

    async def fetch_station_timetable(
        self, station_id: str, line_id: str, calendar: CalendarType
    ) -> List[TimetableEntry]:
        ...

    async def fetch_train_stop_sequence(
        self, train_id: str, line_id: str, calendar: CalendarType
    ) -> Optional[TrainStopSequence]:
        ...

    async def resolve_station_identity(self, name: str, line_name: str) -> str:
        ...
