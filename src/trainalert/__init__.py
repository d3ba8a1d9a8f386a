"""TrainAlert - Train route search and wake-up alert scheduling."""

__version__ = "0.1.0"

from .config import TrainAlertConfig, load_config
from .errors import (
    DataUnavailable,
    DirectionMismatch,
    SearchSuperseded,
    TrainAlertError,
    UnknownStation,
    UnsupportedRoute,
)
from .models import (
    AlertConfig,
    CalendarType,
    Line,
    NotificationKind,
    NotificationPoint,
    RepeatPattern,
    RouteResult,
    RouteSection,
    SnoozePolicy,
    Station,
    Weekday,
)
from .notification_scheduler import NotificationScheduler
from .odpt_client import OdptTimetableSource
from .realtime_client import RealtimeDelayClient
from .reference_loader import ReferenceDataLoader
from .repeat_schedule import RepeatScheduleEngine
from .route_search import RouteSearchEngine
from .service import TrainAlertService
from .station_graph import StationGraph
from .timetable_cache import TimetableCache

__all__ = [
    "TrainAlertService",
    "TrainAlertConfig",
    "load_config",
    "StationGraph",
    "TimetableCache",
    "RouteSearchEngine",
    "NotificationScheduler",
    "RepeatScheduleEngine",
    "ReferenceDataLoader",
    "OdptTimetableSource",
    "RealtimeDelayClient",
    "Station",
    "Line",
    "CalendarType",
    "RouteSection",
    "RouteResult",
    "AlertConfig",
    "SnoozePolicy",
    "RepeatPattern",
    "Weekday",
    "NotificationKind",
    "NotificationPoint",
    "TrainAlertError",
    "UnknownStation",
    "DataUnavailable",
    "DirectionMismatch",
    "UnsupportedRoute",
    "SearchSuperseded",
]
