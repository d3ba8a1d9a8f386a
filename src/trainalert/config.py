"""Configuration loading for TrainAlert."""

import logging
import os
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml

from .odpt_client import DEFAULT_TIMEOUT, ODPT_BASE_URL
from .realtime_client import DEFAULT_TRAIN_NUMBER_PATTERN
from .station_graph import DEFAULT_MINUTES_PER_STATION, DEFAULT_TRANSFER_MINUTES
from .timetable_cache import (
    DEFAULT_EMPTY_BACKOFF,
    DEFAULT_FETCH_TIMEOUT,
    DEFAULT_RETRY_BUDGET,
    DEFAULT_TTL,
)

logger = logging.getLogger(__name__)

API_KEY_ENV = "ODPT_API_KEY"


@dataclass
class TrainAlertConfig:
    """Settings for wiring the library together."""
    odpt_api_key: str = ""
    odpt_base_url: str = ODPT_BASE_URL
    odpt_timeout: float = DEFAULT_TIMEOUT
    station_aliases: Dict[Tuple[str, str], str] = field(default_factory=dict)
    railway_ids: Dict[str, str] = field(default_factory=dict)

    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    timetable_ttl: float = DEFAULT_TTL
    retry_budget: int = DEFAULT_RETRY_BUDGET
    empty_backoff: float = DEFAULT_EMPTY_BACKOFF

    max_results: int = 10
    max_transfers: int = 3
    default_transfer_minutes: int = DEFAULT_TRANSFER_MINUTES
    minutes_per_station: int = DEFAULT_MINUTES_PER_STATION
    holidays: List[date] = field(default_factory=list)

    gtfs_url: Optional[str] = None
    gtfs_directory: Optional[str] = None
    realtime_feed_urls: List[str] = field(default_factory=list)
    realtime_cache_ttl: int = 30
    realtime_trip_ids: Dict[str, str] = field(default_factory=dict)  # train number -> GTFS-RT trip id
    realtime_train_number_pattern: Optional[str] = DEFAULT_TRAIN_NUMBER_PATTERN

    def __post_init__(self):
        if self.max_results < 1:
            raise ValueError("max_results must be at least 1")
        if self.max_transfers < 0:
            raise ValueError("max_transfers cannot be negative")
        if self.fetch_timeout <= 0:
            raise ValueError("fetch_timeout must be positive")


def load_config(path: Optional[str] = None) -> TrainAlertConfig:
    """
    Load configuration from a YAML file.

    A missing file gives the defaults. The ODPT_API_KEY environment variable
    overrides any key in the file.

    Example file::

        odpt:
          api_key: "..."
          station_aliases:
            - {station: tokyo, line: "odpt.Railway:JR-East.Yamanote", odpt: "odpt.Station:JR-East.Yamanote.Tokyo"}
        cache:
          ttl_seconds: 86400
        search:
          max_transfers: 2
        realtime:
          feed_urls: ["https://example.com/trip_updates"]
          trip_ids: {"301G": "4001301G"}
        holidays: [2026-01-01]
    """
    data: dict = {}
    if path is not None:
        config_path = Path(path)
        if config_path.exists():
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        else:
            logger.warning(f"Config file {config_path} not found; using defaults")

    odpt = data.get("odpt", {})
    cache = data.get("cache", {})
    search = data.get("search", {})
    gtfs = data.get("gtfs", {})
    realtime = data.get("realtime", {})

    config = TrainAlertConfig(
        odpt_api_key=os.environ.get(API_KEY_ENV) or odpt.get("api_key", ""),
        odpt_base_url=odpt.get("base_url", ODPT_BASE_URL),
        odpt_timeout=float(odpt.get("timeout_seconds", DEFAULT_TIMEOUT)),
        station_aliases={
            (alias["station"], alias["line"]): alias["odpt"] for alias in odpt.get("station_aliases", [])
        },
        railway_ids=dict(odpt.get("railway_ids", {})),
        fetch_timeout=float(cache.get("fetch_timeout_seconds", DEFAULT_FETCH_TIMEOUT)),
        timetable_ttl=float(cache.get("ttl_seconds", DEFAULT_TTL)),
        retry_budget=int(cache.get("retry_budget", DEFAULT_RETRY_BUDGET)),
        empty_backoff=float(cache.get("empty_backoff_seconds", DEFAULT_EMPTY_BACKOFF)),
        max_results=int(search.get("max_results", 10)),
        max_transfers=int(search.get("max_transfers", 3)),
        default_transfer_minutes=int(search.get("default_transfer_minutes", DEFAULT_TRANSFER_MINUTES)),
        minutes_per_station=int(search.get("minutes_per_station", DEFAULT_MINUTES_PER_STATION)),
        holidays=[_as_date(value) for value in data.get("holidays", [])],
        gtfs_url=gtfs.get("url"),
        gtfs_directory=gtfs.get("directory"),
        realtime_feed_urls=list(realtime.get("feed_urls", [])),
        realtime_cache_ttl=int(realtime.get("cache_ttl_seconds", 30)),
        realtime_trip_ids={str(k): str(v) for k, v in realtime.get("trip_ids", {}).items()},
        realtime_train_number_pattern=realtime.get("train_number_pattern", DEFAULT_TRAIN_NUMBER_PATTERN),
    )
    logger.debug(f"Loaded configuration from {path or 'defaults'}")
    return config


def _as_date(value) -> date:
    # PyYAML already turns unquoted ISO dates into date objects
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))
