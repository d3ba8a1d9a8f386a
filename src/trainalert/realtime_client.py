"""GTFS-Realtime feed reader for train delays."""

import logging
import math
import re
import time
from typing import Dict, List, Optional, Set, Tuple

import requests
from google.protobuf.message import DecodeError
from google.transit import gtfs_realtime_pb2

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 30
DEFAULT_MAX_CACHE_SIZE = 10
FEED_TIMEOUT = 10
# Trailing train number such as "301G" in "JR-East.Yamanote.301G"
DEFAULT_TRAIN_NUMBER_PATTERN = r"(?:^|[._:\-])(?P<train>[0-9]{1,4}[A-Z]{0,2})$"


class RealtimeDelayClient:
    """
    Fetches GTFS-Realtime trip updates and reports per-trip delays.

    Delays are only an input for shifting already-scheduled notifications;
    routes are always searched against the published timetable.
    """

    def __init__(
        self,
        feed_urls: List[str],
        cache_ttl: int = DEFAULT_CACHE_TTL,
        max_cache_size: int = DEFAULT_MAX_CACHE_SIZE,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
        trip_ids: Optional[Dict[str, str]] = None,
        train_number_pattern: Optional[str] = DEFAULT_TRAIN_NUMBER_PATTERN,
    ):
        """
        Args:
            feed_urls: GTFS-Realtime TripUpdates feeds.
            cache_ttl: Seconds a fetched feed is reused.
            max_cache_size: Feeds kept in the cache at once.
            headers: Extra HTTP headers, e.g. an API key.
            session: requests session to use.
            trip_ids: Train number to trip id, for feeds whose trip ids do not
                carry the train number.
            train_number_pattern: Regex with a ``train`` group that pulls the
                train number out of a trip id; None disables it.
        """
        self.feed_urls = list(feed_urls)
        self._cache: Dict[str, Tuple[bytes, float]] = {}  # feed_url -> (data, timestamp)
        self._cache_ttl = cache_ttl
        self._max_cache_size = max_cache_size
        self._headers = dict(headers or {})
        self.session = session or requests.Session()
        self.trip_ids = dict(trip_ids or {})
        self._train_number = re.compile(train_number_pattern) if train_number_pattern else None

    def get_delays(self) -> Dict[str, int]:
        """
        Current delays of every trip in the configured feeds.

        Returns:
            Mapping of trip id to delay in whole minutes, rounded up. Trips
            running early report 0.
        """
        return self._collect()[0]

    def get_delay_minutes(self, train_id: str) -> Optional[int]:
        """
        Delay of one train, or None if no feed reports it.

        ``train_id`` is matched against trip ids first (through the configured
        ``trip_ids`` mapping when present), then against the train numbers the
        feed carries in vehicle labels or at the end of its trip ids.
        """
        by_trip, by_train = self._collect()
        trip_id = self.trip_ids.get(train_id, train_id)
        if trip_id in by_trip:
            return by_trip[trip_id]
        return by_train.get(train_id)

    def _collect(self) -> Tuple[Dict[str, int], Dict[str, int]]:
        by_trip: Dict[str, int] = {}
        by_train: Dict[str, int] = {}
        for feed_url in self.feed_urls:
            try:
                feed_data = self._fetch_feed(feed_url)
            except requests.RequestException as e:
                logger.warning(f"Failed to fetch feed {feed_url}: {e}")
                continue
            try:
                for trip_id, train_numbers, minutes in self._parse_delays(feed_data):
                    by_trip[trip_id] = minutes
                    for number in train_numbers:
                        by_train[number] = minutes
            except DecodeError as e:
                logger.warning(f"Failed to parse feed {feed_url}: {e}")
        return by_trip, by_train

    def _fetch_feed(self, feed_url: str) -> bytes:
        """
        Fetch and cache a GTFS-Realtime feed.

        Args:
            feed_url: Full URL to the feed.

        Returns:
            Raw protobuf bytes.
        """
        now = time.time()
        if feed_url in self._cache:
            data, timestamp = self._cache[feed_url]
            if now - timestamp < self._cache_ttl:
                logger.debug(f"Using cached data for {feed_url}")
                return data

        self._evict_expired_cache(now)

        if len(self._cache) >= self._max_cache_size:
            oldest_key = min(self._cache.keys(), key=lambda k: self._cache[k][1])
            del self._cache[oldest_key]

        logger.debug(f"Fetching {feed_url}")
        try:
            response = self.session.get(feed_url, headers=self._headers, timeout=FEED_TIMEOUT)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Failed to fetch {feed_url}: {e}")
            raise
        self._cache[feed_url] = (response.content, now)
        return response.content

    def _evict_expired_cache(self, current_time: float) -> None:
        """Remove expired cache entries."""
        expired_keys = [
            url for url, (_, timestamp) in self._cache.items()
            if current_time - timestamp >= self._cache_ttl
        ]
        for key in expired_keys:
            del self._cache[key]

        if expired_keys:
            logger.debug(f"Evicted {len(expired_keys)} expired cache entries")

    def clear_cache(self) -> None:
        """Manually clear the cache."""
        self._cache.clear()

    def _parse_delays(self, feed_data: bytes) -> List[Tuple[str, Set[str], int]]:
        """
        Parse trip delays from a GTFS-Realtime feed.

        The trip-level delay is used when present, otherwise the first stop
        time update that carries one.

        Returns:
            (trip id, train numbers, minutes) per delayed trip.
        """
        feed = gtfs_realtime_pb2.FeedMessage()
        feed.ParseFromString(feed_data)

        delays: List[Tuple[str, Set[str], int]] = []
        for entity in feed.entity:
            if not entity.HasField("trip_update"):
                continue
            trip_update = entity.trip_update
            trip_id = trip_update.trip.trip_id
            if not trip_id:
                continue

            seconds = None
            if trip_update.HasField("delay"):
                seconds = trip_update.delay
            else:
                for stop_time_update in trip_update.stop_time_update:
                    for event in ("arrival", "departure"):
                        if stop_time_update.HasField(event) and getattr(stop_time_update, event).HasField("delay"):
                            seconds = getattr(stop_time_update, event).delay
                            break
                    if seconds is not None:
                        break
            if seconds is None:
                continue

            minutes = math.ceil(seconds / 60) if seconds > 0 else 0
            delays.append((trip_id, self._train_numbers(trip_update), minutes))

        logger.debug(f"Parsed delays for {len(delays)} trips")
        return delays

    def _train_numbers(self, trip_update) -> Set[str]:
        """Train numbers a trip update can be matched by."""
        numbers = set()
        if trip_update.HasField("vehicle") and trip_update.vehicle.label:
            numbers.add(trip_update.vehicle.label)
        if self._train_number is not None:
            match = self._train_number.search(trip_update.trip.trip_id)
            if match:
                numbers.add(match.group("train"))
        return numbers
