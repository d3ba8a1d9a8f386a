"""Read-through timetable cache with calendar fallback and request coalescing."""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, List, Optional, Tuple

from .errors import DataUnavailable, NetworkFailure, NoData, StaleCacheEntry
from .models import CacheEntry, CalendarType, TimetableEntry, TrainStopSequence
from .timetable_source import TimetableSource

logger = logging.getLogger(__name__)

DEFAULT_TTL = 86_400  # Timetables change rarely; keep them for a day
DEFAULT_FETCH_TIMEOUT = 10.0
DEFAULT_RETRY_BUDGET = 2
DEFAULT_EMPTY_BACKOFF = 300.0
DEFAULT_MAX_ENTRIES = 1024

TimetableKey = Tuple[str, str, CalendarType]


class TimetableCache:
    """
    Caches station timetables per (station, line, calendar).

    On a miss the cache fetches from the timetable source. When the requested
    calendar has no data it tries the others in priority order and caches only
    the calendar that produced entries. Empty results are never cached; a key
    that keeps coming back empty is backed off for ``empty_backoff`` seconds
    after ``retry_budget`` consecutive empty answers.

    Concurrent misses for the same key share a single upstream fetch.
    """

    def __init__(
        self,
        source: TimetableSource,
        ttl: float = DEFAULT_TTL,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
        retry_budget: int = DEFAULT_RETRY_BUDGET,
        empty_backoff: float = DEFAULT_EMPTY_BACKOFF,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.ttl = ttl
        self.fetch_timeout = fetch_timeout
        self.retry_budget = retry_budget
        self.empty_backoff = empty_backoff
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[TimetableKey, CacheEntry] = {}
        self._sequences: Dict[tuple, Tuple[TrainStopSequence, float]] = {}
        self._inflight: Dict[Hashable, asyncio.Future] = {}
        self._empty_streaks: Dict[TimetableKey, Tuple[int, float]] = {}  # key -> (count, last seen)
        self.stats = {
            "hits": 0,
            "misses": 0,
            "fetches": 0,
            "coalesced": 0,
            "evictions": 0,
            "empty_results": 0,
            "timeouts": 0,
        }

    async def get(
        self, station_id: str, line_id: str, calendar: CalendarType
    ) -> List[TimetableEntry]:
        """
        Get the timetable of a station on a line.

        Every returned entry is tagged with the calendar that produced it, which
        differs from ``calendar`` when a fallback was used.

        Raises:
            DataUnavailable: If no calendar variant yields any entries.
        """
        entry = await self.get_entry(station_id, line_id, calendar)
        return list(entry.entries)

    async def get_entry(
        self, station_id: str, line_id: str, calendar: CalendarType
    ) -> CacheEntry:
        """Like get(), but returns the cache entry with the calendar actually used."""
        failures: List[str] = []
        for candidate in calendar.fallback_order():
            key = (station_id, line_id, candidate)
            try:
                entry = await self._lookup(key)
            except asyncio.TimeoutError:
                failures.append(f"{candidate.value}: timed out")
                continue
            except NetworkFailure as e:
                failures.append(f"{candidate.value}: {e}")
                continue
            if entry is None:
                continue
            if candidate is not calendar:
                logger.info(
                    f"No {calendar.value} timetable for {station_id} on {line_id}, "
                    f"using {candidate.value}"
                )
            return entry

        reason = f"No timetable for {station_id} on {line_id} in any calendar"
        if failures:
            reason += f" ({'; '.join(failures)})"
        logger.warning(reason)
        raise DataUnavailable(reason, station_id=station_id, line_id=line_id)

    async def get_stop_sequence(
        self, train_id: str, line_id: str, calendar: CalendarType
    ) -> Optional[TrainStopSequence]:
        """
        Get a train's stop sequence, or None if the source cannot provide it.

        Lookup failures are not errors here: callers fall back to estimates.
        """
        key = ("sequence", train_id, line_id, calendar)
        now = self._clock()
        cached = self._sequences.get(key)
        if cached is not None:
            sequence, fetched_at = cached
            if now - fetched_at < self.ttl:
                self.stats["hits"] += 1
                return sequence
            del self._sequences[key]
            self.stats["evictions"] += 1
        self.stats["misses"] += 1

        try:
            return await self._coalesce(key, lambda: self._fetch_sequence(key))
        except (NetworkFailure, NoData, asyncio.TimeoutError) as e:
            logger.warning(f"No stop sequence for train {train_id} on {line_id}: {e!r}")
            return None

    def invalidate(
        self, station_id: str, line_id: str, calendar: Optional[CalendarType] = None
    ) -> int:
        """Drop cached timetables for a station/line; returns how many were removed."""
        keys = [
            key for key in self._entries
            if key[0] == station_id and key[1] == line_id and (calendar is None or key[2] is calendar)
        ]
        for key in keys:
            del self._entries[key]
            self._empty_streaks.pop(key, None)
        if keys:
            logger.debug(f"Invalidated {len(keys)} timetable entries for {station_id} on {line_id}")
        return len(keys)

    def clear(self) -> None:
        """Manually clear the cache."""
        self._entries.clear()
        self._sequences.clear()
        self._empty_streaks.clear()

    def load_snapshot(self, entries: Iterable[CacheEntry]) -> int:
        """
        Warm the cache from previously persisted entries.

        Entries are taken as-is; an empty one is evicted the first time it is read.
        """
        count = 0
        for entry in entries:
            self._entries[entry.key] = entry
            count += 1
        logger.debug(f"Loaded {count} timetable entries from snapshot")
        return count

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def sequence_count(self) -> int:
        return len(self._sequences)

    async def _lookup(self, key: TimetableKey) -> Optional[CacheEntry]:
        try:
            cached = self._read(key)
        except StaleCacheEntry as e:
            logger.warning(f"{e}; refetching")
            cached = None
        if cached is not None:
            return cached

        if self._backing_off(key):
            logger.debug(f"Skipping {key}: empty {self.retry_budget} times in a row")
            return None
        return await self._coalesce(key, lambda: self._fetch(key))

    def _read(self, key: TimetableKey) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            self.stats["misses"] += 1
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            self.stats["evictions"] += 1
            self.stats["misses"] += 1
            return None
        if not entry.entries:
            del self._entries[key]
            self.stats["evictions"] += 1
            self.stats["misses"] += 1
            raise StaleCacheEntry(key)
        self.stats["hits"] += 1
        logger.debug(f"Using cached timetable for {key}")
        return entry

    def _backing_off(self, key: TimetableKey) -> bool:
        streak = self._empty_streaks.get(key)
        if streak is None:
            return False
        count, last_seen = streak
        if count < self.retry_budget:
            return False
        if self._clock() - last_seen >= self.empty_backoff:
            del self._empty_streaks[key]
            return False
        return True

    async def _coalesce(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> Any:
        future = self._inflight.get(key)
        if future is None:
            future = asyncio.ensure_future(factory())
            self._inflight[key] = future
            future.add_done_callback(lambda done, key=key: self._finish_inflight(key, done))
        else:
            self.stats["coalesced"] += 1
            logger.debug(f"Joining in-flight fetch for {key}")
        # A cancelled caller must not cancel the fetch other callers are waiting on
        return await asyncio.shield(future)

    def _finish_inflight(self, key: Hashable, done: asyncio.Future) -> None:
        if self._inflight.get(key) is done:
            del self._inflight[key]
        if not done.cancelled():
            # Mark the exception retrieved even if every waiter went away
            done.exception()

    async def _fetch(self, key: TimetableKey) -> Optional[CacheEntry]:
        station_id, line_id, calendar = key
        self.stats["fetches"] += 1
        logger.debug(f"Fetching timetable for {station_id} on {line_id} ({calendar.value})")
        try:
            entries = await asyncio.wait_for(
                self.source.fetch_station_timetable(station_id, line_id, calendar),
                timeout=self.fetch_timeout,
            )
        except asyncio.TimeoutError:
            self.stats["timeouts"] += 1
            logger.warning(f"Timetable fetch for {key} timed out after {self.fetch_timeout}s")
            raise
        except NoData:
            entries = []
        except NetworkFailure as e:
            logger.warning(f"Failed to fetch timetable for {key}: {e}")
            raise

        if not entries:
            self.stats["empty_results"] += 1
            self._record_empty(key)
            logger.debug(f"Empty timetable for {key}; not caching")
            return None

        self._empty_streaks.pop(key, None)
        tagged = [e if e.calendar is calendar else replace(e, calendar=calendar) for e in entries]
        entry = CacheEntry(
            station_id=station_id,
            line_id=line_id,
            calendar=calendar,
            entries=tagged,
            fetched_at=self._clock(),
            ttl=self.ttl,
        )
        self._store(entry)
        return entry

    async def _fetch_sequence(self, key: tuple) -> Optional[TrainStopSequence]:
        _, train_id, line_id, calendar = key
        self.stats["fetches"] += 1
        logger.debug(f"Fetching stop sequence for train {train_id} on {line_id}")
        try:
            sequence = await asyncio.wait_for(
                self.source.fetch_train_stop_sequence(train_id, line_id, calendar),
                timeout=self.fetch_timeout,
            )
        except asyncio.TimeoutError:
            self.stats["timeouts"] += 1
            raise
        if sequence is None or not sequence.stops:
            return None
        self._store_sequence(key, sequence)
        return sequence

    def _store(self, entry: CacheEntry) -> None:
        now = self._clock()
        self._evict_expired(now)
        if len(self._entries) >= self.max_entries and entry.key not in self._entries:
            oldest_key = min(self._entries, key=lambda k: self._entries[k].fetched_at)
            del self._entries[oldest_key]
            self.stats["evictions"] += 1
        self._entries[entry.key] = entry

    def _store_sequence(self, key: tuple, sequence: TrainStopSequence) -> None:
        now = self._clock()
        self._evict_expired(now)
        if len(self._sequences) >= self.max_entries and key not in self._sequences:
            oldest_key = min(self._sequences, key=lambda k: self._sequences[k][1])
            del self._sequences[oldest_key]
            self.stats["evictions"] += 1
        self._sequences[key] = (sequence, now)

    def _record_empty(self, key: TimetableKey) -> None:
        now = self._clock()
        self._forget_stale_streaks(now)
        count, _ = self._empty_streaks.get(key, (0, 0.0))
        if key not in self._empty_streaks and len(self._empty_streaks) >= self.max_entries:
            oldest_key = min(self._empty_streaks, key=lambda k: self._empty_streaks[k][1])
            del self._empty_streaks[oldest_key]
        self._empty_streaks[key] = (count + 1, now)

    def _evict_expired(self, now: float) -> None:
        """Remove expired cache entries and stop sequences."""
        expired_keys = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired_keys:
            del self._entries[key]
        expired_sequences = [
            key for key, (_, fetched_at) in self._sequences.items() if now - fetched_at >= self.ttl
        ]
        for key in expired_sequences:
            del self._sequences[key]
        evicted = len(expired_keys) + len(expired_sequences)
        if evicted:
            self.stats["evictions"] += evicted
            logger.debug(f"Evicted {evicted} expired cache entries")
        self._forget_stale_streaks(now)

    def _forget_stale_streaks(self, now: float) -> None:
        # An empty answer older than the backoff window no longer counts towards a streak
        stale = [key for key, (_, last_seen) in self._empty_streaks.items() if now - last_seen >= self.empty_backoff]
        for key in stale:
            del self._empty_streaks[key]
