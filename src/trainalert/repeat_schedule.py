"""Next firing time of weekly repeating alerts."""

import logging
from datetime import datetime, time, timedelta
from typing import Optional, Union

from .models import AlertConfig, RouteResult, TriggerMode, Weekday

logger = logging.getLogger(__name__)

# Today plus a full week, so a day whose time already passed today comes round again
SCAN_DAYS = 8


class RepeatScheduleEngine:
    """
    Computes when a repeating alert fires next.

    The next occurrence is recomputed from "now" after every firing instead of
    pre-computing future weeks, so a changed configuration takes effect at once.
    """

    @staticmethod
    def reference_time_of_day(route: RouteResult, config: AlertConfig) -> time:
        """Time of day the alert fires for a reference route."""
        arrival = route.arrival_time
        if config.trigger_mode is TriggerMode.TIME:
            arrival -= timedelta(minutes=config.lead_minutes)
        return arrival.time().replace(second=0, microsecond=0)

    def next_occurrence(
        self,
        config: Union[AlertConfig, Weekday, int],
        reference_time_of_day: time,
        now: datetime,
    ) -> Optional[datetime]:
        """
        First time strictly after ``now`` on a selected weekday.

        Args:
            config: Alert configuration, or a bare weekday mask.
            reference_time_of_day: Time of day the alert fires.
            now: Current time; the result shares its timezone.

        Returns:
            The next occurrence, or None when no weekday is selected or the
            alert is inactive.
        """
        if isinstance(config, AlertConfig):
            if not config.active:
                return None
            days = config.repeat_days
        else:
            days = Weekday(config)
        if not days:
            return None

        for offset in range(SCAN_DAYS):
            day = (now + timedelta(days=offset)).date()
            if not Weekday.for_date(day) & days:
                continue
            candidate = datetime.combine(day, reference_time_of_day, tzinfo=now.tzinfo)
            if candidate > now:
                return candidate
        return None

    def rearm(
        self, config: AlertConfig, reference_time_of_day: time, fired_at: datetime
    ) -> Optional[datetime]:
        """Next occurrence right after an alert fired."""
        following = self.next_occurrence(config, reference_time_of_day, fired_at)
        if following is None:
            logger.debug(f"Alert {config.alert_id} does not repeat")
        else:
            logger.debug(f"Alert {config.alert_id} re-armed for {following.isoformat()}")
        return following
