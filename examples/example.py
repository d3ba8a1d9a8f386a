"""Example usage of TrainAlertService."""

import asyncio
import logging
import sys
from datetime import datetime, timezone, timedelta
from pathlib import Path

# Add src to path so we can import trainalert
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from trainalert import AlertConfig, SnoozePolicy, TrainAlertError, TrainAlertService, load_config

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

JST = timezone(timedelta(hours=9))


async def plan_trip(config_path: str, origin: str, destination: str):
    """
    Search routes and print the alerts for the first one.

    Args:
        config_path: YAML configuration file.
        origin: Origin station id.
        destination: Destination station id.
    """
    print(f"\n{'='*70}")
    print(f"Routes from {origin} to {destination}")
    print(f"{'='*70}\n")

    service = TrainAlertService.from_config(load_config(config_path))
    routes = await service.search(origin, destination, datetime.now(JST))
    if not routes:
        print("  No trains run between these stations")
        return

    for route in routes:
        label = "actual" if route.is_actual_time else "estimated"
        print(
            f"  {route.departure_time:%H:%M} -> {route.arrival_time:%H:%M} "
            f"({route.duration_minutes} min, {route.transfer_count} transfers, {label})"
        )
        for section in route.sections:
            print(f"      {section.line_id}: {section.departure_station} -> {section.arrival_station}")

    alert = AlertConfig(lead_minutes=5, snooze=SnoozePolicy(enabled=True, start_stations_before=3))
    points = service.schedule_notifications(alert, routes[0])

    print("\nNOTIFICATIONS FOR THE FIRST ROUTE:")
    print("-" * 70)
    for point in points:
        when = point.trigger_time.strftime("%H:%M") if point.trigger_time else "on approach"
        print(f"  {when}  {point.kind.value:<18} {point.station_id}")
    print("\n" + "=" * 70 + "\n")


if __name__ == "__main__":
    if len(sys.argv) != 4:
        print("Usage: example.py CONFIG.yaml ORIGIN_ID DESTINATION_ID")
        sys.exit(2)
    try:
        asyncio.run(plan_trip(*sys.argv[1:]))
    except TrainAlertError as e:
        print(f"Error: {e}")
        sys.exit(1)
