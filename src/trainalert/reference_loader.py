"""GTFS static data loader that builds the station graph."""

import csv
import io
import logging
import math
import os
import zipfile
from typing import Dict, List, Optional

import pandas as pd
import requests

from .errors import UnknownStation
from .models import Line, Station
from .station_graph import DEFAULT_MINUTES_PER_STATION, DEFAULT_TRANSFER_MINUTES, StationGraph
from .station_identity import normalize_station_name

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = 60


class ReferenceDataLoader:
    """
    Loads stations, lines and transfer times from a GTFS static feed.

    Platforms are folded into their parent station, so a station served by
    several lines is a single node of the graph. Each route's canonical
    station order is taken from its longest trip, preferring direction 0.
    """

    def __init__(self):
        self.stations: Dict[str, Station] = {}
        self.stations_by_name: Dict[str, List[str]] = {}  # normalized name -> [station ids]
        self.routes: Dict[str, str] = {}  # route_id -> route name
        self.operators: Dict[str, Optional[str]] = {}  # route_id -> agency_id
        self.route_orders: Dict[str, List[str]] = {}  # route_id -> [station ids]
        self.stop_to_parent: Dict[str, str] = {}
        self.transfer_minutes: Dict[str, int] = {}

    def load_from_url(self, url: str) -> None:
        """Download a GTFS zip and load it."""
        logger.info(f"Downloading GTFS data from {url}")
        try:
            response = requests.get(url, timeout=DOWNLOAD_TIMEOUT)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Failed to download GTFS data: {e}")
            raise

        with zipfile.ZipFile(io.BytesIO(response.content)) as zip_file:
            names = set(zip_file.namelist())
            self._load_stops(zip_file.read("stops.txt").decode("utf-8-sig"))
            self._load_routes(zip_file.read("routes.txt").decode("utf-8-sig"))
            self._load_stop_times(
                zip_file.read("trips.txt").decode("utf-8-sig"),
                zip_file.read("stop_times.txt").decode("utf-8-sig"),
            )
            if "transfers.txt" in names:
                self._load_transfers(zip_file.read("transfers.txt").decode("utf-8-sig"))
        logger.info(f"Loaded {len(self.stations)} stations and {len(self.routes)} routes")

    def load_from_files(self, directory: str) -> None:
        """Load GTFS data from an unpacked feed directory."""
        logger.info(f"Loading GTFS data from {directory}")

        def read(name: str) -> str:
            with open(os.path.join(directory, name), "r", encoding="utf-8-sig") as f:
                return f.read()

        self._load_stops(read("stops.txt"))
        self._load_routes(read("routes.txt"))
        self._load_stop_times(read("trips.txt"), read("stop_times.txt"))
        if os.path.exists(os.path.join(directory, "transfers.txt")):
            self._load_transfers(read("transfers.txt"))
        logger.info(f"Loaded {len(self.stations)} stations and {len(self.routes)} routes")

    def _load_stops(self, csv_content: str) -> None:
        """Parse stops.txt; platforms map onto their parent station."""
        reader = csv.DictReader(io.StringIO(csv_content))
        for row in reader:
            stop_id = row["stop_id"]
            parent_station = row.get("parent_station") or ""
            if parent_station:
                self.stop_to_parent[stop_id] = parent_station
                continue

            self.stop_to_parent[stop_id] = stop_id
            self.stations[stop_id] = Station(
                station_id=stop_id,
                name=row["stop_name"],
                latitude=float(row["stop_lat"]),
                longitude=float(row["stop_lon"]),
                lines=[],
            )
            self.stations_by_name.setdefault(normalize_station_name(row["stop_name"]), []).append(stop_id)

    def _load_routes(self, csv_content: str) -> None:
        """Parse routes.txt."""
        reader = csv.DictReader(io.StringIO(csv_content))
        for row in reader:
            route_id = row["route_id"]
            self.routes[route_id] = row.get("route_short_name") or row.get("route_long_name") or route_id
            self.operators[route_id] = row.get("agency_id") or None

    def _load_stop_times(self, trips_csv: str, stop_times_csv: str) -> None:
        """Derive each route's station order from its representative trip."""
        trips = pd.read_csv(io.StringIO(trips_csv), dtype=str)
        stop_times = pd.read_csv(
            io.StringIO(stop_times_csv),
            dtype=str,
            usecols=["trip_id", "stop_id", "stop_sequence"],
        )
        stop_times["stop_sequence"] = stop_times["stop_sequence"].astype(int)

        counts = stop_times.groupby("trip_id").size().rename("stop_count")
        trips = trips.join(counts, on="trip_id").dropna(subset=["stop_count"])
        if "direction_id" in trips.columns:
            trips["reverse"] = trips["direction_id"].fillna("0") != "0"
        else:
            trips["reverse"] = False
        representative = (
            trips.sort_values(["route_id", "stop_count", "reverse"], ascending=[True, False, True])
            .drop_duplicates("route_id")
        )

        ordered = (
            stop_times.sort_values(["trip_id", "stop_sequence"])
            .groupby("trip_id")["stop_id"]
            .apply(list)
        )

        for row in representative.itertuples(index=False):
            if row.route_id not in self.routes:
                logger.debug(f"Trip {row.trip_id} references unknown route {row.route_id}")
                continue
            station_ids: List[str] = []
            for stop_id in ordered[row.trip_id]:
                parent = self.stop_to_parent.get(stop_id, stop_id)
                if parent not in self.stations:
                    logger.warning(f"Stop {stop_id} on route {row.route_id} has no station")
                    continue
                # A train calling at two platforms of one station still visits it once
                if parent not in station_ids:
                    station_ids.append(parent)
            self.route_orders[row.route_id] = station_ids

        logger.debug(f"Derived station order for {len(self.route_orders)} routes")

    def _load_transfers(self, csv_content: str) -> None:
        """Parse transfers.txt into per-station minimum transfer times."""
        reader = csv.DictReader(io.StringIO(csv_content))
        for row in reader:
            seconds = row.get("min_transfer_time")
            if not seconds:
                continue
            from_station = self.stop_to_parent.get(row["from_stop_id"], row["from_stop_id"])
            to_station = self.stop_to_parent.get(row["to_stop_id"], row["to_stop_id"])
            if from_station != to_station:
                logger.debug(f"Ignoring walking transfer {from_station} -> {to_station}")
                continue
            minutes = math.ceil(int(seconds) / 60)
            self.transfer_minutes[from_station] = max(minutes, self.transfer_minutes.get(from_station, 0))

    def build_graph(
        self,
        default_transfer_minutes: int = DEFAULT_TRANSFER_MINUTES,
        minutes_per_station: int = DEFAULT_MINUTES_PER_STATION,
    ) -> StationGraph:
        """Build the station graph from the loaded data."""
        lines = [
            Line(
                line_id=route_id,
                name=self.routes[route_id],
                station_ids=station_ids,
                operator=self.operators.get(route_id),
            )
            for route_id, station_ids in self.route_orders.items()
            if len(station_ids) >= 2
        ]
        served = {sid for line in lines for sid in line.station_ids}
        stations = [station for sid, station in self.stations.items() if sid in served]
        return StationGraph(
            stations,
            lines,
            transfer_minutes=self.transfer_minutes,
            default_transfer_minutes=default_transfer_minutes,
            minutes_per_station=minutes_per_station,
        )

    def get_station(self, station_id: str) -> Station:
        """Get station by id."""
        if station_id not in self.stations:
            raise UnknownStation(station_id)
        return self.stations[station_id]

    def find_stations_by_name(self, name: str) -> List[Station]:
        """Find stations by name (partial match)."""
        wanted = normalize_station_name(name)
        results = []
        for station_name, station_ids in self.stations_by_name.items():
            if wanted in station_name:
                results.extend(self.stations[sid] for sid in station_ids)
        return results

    def clear(self) -> None:
        """Clear all loaded data to free memory."""
        self.stations.clear()
        self.stations_by_name.clear()
        self.routes.clear()
        self.operators.clear()
        self.route_orders.clear()
        self.stop_to_parent.clear()
        self.transfer_minutes.clear()
        logger.info("Cleared GTFS data from memory")
