"""Coordinate -> observation station resolution with a persistent cache."""
import logging
import math
import re
from pathlib import Path
from typing import Any, List, Optional, Tuple

from metrics import MetricsCollector
from noaa_client import RetryingFetcher, gridpoint_stations_url, points_url
from state_store import delete_file, read_json, write_json
from weather_data import Coordinates, StationCacheEntry, now_ms
from weather_errors import CacheCorruptionError, ConfigError, ResolutionError

STATION_ID_PATTERN = re.compile(r"^[A-Z0-9]{3,4}$")
MAX_LOGGED_CANDIDATES = 10


def validate_coordinates(latitude: Any, longitude: Any) -> Coordinates:
    """
    Build Coordinates from raw config values.

    Raises:
        ConfigError: If either value is missing, not a finite number or out of range
    """
    if latitude is None or longitude is None:
        raise ConfigError("Latitude and longitude must be configured")
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid coordinates: {e}") from e
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise ConfigError(f"Invalid coordinates: {latitude},{longitude}")
    if not -90.0 <= lat <= 90.0:
        raise ConfigError(f"Latitude out of range: {lat}")
    if not -180.0 <= lon <= 180.0:
        raise ConfigError(f"Longitude out of range: {lon}")
    return Coordinates(latitude=lat, longitude=lon)


def filter_station_candidates(stations_payload: Any) -> List[str]:
    """Station identifiers from a gridpoint-stations response, in upstream order, canonical shape only."""
    features = stations_payload.get("features") if isinstance(stations_payload, dict) else None
    candidates = []
    for feature in features or []:
        if not isinstance(feature, dict):
            continue
        identifier = (feature.get("properties") or {}).get("stationIdentifier")
        if isinstance(identifier, str) and STATION_ID_PATTERN.match(identifier):
            candidates.append(identifier)
    return candidates


class StationResolver:
    """
    Resolves the configured coordinates to a station id.

    Order: explicit override, then a valid cache entry, then a live
    lookup (points -> gridpoint stations) whose result is written to
    the cache. The answer is memoized for the life of the instance.
    """

    def __init__(self, fetcher: RetryingFetcher, metrics: MetricsCollector, cache_file: Path):
        self.fetcher = fetcher
        self.metrics = metrics
        self.cache_file = Path(cache_file)
        self._resolved: Optional[Tuple[Coordinates, Optional[str], str]] = None

    def resolve(self, coordinates: Optional[Coordinates], override: Optional[str] = None) -> str:
        """
        Return the station id for coordinates.

        Raises:
            ConfigError: If coordinates are missing or invalid
            ResolutionError: If the grid cell has no usable station
            FetchError: If the upstream lookups fail
        """
        if coordinates is None:
            raise ConfigError("Latitude and longitude must be configured with valid numbers")
        coordinates = validate_coordinates(coordinates.latitude, coordinates.longitude)
        override = override or None

        if self._resolved is not None and self._resolved[:2] == (coordinates, override):
            return self._resolved[2]

        if override:
            logging.info(f"Using manually configured NOAA station: {override}")
            station_id = override
        else:
            station_id = self._from_cache(coordinates) or self._resolve_live(coordinates)

        self._resolved = (coordinates, override, station_id)
        return station_id

    def _from_cache(self, coordinates: Coordinates) -> Optional[str]:
        """Station id from a valid cache entry. A corrupted cache file is deleted."""
        try:
            data = read_json(self.cache_file)
            if data is None:
                return None
            try:
                entry = StationCacheEntry.from_dict(data)
            except (KeyError, TypeError) as e:
                raise CacheCorruptionError(f"Malformed station cache: {e}") from e
        except CacheCorruptionError as e:
            self.metrics.station_cache_resets += 1
            logging.warning(f"Corrupted NOAA station cache detected, rebuilding: {e}")
            delete_file(self.cache_file)
            return None

        if not entry.is_valid_for(coordinates):
            logging.info("Station cache is stale or for other coordinates, resolving again")
            return None

        logging.info(
            f"Using cached NOAA station: {entry.station_id} "
            f"(grid {entry.grid_id}/{entry.grid_x},{entry.grid_y})"
        )
        return entry.station_id

    def _resolve_live(self, coordinates: Coordinates) -> str:
        logging.info(f"Fetching NOAA grid data for coordinates: {coordinates.as_query()}")
        point = self.fetcher.fetch(points_url(coordinates))
        try:
            properties = point["properties"]
            grid_id = properties["gridId"]
            grid_x = properties["gridX"]
            grid_y = properties["gridY"]
        except (KeyError, TypeError) as e:
            raise ResolutionError(f"Grid lookup response missing {e}") from e
        if not grid_id or grid_x is None or grid_y is None:
            raise ResolutionError(f"No grid cell for coordinates {coordinates.as_query()}")
        logging.info(f"Grid location: {grid_id}/{grid_x},{grid_y}")

        stations = self.fetcher.fetch(gridpoint_stations_url(grid_id, grid_x, grid_y))
        candidates = filter_station_candidates(stations)
        if not candidates:
            raise ResolutionError(f"No valid NOAA stations found for grid cell {grid_id}/{grid_x},{grid_y}")

        # Upstream already orders candidates by distance/representativeness
        station_id = candidates[0]
        logging.info(
            "NOAA grid station candidates (ordered): %s",
            ", ".join(candidates[:MAX_LOGGED_CANDIDATES]),
        )
        logging.info(f"Selected NOAA station: {station_id} (grid {grid_id}/{grid_x},{grid_y})")

        entry = StationCacheEntry(
            latitude=coordinates.latitude,
            longitude=coordinates.longitude,
            grid_id=grid_id,
            grid_x=grid_x,
            grid_y=grid_y,
            station_id=station_id,
            timestamp=now_ms(),
        )
        try:
            write_json(self.cache_file, entry.to_dict())
        except OSError as e:
            logging.error(f"Failed to write station cache {self.cache_file}: {e}")
        return station_id
