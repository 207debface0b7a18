"""JSON state files kept in the state directory (station cache, last-known-good reading)."""
import json
import logging
import math
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from metrics import MetricsCollector
from weather_data import LastKnownGood
from weather_errors import CacheCorruptionError

STATION_CACHE_FILENAME = "noaa-points-cache.json"
LAST_KNOWN_GOOD_FILENAME = "noaa-weather-last.json"


def read_json(path: Path) -> Optional[Any]:
    """
    Read and decode a JSON file.

    Returns:
        The decoded value, or None if the file does not exist

    Raises:
        CacheCorruptionError: If the file exists but cannot be read or decoded
    """
    path = Path(path)
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        raise CacheCorruptionError(f"Unreadable state file {path}: {e}") from e


def write_json(path: Path, data: Any) -> None:
    """Replace path with the JSON encoding of data. The old content is never appended to."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def delete_file(path: Path) -> None:
    """Remove path if it exists. A failed removal is logged, not raised."""
    try:
        Path(path).unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logging.warning(f"Could not delete {path}: {e}")


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None


class LastKnownGoodStore:
    """Loads and saves the last-known-good reading, falling back to neutral defaults."""

    def __init__(self, path: Path, metrics: MetricsCollector):
        self.path = Path(path)
        self.metrics = metrics

    def load(self) -> LastKnownGood:
        """
        Load the stored reading.

        A missing file gives the defaults. A corrupted file is deleted,
        counted as a cache reset and also gives the defaults. A field that
        is null or not a number keeps its default.
        """
        defaults = LastKnownGood()
        try:
            data = read_json(self.path)
        except CacheCorruptionError as e:
            self.metrics.cache_resets += 1
            logging.warning(f"Corrupted weather cache detected, resetting: {e}")
            delete_file(self.path)
            return defaults

        if data is None:
            logging.info(f"No last known weather at {self.path}, using defaults")
            return defaults
        if not isinstance(data, dict):
            self.metrics.cache_resets += 1
            logging.warning(f"Weather cache {self.path} is not an object, resetting")
            delete_file(self.path)
            return defaults

        temperature = _number(data.get("temperature"))
        humidity = _number(data.get("humidity"))
        return LastKnownGood(
            temperature=defaults.temperature if temperature is None else temperature,
            humidity=defaults.humidity if humidity is None else humidity,
        )

    def save(self, last_known_good: LastKnownGood) -> bool:
        """Persist the reading. Returns False (and counts the error) if the write fails."""
        try:
            write_json(self.path, last_known_good.to_dict())
        except (OSError, TypeError, ValueError) as e:
            self.metrics.cache_write_errors += 1
            logging.error(f"Failed to write last weather cache {self.path}: {e}")
            return False
        logging.debug(f"Saved last known weather to {self.path}")
        return True
