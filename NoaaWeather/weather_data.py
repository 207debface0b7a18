"""Weather domain model - pure data structures independent of the HTTP layer."""
from dataclasses import asdict, dataclass
from typing import Optional
import time

# Station cache entries older than this are ignored
STATION_CACHE_MAX_AGE_MS = 30 * 24 * 60 * 60 * 1000

DEFAULT_TEMPERATURE = 20.0
DEFAULT_HUMIDITY = 50.0


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Coordinates:
    """Fixed geographic point the station is resolved for."""
    latitude: float
    longitude: float

    def as_query(self) -> str:
        return f"{self.latitude},{self.longitude}"


@dataclass
class StationCacheEntry:
    """Persisted result of a full coordinate -> station resolution."""
    latitude: float
    longitude: float
    grid_id: str
    grid_x: int
    grid_y: int
    station_id: str
    timestamp: int  # epoch milliseconds

    @classmethod
    def from_dict(cls, data: dict) -> "StationCacheEntry":
        """
        Build an entry from decoded JSON.

        Raises:
            KeyError: If a field is missing
            TypeError: If the payload is not an object
        """
        if not isinstance(data, dict):
            raise TypeError(f"expected object, got {type(data).__name__}")
        return cls(
            latitude=data["latitude"],
            longitude=data["longitude"],
            grid_id=data["gridId"],
            grid_x=data["gridX"],
            grid_y=data["gridY"],
            station_id=data["stationId"],
            timestamp=data["timestamp"],
        )

    def to_dict(self) -> dict:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "gridId": self.grid_id,
            "gridX": self.grid_x,
            "gridY": self.grid_y,
            "stationId": self.station_id,
            "timestamp": self.timestamp,
        }

    def is_valid_for(self, coordinates: Coordinates, now: Optional[int] = None) -> bool:
        """Check the entry matches the coordinates exactly, names a station and is under 30 days old."""
        now = now_ms() if now is None else now
        if self.latitude != coordinates.latitude or self.longitude != coordinates.longitude:
            return False
        if not isinstance(self.station_id, str) or not self.station_id:
            return False
        if not isinstance(self.timestamp, (int, float)):
            return False
        return now - self.timestamp < STATION_CACHE_MAX_AGE_MS


@dataclass
class Reading:
    """Values handed to a publisher. None means "no new value for this field"."""
    temperature: Optional[float] = None
    humidity: Optional[float] = None

    def is_empty(self) -> bool:
        return self.temperature is None and self.humidity is None

    def present(self) -> dict:
        """Only the non-null fields."""
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class WeatherSample:
    """One parsed observation, produced once per poll cycle."""
    timestamp: str
    temperature: Optional[float]  # degrees C
    humidity: Optional[float]  # percent
    temperature_qc: str
    humidity_qc: str
    elevation: float  # metres
    conditions: str  # e.g. "light rain, mist" or "None"

    def reading(self) -> Reading:
        return Reading(temperature=self.temperature, humidity=self.humidity)


@dataclass
class LastKnownGood:
    """Most recently published values, used as the fallback display."""
    temperature: float = DEFAULT_TEMPERATURE
    humidity: float = DEFAULT_HUMIDITY

    def merge(self, reading: Reading) -> "LastKnownGood":
        """Return a copy with the non-null fields of reading applied."""
        return LastKnownGood(
            temperature=self.temperature if reading.temperature is None else reading.temperature,
            humidity=self.humidity if reading.humidity is None else reading.humidity,
        )

    def reading(self) -> Reading:
        return Reading(temperature=self.temperature, humidity=self.humidity)

    def to_dict(self) -> dict:
        return asdict(self)
