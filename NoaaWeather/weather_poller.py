"""Long-running fetch -> parse -> publish loop for one station."""
import logging
import math
import threading
import time
from typing import Any, Callable, Optional, Union

from metrics import MetricsCollector
from noaa_client import RetryingFetcher, latest_observation_url
from publisher import Publisher
from state_store import LastKnownGoodStore
from weather_data import Reading, WeatherSample
from weather_errors import FetchError, ObservationError, PublishError, ShutdownRequested

SCHEDULE_FROM_START = "start"
SCHEDULE_FROM_COMPLETION = "completion"
SCHEDULES = (SCHEDULE_FROM_START, SCHEDULE_FROM_COMPLETION)

DEFAULT_QUIET_INTERVAL_SECONDS = 30 * 60
QUIET_TEMPERATURE_DELTA = 0.5


def _value(block: Any) -> Optional[float]:
    """Numeric "value" of an upstream quantity block, or None."""
    if not isinstance(block, dict):
        return None
    value = block.get("value")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None


def parse_observation(data: Any) -> WeatherSample:
    """
    Turn a latest-observation response into a WeatherSample.

    Missing or null quantities become None, missing QC flags become
    "unknown", a missing elevation becomes 0 and an empty list of
    present-weather phenomena becomes "None".

    Raises:
        ObservationError: If the response has no properties object
    """
    properties = data.get("properties") if isinstance(data, dict) else None
    if not isinstance(properties, dict):
        raise ObservationError("Observation response missing 'properties'")

    temperature = properties.get("temperature")
    temperature = temperature if isinstance(temperature, dict) else {}
    humidity = properties.get("relativeHumidity")
    humidity = humidity if isinstance(humidity, dict) else {}
    elevation = _value(properties.get("elevation"))
    phenomena = [
        str(item.get("weather"))
        for item in properties.get("presentWeather") or []
        if isinstance(item, dict) and item.get("weather")
    ]

    return WeatherSample(
        timestamp=str(properties.get("timestamp") or ""),
        temperature=_value(temperature),
        humidity=_value(humidity),
        temperature_qc=temperature.get("qualityControl") or "unknown",
        humidity_qc=humidity.get("qualityControl") or "unknown",
        elevation=elevation if elevation is not None else 0.0,
        conditions=", ".join(phenomena) or "None",
    )


class FixedInterval:
    """Same delay after every cycle."""

    def __init__(self, interval_seconds: float):
        self.interval_seconds = interval_seconds

    def next_interval(self, sample: Optional[WeatherSample]) -> float:
        return self.interval_seconds


class AdaptiveInterval:
    """
    Back off to a long quiet interval while the temperature is steady.

    When two consecutive readings differ by less than threshold degrees
    the quiet interval is used, otherwise the configured one. Cycles
    without a temperature use the configured interval and do not reset
    the comparison.
    """

    def __init__(
        self,
        interval_seconds: float,
        quiet_interval_seconds: float = DEFAULT_QUIET_INTERVAL_SECONDS,
        threshold: float = QUIET_TEMPERATURE_DELTA,
    ):
        self.interval_seconds = interval_seconds
        self.quiet_interval_seconds = quiet_interval_seconds
        self.threshold = threshold
        self._last_temperature: Optional[float] = None

    def next_interval(self, sample: Optional[WeatherSample]) -> float:
        if sample is None or sample.temperature is None:
            return self.interval_seconds
        previous = self._last_temperature
        self._last_temperature = sample.temperature
        if previous is not None and abs(sample.temperature - previous) < self.threshold:
            logging.debug(f"Temperature steady ({previous} -> {sample.temperature}), using quiet interval")
            return self.quiet_interval_seconds
        return self.interval_seconds


class WeatherPoller:
    """
    Polls the latest observation for a station and publishes it.

    Each cycle either publishes a reading or logs and carries on; the
    loop only ends when the stop event is set. Only non-null values are
    published and merged into the last-known-good reading, which is
    written to disk after every successful publish.
    """

    def __init__(
        self,
        fetcher: RetryingFetcher,
        publisher: Publisher,
        metrics: MetricsCollector,
        store: LastKnownGoodStore,
        interval_seconds: float = 300.0,
        interval_policy: Optional[Union[FixedInterval, AdaptiveInterval]] = None,
        schedule: str = SCHEDULE_FROM_START,
        stop_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
        wait: Optional[Callable[[float], bool]] = None,
    ):
        """
        Initialize the poller.

        Args:
            fetcher: Retrying HTTP fetcher
            publisher: Downstream sink
            metrics: Shared counters
            store: Last-known-good persistence
            interval_seconds: Delay between cycles (ignored if interval_policy is given)
            interval_policy: FixedInterval (default) or AdaptiveInterval
            schedule: "start" measures the interval from cycle start,
                "completion" waits the full interval after each cycle
            stop_event: Set on shutdown
            clock: Monotonic clock, injectable for tests
            wait: Called with a delay, returns True if shutdown was requested
        """
        if schedule not in SCHEDULES:
            raise ValueError(f"schedule must be one of {SCHEDULES}, got {schedule!r}")
        self.fetcher = fetcher
        self.publisher = publisher
        self.metrics = metrics
        self.store = store
        self.interval_policy = interval_policy or FixedInterval(interval_seconds)
        self.schedule = schedule
        self.stop_event = stop_event or threading.Event()
        self.clock = clock
        self._wait = wait or self.stop_event.wait

        self.state = "idle"
        self.last_known_good = store.load()

    def publish_last_known_good(self) -> bool:
        """Push the stored reading so the sink is populated before the first fetch finishes."""
        logging.info(
            f"Publishing last known weather: {self.last_known_good.temperature}°C, "
            f"{self.last_known_good.humidity}%"
        )
        return self._publish_with_recovery(self.last_known_good.reading())

    def run_cycle(self, station_id: str) -> Optional[WeatherSample]:
        """
        One fetch -> parse -> publish -> persist pass.

        Returns:
            The parsed sample, or None if the fetch or parse failed

        Raises:
            ShutdownRequested: If shutdown interrupts a backoff wait
        """
        logging.info("Starting NOAA weather update...")
        try:
            data = self.fetcher.fetch(latest_observation_url(station_id))
            sample = parse_observation(data)
        except (FetchError, ObservationError) as e:
            self.metrics.api_failures += 1
            logging.error(f"Failed to fetch NOAA data: {e}")
            return None

        logging.info(
            "NOAA data - timestamp: %s, temp: %s°C (QC: %s), humidity: %s%% (QC: %s), "
            "elevation: %sm, conditions: %s",
            sample.timestamp,
            sample.temperature,
            sample.temperature_qc,
            sample.humidity,
            sample.humidity_qc,
            sample.elevation,
            sample.conditions,
        )

        reading = sample.reading()
        if reading.is_empty():
            logging.warning("NOAA returned null temperature and humidity. Keeping last known values.")
            return sample

        if self._publish_with_recovery(reading):
            self.last_known_good = self.last_known_good.merge(reading)
            self.store.save(self.last_known_good)
        return sample

    def _publish_with_recovery(self, reading: Reading) -> bool:
        """Publish, and on failure recreate a missing sink and try exactly once more."""
        try:
            self.publisher.publish(reading)
            return True
        except PublishError as e:
            logging.error(f"Failed to publish weather: {e}. Attempting recovery.")

        try:
            if not self.publisher.exists():
                self.publisher.recreate()
            self.publisher.publish(reading)
        except PublishError as e:
            self.metrics.publish_failures += 1
            logging.error(f"Failed to recover publisher: {e}")
            return False

        self.metrics.publish_recoveries += 1
        logging.info("Recovered publisher and published weather successfully.")
        return True

    def run(self, station_id: str, interval_seconds: Optional[float] = None, max_cycles: Optional[int] = None) -> None:
        """
        Poll until the stop event is set (or max_cycles cycles have run).

        The first cycle starts immediately. A cycle that is still retrying
        when its interval would elapse simply runs long.
        """
        if interval_seconds is not None:
            self.interval_policy.interval_seconds = interval_seconds

        self.state = "polling"
        logging.info(f"Polling station {station_id} (schedule from {self.schedule})")
        self.publish_last_known_good()

        cycle = 0
        while not self.stop_event.is_set():
            cycle += 1
            started = self.clock()
            sample = None
            try:
                sample = self.run_cycle(station_id)
            except ShutdownRequested as e:
                logging.info(f"Cycle {cycle} interrupted: {e}")
                break
            except Exception as exc:
                logging.exception("Unexpected error in cycle %s: %s", cycle, exc)

            if max_cycles is not None and cycle >= max_cycles:
                break

            delay = self.interval_policy.next_interval(sample)
            if self.schedule == SCHEDULE_FROM_START:
                delay = max(0.0, delay - (self.clock() - started))
            logging.debug(f"Next NOAA update in {delay:.1f}s")
            if self._wait(delay):
                break

        self.state = "stopped"
        logging.info(f"Stopped polling station {station_id} after {cycle} cycle(s)")

    def stop(self) -> None:
        self.stop_event.set()
