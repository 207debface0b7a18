"""NOAA weather poller: resolve the nearest station, then publish its latest observation forever."""
import argparse
import logging
import math
import os
import signal
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from metrics import MetricsCollector, MetricsReporter
from noaa_client import DEFAULT_MAX_RETRIES, DEFAULT_USER_AGENT, RetryingFetcher
from publisher import Publisher, StatusFilePublisher
from state_store import LAST_KNOWN_GOOD_FILENAME, STATION_CACHE_FILENAME, LastKnownGoodStore
from station_resolver import StationResolver, validate_coordinates
from weather_data import Coordinates
from weather_errors import ConfigError, FetchError, ResolutionError, ShutdownRequested
from weather_poller import (
    SCHEDULE_FROM_START,
    SCHEDULES,
    AdaptiveInterval,
    FixedInterval,
    WeatherPoller,
)

DEFAULT_STATE_DIR = os.path.join(os.path.expanduser("~"), ".noaa-weather")
DEFAULT_REFRESH_MINUTES = 5.0
DEFAULT_QUIET_MINUTES = 30.0
STATUS_FILENAME = "noaa-weather-status.json"

STOP_EVENT = threading.Event()


@dataclass
class Config:
    coordinates: Coordinates
    station_id: Optional[str]
    refresh_minutes: float
    max_retries: int
    state_dir: Path
    user_agent: str


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser("NOAA weather poller")
    parser.add_argument("--latitude", help="Overrides NOAA_LATITUDE")
    parser.add_argument("--longitude", help="Overrides NOAA_LONGITUDE")
    parser.add_argument("--station-id", help="Use this station instead of resolving one")
    parser.add_argument("--refresh-minutes", help="Minutes between updates (default 5)")
    parser.add_argument("--max-retries", help="Attempts per request (default 4)")
    parser.add_argument("--state-dir", help="Directory for cache and status files")
    parser.add_argument("--status-file", help="Where to publish the latest reading")
    parser.add_argument("--schedule", choices=SCHEDULES, default=SCHEDULE_FROM_START,
                        help="Measure the interval from cycle start or cycle completion")
    parser.add_argument("--adaptive", action="store_true",
                        help="Use the quiet interval while the temperature is steady")
    parser.add_argument("--quiet-minutes", type=float, default=DEFAULT_QUIET_MINUTES)
    parser.add_argument("--metrics-interval", type=float, default=3600.0, help="Seconds between metrics summaries")
    parser.add_argument("--log-file", default=None)
    parser.add_argument("--once", action="store_true", help="Run a single update and exit")
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(argv)


def setup_logging(log_file: Optional[str], verbose: bool) -> None:
    log_level = logging.DEBUG if verbose else logging.INFO
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


def get_number(raw) -> Optional[float]:
    """Numeric config value (strings accepted), or None if absent or not a finite number."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def load_config(args: argparse.Namespace) -> Config:
    """
    Merge environment (.env included) and CLI flags into a Config.

    Raises:
        ConfigError: If the coordinates are missing or invalid
    """
    load_dotenv()
    latitude = get_number(args.latitude if args.latitude is not None else os.getenv("NOAA_LATITUDE"))
    longitude = get_number(args.longitude if args.longitude is not None else os.getenv("NOAA_LONGITUDE"))
    if latitude is None or longitude is None:
        raise ConfigError("Latitude and Longitude must be configured with valid numbers.")
    coordinates = validate_coordinates(latitude, longitude)

    station_id = (args.station_id or os.getenv("NOAA_STATION_ID") or "").strip() or None

    refresh = get_number(args.refresh_minutes or os.getenv("NOAA_REFRESH_MINUTES"))
    if refresh is None or refresh <= 0:
        refresh = DEFAULT_REFRESH_MINUTES

    max_retries = get_number(args.max_retries or os.getenv("NOAA_MAX_RETRIES"))
    max_retries = int(max_retries) if max_retries is not None and max_retries >= 1 else DEFAULT_MAX_RETRIES

    state_dir = Path(args.state_dir or os.getenv("NOAA_STATE_DIR") or DEFAULT_STATE_DIR).expanduser()
    user_agent = os.getenv("NOAA_USER_AGENT", DEFAULT_USER_AGENT)

    logging.info(
        "Configuration loaded: lat=%s lon=%s station=%s refresh=%smin retries=%s state=%s",
        coordinates.latitude,
        coordinates.longitude,
        station_id or "auto",
        refresh,
        max_retries,
        state_dir,
    )
    return Config(
        coordinates=coordinates,
        station_id=station_id,
        refresh_minutes=refresh,
        max_retries=max_retries,
        state_dir=state_dir,
        user_agent=user_agent,
    )


def build_poller(
    config: Config,
    args: argparse.Namespace,
    fetcher: RetryingFetcher,
    publisher: Publisher,
    metrics: MetricsCollector,
) -> WeatherPoller:
    interval_seconds = config.refresh_minutes * 60
    if args.adaptive:
        policy = AdaptiveInterval(interval_seconds, quiet_interval_seconds=args.quiet_minutes * 60)
    else:
        policy = FixedInterval(interval_seconds)
    poller = WeatherPoller(
        fetcher=fetcher,
        publisher=publisher,
        metrics=metrics,
        store=LastKnownGoodStore(config.state_dir / LAST_KNOWN_GOOD_FILENAME, metrics),
        interval_policy=policy,
        schedule=args.schedule,
        stop_event=STOP_EVENT,
    )
    logging.info("Weather poller ready (interval=%ss, adaptive=%s)", interval_seconds, args.adaptive)
    return poller


def signal_handler(signum, frame):
    logging.info("Received signal %s, shutting down", signum)
    STOP_EVENT.set()


def main(argv=None) -> None:
    args = parse_args(argv)
    setup_logging(args.log_file, args.verbose)
    try:
        config = load_config(args)
    except ConfigError as err:
        logging.error("Invalid configuration: %s", err)
        raise SystemExit(1) from err
    try:
        config.state_dir.mkdir(parents=True, exist_ok=True)
    except OSError as err:
        logging.error("State directory %s is not writable: %s", config.state_dir, err)
        raise SystemExit(1) from err

    metrics = MetricsCollector()
    reporter = MetricsReporter(metrics, interval_seconds=args.metrics_interval)
    fetcher = RetryingFetcher(
        metrics,
        user_agent=config.user_agent,
        max_retries=config.max_retries,
        stop_event=STOP_EVENT,
    )
    publisher = StatusFilePublisher(Path(args.status_file) if args.status_file else config.state_dir / STATUS_FILENAME)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    reporter.start()
    try:
        resolver = StationResolver(fetcher, metrics, config.state_dir / STATION_CACHE_FILENAME)
        try:
            station_id = resolver.resolve(config.coordinates, config.station_id)
        except (ConfigError, FetchError, ResolutionError) as err:
            logging.error("Failed to determine NOAA station: %s", err)
            raise SystemExit(1) from err

        poller = build_poller(config, args, fetcher, publisher, metrics)
        poller.run(station_id, max_cycles=1 if args.once else None)
    except (KeyboardInterrupt, ShutdownRequested):
        logging.info("Stopping poller")
    finally:
        reporter.stop()
        fetcher.close()


if __name__ == "__main__":
    main()
