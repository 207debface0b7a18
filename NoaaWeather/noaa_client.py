"""HTTP access to api.weather.gov with retry, backoff and rate-limit handling."""
import logging
import math
import threading
from typing import Any, Callable, Optional

import requests

from metrics import MetricsCollector
from weather_data import Coordinates
from weather_errors import (
    FetchError,
    NonRetryableUpstreamError,
    RateLimitedError,
    ShutdownRequested,
    TransientUpstreamError,
)

BASE_URL = "https://api.weather.gov"
DEFAULT_USER_AGENT = "noaa-weather (https://github.com/noaa-weather/noaa-weather)"
DEFAULT_REFERER = "https://github.com/noaa-weather/noaa-weather"

DEFAULT_MAX_RETRIES = 4
INITIAL_BACKOFF_SECONDS = 1.0
RETRYABLE_STATUSES = (500, 502, 503, 504)


def points_url(coordinates: Coordinates, base_url: str = BASE_URL) -> str:
    """Grid lookup for a coordinate."""
    return f"{base_url}/points/{coordinates.as_query()}"


def gridpoint_stations_url(grid_id: str, grid_x: int, grid_y: int, base_url: str = BASE_URL) -> str:
    """Observation stations for a grid cell, ordered by upstream."""
    return f"{base_url}/gridpoints/{grid_id}/{grid_x},{grid_y}/stations"


def latest_observation_url(station_id: str, base_url: str = BASE_URL) -> str:
    """Latest quality-controlled observation for a station."""
    return f"{base_url}/stations/{station_id}/observations/latest?require_qc=true"


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a numeric Retry-After header, or None if absent or not a number."""
    if value is None:
        return None
    try:
        seconds = float(str(value).strip())
    except ValueError:
        return None
    if not math.isfinite(seconds) or seconds < 0:
        return None
    return seconds


class RetryingFetcher:
    """
    GET + JSON decode against an unreliable upstream.

    429 responses wait for Retry-After (or the current backoff delay),
    5xx and network errors wait for the current backoff delay. The delay
    starts at one second and doubles after every retryable failure.
    Any other non-2xx status fails straight away.
    """

    def __init__(
        self,
        metrics: MetricsCollector,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: int = 10,
        max_retries: int = DEFAULT_MAX_RETRIES,
        session: Optional[requests.Session] = None,
        stop_event: Optional[threading.Event] = None,
        wait: Optional[Callable[[float], bool]] = None,
    ):
        """
        Initialize the fetcher.

        Args:
            metrics: Shared counters (retries, rate limits)
            user_agent: Contact string sent with every request
            timeout: HTTP request timeout in seconds
            max_retries: Default attempt budget for fetch()
            session: Pre-built requests session (tests inject a mock)
            stop_event: Set on shutdown; interrupts backoff waits
            wait: Called with a delay in seconds, returns True if shutdown
                was requested during the wait. Defaults to stop_event.wait.
        """
        self.metrics = metrics
        self.timeout = timeout
        self.max_retries = max_retries
        self.stop_event = stop_event or threading.Event()
        self._wait = wait or self.stop_event.wait

        self.session = session or requests.Session()
        self.session.headers.update({
            "User-Agent": user_agent,
            "Accept": "application/geo+json",
            "Referer": DEFAULT_REFERER,
        })

    def fetch(self, url: str, max_retries: Optional[int] = None) -> Any:
        """
        Fetch url and return the decoded JSON body.

        Raises:
            NonRetryableUpstreamError: On a non-retryable HTTP status
            FetchError: After max_retries attempts without success
            ShutdownRequested: If the stop event fires during a backoff wait
        """
        max_retries = self.max_retries if max_retries is None else max_retries
        attempt = 0
        delay = INITIAL_BACKOFF_SECONDS
        last_error: Optional[Exception] = None

        while attempt < max_retries:
            try:
                return self._get(url)
            except RateLimitedError as e:
                last_error = e
                self.metrics.rate_limited_count += 1
                self.metrics.retry_count += 1
                wait_seconds = e.retry_after if e.retry_after is not None else delay
                reason = "Rate limited (429)"
            except TransientUpstreamError as e:
                last_error = e
                self.metrics.retry_count += 1
                wait_seconds = delay
                reason = f"Request failed (status: {e.status or 'NO_RESPONSE'})"

            attempt += 1
            delay *= 2
            if attempt >= max_retries:
                logging.warning(f"{reason} on {url}. No attempts left.")
                break
            logging.warning(
                f"{reason} on {url}. Retrying in {wait_seconds:g}s (attempt {attempt + 1}/{max_retries})..."
            )
            if self._wait(wait_seconds):
                raise ShutdownRequested(f"Shutdown requested while waiting to retry {url}")

        logging.error(f"Giving up on {url} after {max_retries} attempts: {last_error}")
        raise FetchError(f"exhausted retries after {max_retries} attempts for URL: {url}", url=url)

    def _get(self, url: str) -> Any:
        """Single attempt. Classifies the outcome into the fetcher's internal error kinds."""
        try:
            logging.debug(f"GET {url}")
            response = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise TransientUpstreamError(0, str(e))

        status = response.status_code
        logging.debug(f"Response status {status} for {url}")

        if status == 429:
            raise RateLimitedError(parse_retry_after(response.headers.get("Retry-After")))
        if status in RETRYABLE_STATUSES:
            raise TransientUpstreamError(status)
        if not 200 <= status < 300:
            logging.error(f"Non-retryable HTTP {status} for {url}: {response.text[:200]}")
            raise NonRetryableUpstreamError(f"HTTP {status} for URL: {url}", url=url, status=status)

        try:
            return response.json()
        except ValueError as e:
            raise NonRetryableUpstreamError(f"Invalid JSON from {url}: {e}", url=url, status=status)

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "RetryingFetcher":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
