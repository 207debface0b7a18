"""Process-lifetime counters shared by the fetcher, resolver and poller."""
import logging
import threading
from dataclasses import dataclass
from typing import Optional

DEFAULT_FLUSH_INTERVAL_SECONDS = 60 * 60


@dataclass
class MetricsCollector:
    """
    Monotonic counters, reset only by restarting the process.

    One instance is created at startup and passed to every component.
    Only the single poller/resolver call path mutates it, so no locking.
    """
    api_failures: int = 0
    retry_count: int = 0
    rate_limited_count: int = 0
    station_cache_resets: int = 0
    publish_failures: int = 0
    publish_recoveries: int = 0
    cache_resets: int = 0
    cache_write_errors: int = 0

    def log_summary(self) -> None:
        logging.info(
            "Metrics: API failures=%s, retries=%s, rate limited=%s, station cache resets=%s, "
            "publish failures=%s, publish recoveries=%s, cache resets=%s, cache write errors=%s",
            self.api_failures,
            self.retry_count,
            self.rate_limited_count,
            self.station_cache_resets,
            self.publish_failures,
            self.publish_recoveries,
            self.cache_resets,
            self.cache_write_errors,
        )


class MetricsReporter:
    """Background thread that logs a metrics summary on a fixed timer and once more on stop."""

    def __init__(
        self,
        metrics: MetricsCollector,
        interval_seconds: float = DEFAULT_FLUSH_INTERVAL_SECONDS,
        stop_event: Optional[threading.Event] = None,
    ):
        self.metrics = metrics
        self.interval_seconds = interval_seconds
        self._stop_event = stop_event or threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._flushed_final = False

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(
            target=self._loop,
            name="metrics-reporter",
            daemon=True,
        )
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            self.metrics.log_summary()

    def stop(self) -> None:
        """Stop the timer thread and flush one last summary (only once)."""
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        if not self._flushed_final:
            self._flushed_final = True
            self.metrics.log_summary()
