"""Exception types raised by the station resolver, fetcher, poller and publishers."""
from typing import Optional


class NoaaWeatherError(Exception):
    """Base class for all errors raised by this project."""
    pass


class ConfigError(NoaaWeatherError):
    """Missing or invalid configuration (coordinates, numbers)."""
    pass


class FetchError(NoaaWeatherError):
    """A GET against the upstream API failed for good."""

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class NonRetryableUpstreamError(FetchError):
    """Upstream answered with a status that is not worth retrying (4xx other than 429)."""
    pass


class RateLimitedError(NoaaWeatherError):
    """HTTP 429. Only raised and handled inside the fetcher."""

    def __init__(self, retry_after: Optional[float] = None):
        super().__init__(f"rate limited (retry-after={retry_after})")
        self.retry_after = retry_after


class TransientUpstreamError(NoaaWeatherError):
    """5xx or no response at all. Only raised and handled inside the fetcher."""

    def __init__(self, status: int = 0, reason: str = ""):
        super().__init__(f"transient upstream error (status={status or 'NO_RESPONSE'}) {reason}".rstrip())
        self.status = status


class ResolutionError(NoaaWeatherError):
    """No usable station could be determined for the configured coordinates."""
    pass


class CacheCorruptionError(NoaaWeatherError):
    """A persisted JSON file could not be parsed. Always recovered by deleting the file."""
    pass


class ObservationError(NoaaWeatherError):
    """Latest-observation payload is missing its properties block."""
    pass


class PublishError(NoaaWeatherError):
    """The downstream sink rejected an update."""
    pass


class ShutdownRequested(NoaaWeatherError):
    """Raised out of a wait when the process is shutting down."""
    pass
