"""Tests for the weather poller."""
import json
import pytest
from unittest.mock import Mock

from metrics import MetricsCollector
from noaa_client import RetryingFetcher
from publisher import FakePublisher
from state_store import LastKnownGoodStore
from weather_data import LastKnownGood
from weather_errors import FetchError, ShutdownRequested
from weather_poller import (
    SCHEDULE_FROM_COMPLETION,
    SCHEDULE_FROM_START,
    AdaptiveInterval,
    FixedInterval,
    WeatherPoller,
    parse_observation,
)

OBSERVATION_URL = "https://api.weather.gov/stations/KPHL/observations/latest?require_qc=true"


def observation(temperature=21.7, humidity=48.2, present_weather=None, **extra):
    properties = {
        "timestamp": "2024-05-24T12:54:00+00:00",
        "temperature": {"value": temperature, "qualityControl": "V"},
        "relativeHumidity": {"value": humidity, "qualityControl": "C"},
        "elevation": {"value": 9, "unitCode": "wmoUnit:m"},
        "presentWeather": present_weather or [],
    }
    properties.update(extra)
    return {"properties": properties}


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class RecordingWait:
    def __init__(self):
        self.delays = []

    def __call__(self, seconds):
        self.delays.append(seconds)
        return False


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def store(tmp_path, metrics):
    return LastKnownGoodStore(tmp_path / "noaa-weather-last.json", metrics)


@pytest.fixture
def fetcher():
    fetcher = Mock(spec=RetryingFetcher)
    fetcher.fetch.return_value = observation()
    return fetcher


@pytest.fixture
def poller(fetcher, publisher, metrics, store):
    return WeatherPoller(
        fetcher, publisher, metrics, store, interval_seconds=300, clock=FakeClock(), wait=RecordingWait(),
    )


def test_parse_observation():
    sample = parse_observation(observation(present_weather=[{"weather": "light rain"}, {"weather": "mist"}]))

    assert sample.timestamp == "2024-05-24T12:54:00+00:00"
    assert sample.temperature == 21.7
    assert sample.humidity == 48.2
    assert sample.temperature_qc == "V"
    assert sample.humidity_qc == "C"
    assert sample.elevation == 9.0
    assert sample.conditions == "light rain, mist"


def test_parse_observation_missing_fields():
    """Test absent blocks become None, unknown QC, zero elevation and "None" conditions."""
    sample = parse_observation({"properties": {"timestamp": "2024-05-24T12:54:00+00:00"}})

    assert sample.temperature is None
    assert sample.humidity is None
    assert sample.temperature_qc == "unknown"
    assert sample.humidity_qc == "unknown"
    assert sample.elevation == 0.0
    assert sample.conditions == "None"


def test_parse_observation_without_properties():
    from weather_errors import ObservationError

    with pytest.raises(ObservationError):
        parse_observation({"type": "Feature"})


def test_cycle_publishes_and_persists(poller, fetcher, publisher, store):
    sample = poller.run_cycle("KPHL")

    fetcher.fetch.assert_called_once_with(OBSERVATION_URL)
    assert sample.temperature == 21.7
    assert publisher.temperature == 21.7
    assert publisher.humidity == 48.2
    assert store.load() == LastKnownGood(temperature=21.7, humidity=48.2)
    assert json.loads(store.path.read_text()) == {"temperature": 21.7, "humidity": 48.2}


def test_cycle_null_temperature_publishes_humidity_only(poller, fetcher, publisher, store):
    """Test a null temperature is neither published nor merged into last-known-good."""
    store.save(LastKnownGood(temperature=18.0, humidity=60.0))
    poller.last_known_good = store.load()
    fetcher.fetch.return_value = observation(temperature=None, humidity=55.0)

    poller.run_cycle("KPHL")

    assert publisher.published[-1].temperature is None
    assert publisher.published[-1].humidity == 55.0
    assert publisher.temperature is None
    assert store.load() == LastKnownGood(temperature=18.0, humidity=55.0)


def test_cycle_malformed_temperature_block_still_publishes_humidity(poller, fetcher, publisher, metrics):
    """Test a temperature that is not an object is treated as missing."""
    data = observation(humidity=55.0)
    data["properties"]["temperature"] = "n/a"
    fetcher.fetch.return_value = data

    sample = poller.run_cycle("KPHL")

    assert sample.temperature is None
    assert sample.temperature_qc == "unknown"
    assert publisher.temperature is None
    assert publisher.humidity == 55.0
    assert metrics.api_failures == 0


def test_cycle_all_null_skips_publish(poller, fetcher, publisher, store, metrics):
    """Test a reading with nothing in it is not an error and changes nothing."""
    fetcher.fetch.return_value = observation(temperature=None, humidity=None)

    sample = poller.run_cycle("KPHL")

    assert sample is not None
    assert publisher.published == []
    assert not store.path.exists()
    assert metrics.api_failures == 0


def test_cycle_fetch_failure_is_absorbed(poller, fetcher, publisher, metrics):
    fetcher.fetch.side_effect = FetchError("exhausted retries")

    assert poller.run_cycle("KPHL") is None
    assert metrics.api_failures == 1
    assert publisher.published == []


def test_cycle_bad_payload_counts_as_api_failure(poller, fetcher, metrics):
    fetcher.fetch.return_value = {"unexpected": True}

    assert poller.run_cycle("KPHL") is None
    assert metrics.api_failures == 1


def test_publish_recovers_by_recreating_sink(poller, publisher, metrics, store):
    """Test a missing sink is recreated once and the publish retried."""
    publisher.present = False

    poller.run_cycle("KPHL")

    assert publisher.recreate_count == 1
    assert publisher.temperature == 21.7
    assert metrics.publish_recoveries == 1
    assert metrics.publish_failures == 0
    assert store.load().temperature == 21.7


def test_publish_retry_without_recreate_when_sink_exists(poller, publisher, metrics):
    publisher.fail_times = 1

    poller.run_cycle("KPHL")

    assert publisher.recreate_count == 0
    assert publisher.temperature == 21.7
    assert metrics.publish_recoveries == 1


def test_publish_failure_after_recovery_keeps_last_known_good(poller, publisher, metrics, store):
    """Test a failed recovery is counted and last-known-good is not updated."""
    publisher.fail_times = 2

    poller.run_cycle("KPHL")

    assert metrics.publish_failures == 1
    assert metrics.publish_recoveries == 0
    assert poller.last_known_good == LastKnownGood()
    assert not store.path.exists()


def test_failed_recreate_is_counted(poller, publisher, metrics):
    publisher.present = False
    publisher.fail_recreate = True

    poller.run_cycle("KPHL")

    assert publisher.recreate_count == 1
    assert metrics.publish_failures == 1


def test_last_known_good_write_failure_is_not_fatal(fetcher, publisher, metrics, tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a directory")
    store = LastKnownGoodStore(blocker / "last.json", metrics)
    poller = WeatherPoller(fetcher, publisher, metrics, store, wait=RecordingWait())

    sample = poller.run_cycle("KPHL")

    assert sample is not None
    assert publisher.temperature == 21.7
    assert metrics.cache_write_errors == 1


def test_run_primes_sink_and_polls_immediately(fetcher, publisher, metrics, store):
    """Test the stored reading is published first and the first fetch is not delayed."""
    store.save(LastKnownGood(temperature=15.0, humidity=70.0))
    wait = RecordingWait()
    poller = WeatherPoller(fetcher, publisher, metrics, store, interval_seconds=300, wait=wait)

    poller.run("KPHL", max_cycles=1)

    assert publisher.published[0].temperature == 15.0
    assert publisher.published[1].temperature == 21.7
    assert wait.delays == []
    assert poller.state == "stopped"


def test_run_survives_failing_cycles(fetcher, publisher, metrics, store):
    """Test failed and crashing cycles do not end the loop."""
    fetcher.fetch.side_effect = [
        FetchError("exhausted retries"),
        RuntimeError("boom"),
        observation(),
    ]
    wait = RecordingWait()
    poller = WeatherPoller(fetcher, publisher, metrics, store, interval_seconds=60, clock=FakeClock(), wait=wait)

    poller.run("KPHL", max_cycles=3)

    assert fetcher.fetch.call_count == 3
    assert metrics.api_failures == 1
    assert publisher.temperature == 21.7
    assert wait.delays == [60, 60]


def test_run_interval_measured_from_cycle_start(fetcher, publisher, metrics, store):
    clock = FakeClock()
    wait = RecordingWait()

    def slow_fetch(url):
        clock.now += 20
        return observation()

    fetcher.fetch.side_effect = slow_fetch
    poller = WeatherPoller(
        fetcher, publisher, metrics, store,
        interval_seconds=300, schedule=SCHEDULE_FROM_START, clock=clock, wait=wait,
    )

    poller.run("KPHL", max_cycles=2)

    assert wait.delays == [280]


def test_run_interval_measured_from_completion(fetcher, publisher, metrics, store):
    clock = FakeClock()
    wait = RecordingWait()

    def slow_fetch(url):
        clock.now += 20
        return observation()

    fetcher.fetch.side_effect = slow_fetch
    poller = WeatherPoller(
        fetcher, publisher, metrics, store,
        interval_seconds=300, schedule=SCHEDULE_FROM_COMPLETION, clock=clock, wait=wait,
    )

    poller.run("KPHL", max_cycles=2)

    assert wait.delays == [300]


def test_run_long_cycle_does_not_wait(fetcher, publisher, metrics, store):
    """Test a cycle that overruns its interval is followed straight away by the next."""
    clock = FakeClock()
    wait = RecordingWait()

    def very_slow_fetch(url):
        clock.now += 500
        return observation()

    fetcher.fetch.side_effect = very_slow_fetch
    poller = WeatherPoller(fetcher, publisher, metrics, store, interval_seconds=300, clock=clock, wait=wait)

    poller.run("KPHL", max_cycles=2)

    assert wait.delays == [0.0]


def test_run_interval_argument_overrides_policy(poller):
    poller.run("KPHL", interval_seconds=42, max_cycles=2)

    assert poller._wait.delays == [42]


def test_run_stops_on_shutdown_during_fetch(fetcher, publisher, metrics, store):
    fetcher.fetch.side_effect = ShutdownRequested("stop")
    poller = WeatherPoller(fetcher, publisher, metrics, store, wait=RecordingWait())

    poller.run("KPHL")

    assert fetcher.fetch.call_count == 1
    assert poller.state == "stopped"
    assert metrics.api_failures == 0


def test_run_stops_when_wait_reports_shutdown(fetcher, publisher, metrics, store):
    poller = WeatherPoller(fetcher, publisher, metrics, store, wait=lambda seconds: True)

    poller.run("KPHL")

    assert fetcher.fetch.call_count == 1


def test_run_does_nothing_when_already_stopped(fetcher, publisher, metrics, store):
    poller = WeatherPoller(fetcher, publisher, metrics, store, wait=RecordingWait())
    poller.stop()

    poller.run("KPHL")

    assert fetcher.fetch.call_count == 0


def test_invalid_schedule_rejected(fetcher, publisher, metrics, store):
    with pytest.raises(ValueError):
        WeatherPoller(fetcher, publisher, metrics, store, schedule="sometimes")


def test_fixed_interval():
    assert FixedInterval(300).next_interval(None) == 300


def test_adaptive_interval_quiet_when_temperature_steady():
    policy = AdaptiveInterval(300, quiet_interval_seconds=1800)

    first = parse_observation(observation(temperature=20.0))
    steady = parse_observation(observation(temperature=20.4))
    jump = parse_observation(observation(temperature=21.0))
    missing = parse_observation(observation(temperature=None))

    assert policy.next_interval(first) == 300
    assert policy.next_interval(steady) == 1800
    assert policy.next_interval(jump) == 300
    assert policy.next_interval(None) == 300
    assert policy.next_interval(missing) == 300
    assert policy.next_interval(parse_observation(observation(temperature=21.2))) == 1800
