"""Tests for JSON state files and the last-known-good store."""
import json
import pytest
from unittest.mock import patch

from metrics import MetricsCollector
from state_store import LastKnownGoodStore, read_json, write_json
from weather_data import LastKnownGood
from weather_errors import CacheCorruptionError


@pytest.fixture
def metrics():
    return MetricsCollector()


def test_read_json_missing_file(tmp_path):
    assert read_json(tmp_path / "missing.json") is None


def test_read_json_corrupted(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text("{oops")

    with pytest.raises(CacheCorruptionError):
        read_json(path)


def test_write_json_replaces_content(tmp_path):
    """Test a write fully replaces the previous file and leaves no temp files."""
    path = tmp_path / "state" / "data.json"
    write_json(path, {"a": 1, "b": 2})
    write_json(path, {"c": 3})

    assert json.loads(path.read_text()) == {"c": 3}
    assert [p.name for p in path.parent.iterdir()] == ["data.json"]


def test_load_defaults_when_missing(tmp_path, metrics):
    store = LastKnownGoodStore(tmp_path / "last.json", metrics)

    assert store.load() == LastKnownGood(temperature=20.0, humidity=50.0)
    assert metrics.cache_resets == 0


def test_load_corrupted_file_resets(tmp_path, metrics):
    """Test a corrupted file is deleted, counted and replaced by defaults."""
    path = tmp_path / "last.json"
    path.write_text("not json at all")
    store = LastKnownGoodStore(path, metrics)

    assert store.load() == LastKnownGood()
    assert metrics.cache_resets == 1
    assert not path.exists()


def test_load_non_object_resets(tmp_path, metrics):
    path = tmp_path / "last.json"
    path.write_text("[1, 2, 3]")

    assert LastKnownGoodStore(path, metrics).load() == LastKnownGood()
    assert metrics.cache_resets == 1


def test_load_null_field_keeps_default(tmp_path, metrics):
    """Test a stored null does not replace the default."""
    path = tmp_path / "last.json"
    path.write_text(json.dumps({"temperature": None, "humidity": 61.5}))

    assert LastKnownGoodStore(path, metrics).load() == LastKnownGood(temperature=20.0, humidity=61.5)


def test_save_and_load_round_trip(tmp_path, metrics):
    store = LastKnownGoodStore(tmp_path / "last.json", metrics)

    assert store.save(LastKnownGood(temperature=-3.5, humidity=88.0)) is True
    assert store.load() == LastKnownGood(temperature=-3.5, humidity=88.0)


def test_save_failure_is_counted_not_raised(tmp_path, metrics):
    store = LastKnownGoodStore(tmp_path / "last.json", metrics)

    with patch("state_store.write_json", side_effect=OSError("disk full")):
        assert store.save(LastKnownGood()) is False

    assert metrics.cache_write_errors == 1
