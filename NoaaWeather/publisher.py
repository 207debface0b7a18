"""Publisher abstraction - the downstream sink the poller hands readings to."""
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from state_store import read_json, write_json
from weather_data import Reading, now_ms
from weather_errors import CacheCorruptionError, PublishError


class Publisher(ABC):
    """Abstract sink for temperature/humidity readings."""

    @abstractmethod
    def publish(self, reading: Reading) -> None:
        """
        Push the non-null fields of reading downstream.

        Fields that are None must leave the previously published value alone.

        Raises:
            PublishError: If the sink rejects the update
        """
        pass

    @abstractmethod
    def exists(self) -> bool:
        """Whether the sink is still there to receive updates."""
        pass

    @abstractmethod
    def recreate(self) -> None:
        """
        Rebuild a sink that no longer exists.

        Raises:
            PublishError: If the sink cannot be rebuilt
        """
        pass


class StatusFilePublisher(Publisher):
    """
    Publishes the latest reading as a small JSON status file.

    The file is rewritten on every publish with the merged values, so a
    reader always sees the last non-null temperature and humidity.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def publish(self, reading: Reading) -> None:
        if not self.exists():
            raise PublishError(f"Status directory {self.path.parent} does not exist")
        try:
            current = read_json(self.path) or {}
        except CacheCorruptionError as e:
            logging.warning(f"Discarding unreadable status file: {e}")
            current = {}
        if not isinstance(current, dict):
            current = {}
        current.update(reading.present())
        current["updated"] = now_ms()
        try:
            write_json(self.path, current)
        except (OSError, TypeError, ValueError) as e:
            raise PublishError(f"Failed to write status file {self.path}: {e}") from e
        logging.info(f"Published to {self.path}: {json.dumps(reading.present())}")

    def exists(self) -> bool:
        return self.path.parent.is_dir()

    def recreate(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PublishError(f"Could not recreate {self.path.parent}: {e}") from e
        logging.info(f"Recreated status directory {self.path.parent}")


class FakePublisher(Publisher):
    """
    In-memory publisher for tests and dry runs.

    Set fail_times to make the next N publish() calls raise, and
    present=False to simulate a sink that has disappeared.
    """

    def __init__(self):
        self.temperature: Optional[float] = None
        self.humidity: Optional[float] = None
        self.published: List[Reading] = []
        self.fail_times = 0
        self.present = True
        self.fail_recreate = False
        self.recreate_count = 0

    def publish(self, reading: Reading) -> None:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise PublishError("simulated publish failure")
        if not self.present:
            raise PublishError("sink does not exist")
        if reading.temperature is not None:
            self.temperature = reading.temperature
        if reading.humidity is not None:
            self.humidity = reading.humidity
        self.published.append(reading)

    def exists(self) -> bool:
        return self.present

    def recreate(self) -> None:
        self.recreate_count += 1
        if self.fail_recreate:
            raise PublishError("simulated recreate failure")
        self.present = True
