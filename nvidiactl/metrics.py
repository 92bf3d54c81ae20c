"""Per-tick snapshots and the collectors that receive them.

Collectors only ever see a frozen copy of the tick state. Recording is best
effort: the control loop logs a MetricsError and carries on.
"""

import json
import logging
import os
import tempfile
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Protocol

log = logging.getLogger(__name__)


class MetricsError(Exception):
    """A snapshot could not be recorded, or a collector failed to close."""


@dataclass(frozen=True)
class Snapshot:
    """State of one control tick."""

    temperature: int
    average_temperature: int
    fan_speed: int
    target_fan_speed: int
    power_limit: int
    target_power_limit: int
    average_power_limit: int
    auto_fan_control: bool
    monitor: bool
    performance: bool
    timestamp: float = field(default_factory=time.time)

    def as_dict(self) -> dict[str, object]:
        return asdict(self)


class Collector(Protocol):
    def record(self, snapshot: Snapshot) -> None: ...

    def close(self) -> None: ...


class NullCollector:
    """Discards snapshots. Used when no status file is configured."""

    def record(self, snapshot: Snapshot) -> None:
        pass

    def close(self) -> None:
        pass


class StatusFileCollector:
    """Keeps a JSON file with the latest snapshot, for other tools to poll.

    The file is replaced atomically on each tick and removed on close; it
    never holds more than the current state.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._closed = False

    @property
    def path(self) -> Path:
        return self._path

    def record(self, snapshot: Snapshot) -> None:
        if self._closed:
            raise MetricsError("Collector is closed")

        status = {"pid": os.getpid(), "status": "running", **snapshot.as_dict()}
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(status, f, indent=2)
                os.replace(tmp, self._path)
            except BaseException:
                os.unlink(tmp)
                raise
        except OSError as e:
            raise MetricsError(f"Failed to write status file {self._path}: {e}") from e

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._path.unlink(missing_ok=True)
        except OSError as e:
            raise MetricsError(f"Failed to remove status file {self._path}: {e}") from e
        log.debug("Status file %s removed", self._path)


def create_collector(status_file: str | None) -> Collector:
    """Return the collector for the configured status file (or a no-op one)."""
    if not status_file:
        log.debug("No status file configured, snapshots are not recorded")
        return NullCollector()
    return StatusFileCollector(Path(status_file))
