"""Shared fixtures: an in-memory GPU standing in for NVML."""

import threading
from collections.abc import Callable, Iterator

import pytest

from nvidiactl.device import DeviceError, ErrorKind, Limits
from nvidiactl.tuning import Tuning


class FakeDevice:
    """Records every write; methods named in `fail` raise, those in `hang` block."""

    def __init__(
        self,
        temperature: int = 65,
        fan_speeds: list[int] | None = None,
        power_limit: int = 250,
        fan_limits: Limits = Limits(min=30, max=100, default=30),
        power_limits: Limits = Limits(min=100, max=300, default=250),
    ) -> None:
        self.temperature = temperature
        self.fan_speeds = fan_speeds if fan_speeds is not None else [40, 40]
        self.power_limit = power_limit
        self.fan_limits = fan_limits
        self.power_limits = power_limits
        self.calls: list[tuple] = []
        self.fail: set[str] = set()
        self.hang: set[str] = set()
        self.release = threading.Event()

    def _check(self, name: str) -> None:
        if name in self.hang:
            self.release.wait(5)
        if name in self.fail:
            raise DeviceError(ErrorKind.FAILURE, f"{name} failed")

    def get_temperature(self) -> int:
        self._check("get_temperature")
        return self.temperature

    def get_current_fan_speeds(self) -> list[int]:
        self._check("get_current_fan_speeds")
        return list(self.fan_speeds)

    def get_current_power_limit(self) -> int:
        self._check("get_current_power_limit")
        return self.power_limit

    def set_fan_speed(self, speed: int) -> None:
        self._check("set_fan_speed")
        self.calls.append(("set_fan_speed", speed))
        self.fan_speeds = [speed] * len(self.fan_speeds)

    def set_power_limit(self, limit: int) -> None:
        self._check("set_power_limit")
        self.calls.append(("set_power_limit", limit))
        self.power_limit = limit

    def enable_auto_fan_control(self) -> None:
        self._check("enable_auto_fan_control")
        self.calls.append(("enable_auto_fan_control",))

    def get_fan_speed_limits(self) -> Limits:
        return self.fan_limits

    def get_power_limits(self) -> Limits:
        return self.power_limits

    def close(self) -> None:
        self._check("close")
        self.calls.append(("close",))


@pytest.fixture
def make_device() -> Iterator[Callable[..., FakeDevice]]:
    devices: list[FakeDevice] = []

    def factory(**kwargs: object) -> FakeDevice:
        device = FakeDevice(**kwargs)  # type: ignore[arg-type]
        devices.append(device)
        return device

    yield factory

    # Unblock any thread still stuck in a hanging call
    for device in devices:
        device.release.set()


@pytest.fixture
def tuning() -> Tuning:
    return Tuning(
        min_temperature=50,
        temperature_window=5,
        power_limit_window=5,
        fan_curve_exponent=2.0,
        watts_per_degree=5,
        max_power_change=10,
        power_hysteresis=5,
        restore_factor=2.0,
        read_timeout=1.0,
        shutdown_timeout=2.0,
    )
