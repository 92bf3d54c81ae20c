"""Run blocking device calls with a deadline.

NVML calls can hang when the driver is wedged. Each call runs on its own
daemon thread and the caller waits at most `timeout` seconds for it. A call
that misses its deadline is abandoned; since the thread is a daemon it never
keeps the process alive. BoundedDevice keeps at most one call in flight per
operation, so a wedged driver costs one thread per operation, not one per tick.
"""

import logging
import threading
from collections.abc import Callable
from concurrent import futures
from typing import TypeVar

from nvidiactl.device import Device, DeviceError, ErrorKind, Limits, OperationTimeout

log = logging.getLogger(__name__)

T = TypeVar("T")


def _start(fn: Callable[..., T], name: str, *args: object) -> "futures.Future[T]":
    future: futures.Future[T] = futures.Future()
    future.set_running_or_notify_cancel()

    def run() -> None:
        try:
            future.set_result(fn(*args))
        except BaseException as e:
            future.set_exception(e)

    threading.Thread(target=run, name=f"nvidiactl-{name}", daemon=True).start()
    return future


def _result(future: "futures.Future[T]", name: str, timeout: float) -> T:
    try:
        return future.result(timeout=timeout)
    except futures.TimeoutError:
        log.debug("Abandoning %s after %.1fs", name, timeout)
        raise OperationTimeout(name, timeout) from None


def call_with_timeout(fn: Callable[..., T], timeout: float, *args: object) -> T:
    """Call fn(*args) and return its result, waiting at most timeout seconds.

    Exceptions raised by fn are re-raised in the caller.
    Raises OperationTimeout if fn has not returned in time.
    """
    name = getattr(fn, "__name__", "device-call")
    return _result(_start(fn, name, *args), name, timeout)


class BoundedDevice:
    """Wraps a Device so that every hardware call is bounded by a deadline.

    While an abandoned call of an operation is still blocked, new calls of
    that operation fail at once with a TIMEOUT DeviceError instead of
    starting another thread. Capability limits are cached by the wrapped
    device and returned directly.
    """

    def __init__(self, device: Device, timeout: float) -> None:
        self._device = device
        self._timeout = timeout
        self._pending: dict[str, futures.Future] = {}

    @property
    def timeout(self) -> float:
        return self._timeout

    def _call(self, name: str, fn: Callable[..., T], *args: object) -> T:
        pending = self._pending.get(name)
        if pending is not None and not pending.done():
            raise DeviceError(ErrorKind.TIMEOUT, f"{name} still blocked by an earlier call")

        future = _start(fn, name, *args)
        self._pending[name] = future
        return _result(future, name, self._timeout)

    def get_temperature(self) -> int:
        return self._call("get_temperature", self._device.get_temperature)

    def get_current_fan_speeds(self) -> list[int]:
        return self._call("get_current_fan_speeds", self._device.get_current_fan_speeds)

    def get_current_power_limit(self) -> int:
        return self._call("get_current_power_limit", self._device.get_current_power_limit)

    def set_fan_speed(self, speed: int) -> None:
        self._call("set_fan_speed", self._device.set_fan_speed, speed)

    def set_power_limit(self, limit: int) -> None:
        self._call("set_power_limit", self._device.set_power_limit, limit)

    def enable_auto_fan_control(self) -> None:
        self._call("enable_auto_fan_control", self._device.enable_auto_fan_control)

    def get_fan_speed_limits(self) -> Limits:
        return self._device.get_fan_speed_limits()

    def get_power_limits(self) -> Limits:
        return self._device.get_power_limits()

    def close(self) -> None:
        self._call("close", self._device.close)
