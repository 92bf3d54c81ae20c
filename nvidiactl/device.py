"""GPU device access through NVML.

The control loop talks to the GPU only through the Device interface. NVML
return codes never leave this module: every failure is raised as a
DeviceError tagged with an ErrorKind.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Protocol

import pynvml

log = logging.getLogger(__name__)

MILLIWATTS_PER_WATT = 1000


class ErrorKind(enum.Enum):
    NOT_FOUND = "not_found"
    NO_PERMISSION = "no_permission"
    NOT_SUPPORTED = "not_supported"
    INVALID_ARGUMENT = "invalid_argument"
    TIMEOUT = "timeout"
    FAILURE = "failure"


class DeviceError(Exception):
    """A device operation failed."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class OperationTimeout(DeviceError):
    """A device operation did not complete within its deadline."""

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(ErrorKind.TIMEOUT, f"{operation} timed out after {timeout:.1f}s")
        self.operation = operation
        self.timeout = timeout


@dataclass(frozen=True)
class Limits:
    """Hardware-reported bounds, fetched once when the device is opened."""

    min: int
    max: int
    default: int


class Device(Protocol):
    def get_temperature(self) -> int: ...

    def get_current_fan_speeds(self) -> list[int]: ...

    def get_current_power_limit(self) -> int: ...

    def set_fan_speed(self, speed: int) -> None: ...

    def set_power_limit(self, limit: int) -> None: ...

    def enable_auto_fan_control(self) -> None: ...

    def get_fan_speed_limits(self) -> Limits: ...

    def get_power_limits(self) -> Limits: ...

    def close(self) -> None: ...


def _error_kinds() -> dict[int, ErrorKind]:
    return {
        pynvml.NVML_ERROR_NOT_FOUND: ErrorKind.NOT_FOUND,
        pynvml.NVML_ERROR_GPU_IS_LOST: ErrorKind.NOT_FOUND,
        pynvml.NVML_ERROR_NO_PERMISSION: ErrorKind.NO_PERMISSION,
        pynvml.NVML_ERROR_NOT_SUPPORTED: ErrorKind.NOT_SUPPORTED,
        pynvml.NVML_ERROR_INVALID_ARGUMENT: ErrorKind.INVALID_ARGUMENT,
        pynvml.NVML_ERROR_TIMEOUT: ErrorKind.TIMEOUT,
    }


def _wrap(e: "pynvml.NVMLError", what: str) -> DeviceError:
    kind = _error_kinds().get(getattr(e, "value", None), ErrorKind.FAILURE)
    return DeviceError(kind, f"{what}: {e}")


class NvmlDevice:
    """One NVIDIA GPU, addressed by NVML index."""

    def __init__(self, index: int = 0) -> None:
        self._index = index
        self._handle: object | None = None
        self._name: str = ""
        self._fan_count: int = 0
        self._fan_limits: Limits | None = None
        self._power_limits: Limits | None = None

    @property
    def opened(self) -> bool:
        return self._handle is not None

    @property
    def name(self) -> str:
        return self._name

    @property
    def fan_count(self) -> int:
        return self._fan_count

    def open(self) -> None:
        """Initialize NVML, get the device handle and read its capability limits.

        Raises DeviceError if no GPU is found at the index or NVML fails.
        """
        if self._handle is not None:
            return

        try:
            pynvml.nvmlInit()
        except pynvml.NVMLError as e:
            raise _wrap(e, "NVML initialization failed") from e

        try:
            count = pynvml.nvmlDeviceGetCount()
            if self._index >= count:
                raise DeviceError(
                    ErrorKind.NOT_FOUND,
                    f"No NVIDIA GPU at index {self._index} ({count} found)",
                )

            handle = pynvml.nvmlDeviceGetHandleByIndex(self._index)
            name = pynvml.nvmlDeviceGetName(handle)
            self._name = name.decode() if isinstance(name, bytes) else str(name)
            self._fan_count = pynvml.nvmlDeviceGetNumFans(handle)

            fan_min, fan_max = pynvml.nvmlDeviceGetMinMaxFanSpeed(handle)
            self._fan_limits = Limits(min=fan_min, max=fan_max, default=fan_min)

            power_min, power_max = pynvml.nvmlDeviceGetPowerManagementLimitConstraints(handle)
            power_default = pynvml.nvmlDeviceGetPowerManagementDefaultLimit(handle)
            self._power_limits = Limits(
                min=power_min // MILLIWATTS_PER_WATT,
                max=power_max // MILLIWATTS_PER_WATT,
                default=power_default // MILLIWATTS_PER_WATT,
            )
        except pynvml.NVMLError as e:
            self._shutdown_nvml()
            raise _wrap(e, "Failed to query GPU") from e
        except DeviceError:
            self._shutdown_nvml()
            raise

        self._handle = handle
        log.info("Detected GPU %d: %s (%d fans)", self._index, self._name, self._fan_count)
        if self._fan_count == 0:
            log.warning("GPU reports no controllable fans")
        log.debug(
            "Fan speed limits: %d-%d%%, power limits: %d-%dW (default %dW)",
            self._fan_limits.min,
            self._fan_limits.max,
            self._power_limits.min,
            self._power_limits.max,
            self._power_limits.default,
        )

    def _shutdown_nvml(self) -> None:
        try:
            pynvml.nvmlShutdown()
        except pynvml.NVMLError as e:
            log.debug("nvmlShutdown failed: %s", e)

    def close(self) -> None:
        """Release NVML."""
        if self._handle is None:
            return
        self._handle = None
        try:
            pynvml.nvmlShutdown()
        except pynvml.NVMLError as e:
            raise _wrap(e, "NVML shutdown failed") from e
        log.debug("NVML shut down")

    def _require_handle(self) -> object:
        if self._handle is None:
            raise DeviceError(ErrorKind.FAILURE, "Device not opened")
        return self._handle

    def get_fan_speed_limits(self) -> Limits:
        if self._fan_limits is None:
            raise DeviceError(ErrorKind.FAILURE, "Device not opened")
        return self._fan_limits

    def get_power_limits(self) -> Limits:
        if self._power_limits is None:
            raise DeviceError(ErrorKind.FAILURE, "Device not opened")
        return self._power_limits

    def get_temperature(self) -> int:
        handle = self._require_handle()
        try:
            return int(pynvml.nvmlDeviceGetTemperature(handle, pynvml.NVML_TEMPERATURE_GPU))
        except pynvml.NVMLError as e:
            raise _wrap(e, "Failed to read GPU temperature") from e

    def get_current_fan_speeds(self) -> list[int]:
        handle = self._require_handle()
        try:
            return [
                int(pynvml.nvmlDeviceGetFanSpeed_v2(handle, fan))
                for fan in range(self._fan_count)
            ]
        except pynvml.NVMLError as e:
            raise _wrap(e, "Failed to read fan speed") from e

    def get_current_power_limit(self) -> int:
        handle = self._require_handle()
        try:
            return pynvml.nvmlDeviceGetPowerManagementLimit(handle) // MILLIWATTS_PER_WATT
        except pynvml.NVMLError as e:
            raise _wrap(e, "Failed to read power limit") from e

    def set_fan_speed(self, speed: int) -> None:
        """Set every fan to speed percent (takes the fans out of auto mode)."""
        handle = self._require_handle()
        limits = self.get_fan_speed_limits()
        if not limits.min <= speed <= limits.max:
            raise DeviceError(
                ErrorKind.INVALID_ARGUMENT,
                f"Fan speed {speed}% outside {limits.min}-{limits.max}%",
            )

        for fan in range(self._fan_count):
            try:
                pynvml.nvmlDeviceSetFanSpeed_v2(handle, fan, speed)
            except pynvml.NVMLError as e:
                raise _wrap(e, f"Failed to set fan {fan} speed") from e
        log.debug("Set fan speed: %d%%", speed)

    def enable_auto_fan_control(self) -> None:
        """Hand every fan back to the driver's own fan curve."""
        handle = self._require_handle()
        for fan in range(self._fan_count):
            try:
                pynvml.nvmlDeviceSetDefaultFanSpeed_v2(handle, fan)
            except pynvml.NVMLError as e:
                raise _wrap(e, f"Failed to restore default speed of fan {fan}") from e
        log.debug("Auto fan control enabled")

    def set_power_limit(self, limit: int) -> None:
        handle = self._require_handle()
        limits = self.get_power_limits()
        if not limits.min <= limit <= limits.max:
            raise DeviceError(
                ErrorKind.INVALID_ARGUMENT,
                f"Power limit {limit}W outside {limits.min}-{limits.max}W",
            )

        try:
            pynvml.nvmlDeviceSetPowerManagementLimit(handle, limit * MILLIWATTS_PER_WATT)
        except pynvml.NVMLError as e:
            raise _wrap(e, "Failed to set power limit") from e
        log.debug("Set power limit: %dW", limit)
