"""Fan speed curve with hysteresis and the auto/manual fan mode state machine."""

import enum
import logging
from dataclasses import dataclass

from nvidiactl.device import Device, DeviceError, Limits
from nvidiactl.errors import ControlError
from nvidiactl.numeric import clamp, within_hysteresis

log = logging.getLogger(__name__)


class FanMode(enum.Enum):
    AUTO = "auto"      # the driver's own fan curve governs the fans
    MANUAL = "manual"  # we command an explicit percentage


@dataclass(frozen=True)
class FanCurve:
    """A convex fan curve between the auto-control threshold and the maximum temperature."""

    min_temperature: int  # At or below this (°C) the driver controls the fans
    max_temperature: int  # At or above this (°C) the fans run at max_speed
    min_speed: int        # Hardware minimum speed (%)
    max_speed: int        # Configured ceiling intersected with the hardware maximum (%)
    exponent: float

    def __post_init__(self) -> None:
        if self.max_temperature <= self.min_temperature:
            raise ValueError(
                f"Maximum temperature {self.max_temperature}°C must be above "
                f"{self.min_temperature}°C"
            )

    @classmethod
    def for_device(
        cls,
        limits: Limits,
        min_temperature: int,
        max_temperature: int,
        max_fan_speed: int,
        exponent: float,
    ) -> "FanCurve":
        """Build a curve whose ceiling never exceeds what the hardware allows."""
        ceiling = max(limits.min, min(limits.max, max_fan_speed))
        return cls(
            min_temperature=min_temperature,
            max_temperature=max_temperature,
            min_speed=limits.min,
            max_speed=ceiling,
            exponent=exponent,
        )

    def target_speed(self, temperature: int) -> int:
        """Compute the fan speed for a smoothed temperature.

        The speed rises slowly just above min_temperature and faster near
        max_temperature; the larger the exponent, the later it ramps up.
        """
        if temperature <= self.min_temperature:
            return self.min_speed
        if temperature >= self.max_temperature:
            return self.max_speed

        ratio = (temperature - self.min_temperature) / (self.max_temperature - self.min_temperature)
        speed = self.min_speed + int((self.max_speed - self.min_speed) * ratio**self.exponent)
        return clamp(speed, self.min_speed, self.max_speed)


class FanRegulator:
    """Decides between auto and manual fan control and issues speed commands.

    The regulator starts in neither mode, so the first tick always asserts a
    mode on the hardware: entering auto is idempotent, and a GPU left in manual
    mode by a previous run is handed back to the driver.
    """

    def __init__(self, device: Device, curve: FanCurve, hysteresis: int) -> None:
        self._device = device
        self._curve = curve
        self._hysteresis = hysteresis
        self._mode: FanMode | None = None
        self.last_fan_speed: int | None = None

    @property
    def curve(self) -> FanCurve:
        return self._curve

    @property
    def mode(self) -> FanMode | None:
        return self._mode

    @property
    def auto_fan_control(self) -> bool:
        return self._mode is FanMode.AUTO

    def target_speed(self, average_temperature: int) -> int:
        return self._curve.target_speed(average_temperature)

    def apply(self, average_temperature: int, current_speed: int) -> int | None:
        """Bring the fans in line with the smoothed temperature.

        Returns the speed that was commanded, or None if nothing was written
        (auto mode, or the target is within the hysteresis band).
        Raises ControlError if a device write fails.
        """
        min_temperature = self._curve.min_temperature

        if average_temperature <= min_temperature:
            if self._mode is not FanMode.AUTO:
                try:
                    self._device.enable_auto_fan_control()
                except DeviceError as e:
                    raise ControlError(f"Failed to enable auto fan control: {e}") from e
                log.debug(
                    "Temperature (%d°C) at or below minimum (%d°C). Enabling auto fan control.",
                    average_temperature,
                    min_temperature,
                )
                self._mode = FanMode.AUTO
            return None

        if self._mode is not FanMode.MANUAL:
            log.debug(
                "Temperature (%d°C) above minimum (%d°C). Switching to manual fan control.",
                average_temperature,
                min_temperature,
            )
            self._mode = FanMode.MANUAL

        target = self.target_speed(average_temperature)
        if within_hysteresis(target, current_speed, self._hysteresis):
            return None

        self.last_fan_speed = current_speed
        try:
            self._device.set_fan_speed(target)
        except DeviceError as e:
            raise ControlError(f"Failed to set fan speed to {target}%: {e}") from e

        log.debug("Fan speed changed from %d%% to %d%%", current_speed, target)
        return target
