"""Power limit regulation.

When the fans are at their ceiling, or close enough that the fan hysteresis
band keeps them from rising further, and the GPU is still above the target
temperature, the power limit is cut a few watts per tick. Once the GPU
is below target the limit is restored, faster than it was cut: the apply step
skips changes inside the hysteresis band, so with symmetric rates small cuts
could go through while the matching restores were skipped, and the limit
would ratchet down for good.
"""

import logging

from nvidiactl.device import Device, DeviceError
from nvidiactl.errors import ControlError
from nvidiactl.numeric import clamp, within_hysteresis
from nvidiactl.tuning import Tuning

log = logging.getLogger(__name__)


class PowerRegulator:
    """Computes and applies the power limit for each tick."""

    def __init__(
        self,
        device: Device,
        tuning: Tuning,
        target_temperature: int,
        max_fan_speed: int,
        performance: bool,
        fan_hysteresis: int = 0,
    ) -> None:
        self._device = device
        self._limits = device.get_power_limits()
        self._target_temperature = target_temperature
        # Fans this close to the ceiling are held there by the fan hysteresis band
        self._saturated_fan_speed = max_fan_speed - fan_hysteresis
        self._performance = performance
        self._watts_per_degree = tuning.watts_per_degree
        self._max_change = tuning.max_power_change
        self._hysteresis = tuning.power_hysteresis
        self._restore_factor = tuning.restore_factor
        self.last_power_limit: int | None = None

    @property
    def performance(self) -> bool:
        return self._performance

    def target_limit(self, temperature: int, fan_speed: int, current_limit: int) -> int:
        """Compute the power limit for this tick, always within the hardware limits."""
        low, high = self._limits.min, self._limits.max

        if self._performance:
            return high

        temp_diff = temperature - self._target_temperature

        if temp_diff > 0 and fan_speed >= self._saturated_fan_speed:
            cut = min(temp_diff * self._watts_per_degree, self._max_change)
            return clamp(current_limit - cut, low, high)

        if temp_diff < 0:
            step = min(-temp_diff * self._watts_per_degree, self._max_change)
            return clamp(current_limit + int(step * self._restore_factor), low, high)

        return clamp(current_limit, low, high)

    def apply(self, target: int, current_limit: int) -> int | None:
        """Write target to the device unless no change is needed.

        In performance mode the limit is pinned to the maximum whenever it is
        below it; otherwise changes within the hysteresis band are skipped.
        Returns the limit written, or None. Raises ControlError if the write fails.
        """
        if self._performance:
            if current_limit >= self._limits.max:
                return None
        elif within_hysteresis(target, current_limit, self._hysteresis):
            return None

        self.last_power_limit = current_limit
        try:
            self._device.set_power_limit(target)
        except DeviceError as e:
            raise ControlError(f"Failed to set power limit to {target}W: {e}") from e

        log.debug("Power limit changed from %dW to %dW", current_limit, target)
        return target
