"""Main daemon entry point: the GPU sampling and regulation loop."""

import logging
import os
import signal
import sys
import time
from collections.abc import Callable

from nvidiactl.average import MovingAverage
from nvidiactl.config import Config
from nvidiactl.deadline import BoundedDevice, call_with_timeout
from nvidiactl.device import Device, DeviceError, ErrorKind, NvmlDevice, OperationTimeout
from nvidiactl.errors import ControlError
from nvidiactl.fan import FanCurve, FanRegulator
from nvidiactl.metrics import Collector, MetricsError, NullCollector, Snapshot, create_collector
from nvidiactl.power import PowerRegulator
from nvidiactl.tuning import Tuning, load_tuning

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_SHUTDOWN_TIMEOUT = 2


class Daemon:
    """Owns all controller state and drives one control tick per interval.

    Only the thread running the loop touches the filters, regulators and
    last-known samples, so none of it is locked.
    """

    def __init__(
        self,
        config: Config,
        device: Device,
        collector: Collector | None = None,
        tuning: Tuning | None = None,
    ) -> None:
        self._config = config
        self._tuning = tuning or load_tuning(config.profile)
        self._collector = collector or NullCollector()

        # A read must give up well before the next tick is due
        read_timeout = min(self._tuning.read_timeout, config.interval / 2)
        self._device = BoundedDevice(device, read_timeout)

        self._fan_limits = device.get_fan_speed_limits()
        self._power_limits = device.get_power_limits()

        curve = FanCurve.for_device(
            self._fan_limits,
            min_temperature=self._tuning.min_temperature,
            max_temperature=config.temperature,
            max_fan_speed=config.fan_speed,
            exponent=self._tuning.fan_curve_exponent,
        )
        self._fan = FanRegulator(self._device, curve, config.hysteresis)
        self._power = PowerRegulator(
            self._device,
            self._tuning,
            target_temperature=config.temperature,
            max_fan_speed=curve.max_speed,
            fan_hysteresis=config.hysteresis,
            performance=config.performance,
        )

        self._temperature_avg = MovingAverage(self._tuning.temperature_window)
        self._power_limit_avg = MovingAverage(self._tuning.power_limit_window)

        # Last known samples, used when a read fails or times out
        self._temperature = 0
        self._fan_speed = 0
        self._power_limit = 0

        self._running = True

    @property
    def running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Ask the loop to stop after the current tick."""
        self._running = False

    def _on_shutdown(self, signum: int, _frame: object) -> None:
        sig_name = signal.Signals(signum).name
        log.info("Received %s, shutting down", sig_name)
        self.stop()

    def _read_fan_speed(self) -> int:
        speeds = self._device.get_current_fan_speeds()
        if not speeds:
            raise DeviceError(ErrorKind.NOT_SUPPORTED, "GPU reports no fan speeds")
        return speeds[0]

    def _sample(self, what: str, read: Callable[[], int], last_known: int) -> int:
        try:
            return read()
        except DeviceError as e:
            log.warning("Degraded read of %s, using last known value %d: %s", what, last_known, e)
            return last_known

    def start(self) -> None:
        """Take the initial sample snapshot and reset the power limit to its default.

        Raises DeviceError if the GPU cannot be read at all.
        """
        self._temperature = self._device.get_temperature()
        self._fan_speed = self._read_fan_speed()
        self._power_limit = self._device.get_current_power_limit()
        log.info(
            "Initial state: temperature=%d°C fan_speed=%d%% power_limit=%dW",
            self._temperature,
            self._fan_speed,
            self._power_limit,
        )

        if self._config.monitor:
            return

        default = min(self._power_limits.default, self._power_limits.max)
        if self._power_limit != default:
            try:
                self._device.set_power_limit(default)
                self._power_limit = default
                log.debug("Power limit reset to default: %dW", default)
            except DeviceError as e:
                log.warning("Failed to reset power limit to default: %s", e)

    def tick(self) -> Snapshot:
        """Run one sample, filter, regulate and record cycle.

        Raises ControlError if a command fails and the write error policy is "abort".
        """
        temperature = self._sample("temperature", self._device.get_temperature, self._temperature)
        fan_speed = self._sample("fan speed", self._read_fan_speed, self._fan_speed)
        power_limit = self._sample(
            "power limit", self._device.get_current_power_limit, self._power_limit
        )
        self._temperature = temperature
        self._fan_speed = fan_speed
        self._power_limit = power_limit

        average_temperature = self._temperature_avg.update(temperature)
        average_power_limit = self._power_limit_avg.update(power_limit)

        target_fan_speed = self._fan.target_speed(average_temperature)
        target_power_limit = self._power.target_limit(temperature, fan_speed, power_limit)

        if self._config.monitor:
            # The regulators never run; report the mode the curve implies
            auto_fan_control = average_temperature <= self._fan.curve.min_temperature
        else:
            try:
                if (speed := self._fan.apply(average_temperature, fan_speed)) is not None:
                    self._fan_speed = speed
            except ControlError as e:
                self._on_write_error(e)

            try:
                if (limit := self._power.apply(target_power_limit, power_limit)) is not None:
                    self._power_limit = limit
            except ControlError as e:
                self._on_write_error(e)

            auto_fan_control = self._fan.auto_fan_control

        snapshot = Snapshot(
            temperature=temperature,
            average_temperature=average_temperature,
            fan_speed=fan_speed,
            target_fan_speed=target_fan_speed,
            power_limit=power_limit,
            target_power_limit=target_power_limit,
            average_power_limit=average_power_limit,
            auto_fan_control=auto_fan_control,
            monitor=self._config.monitor,
            performance=self._config.performance,
        )
        self._log_state(snapshot)

        try:
            self._collector.record(snapshot)
        except MetricsError as e:
            log.warning("Failed to record metrics: %s", e)

        return snapshot

    def _on_write_error(self, error: ControlError) -> None:
        if self._config.write_error_policy == "abort":
            raise error
        log.warning("%s (retrying next tick)", error)

    def _log_state(self, s: Snapshot) -> None:
        if self._config.debug:
            log.debug(
                "current_fan_speed=%d target_fan_speed=%d last_set_fan_speed=%s "
                "max_fan_speed=%d current_temperature=%d average_temperature=%d "
                "min_temperature=%d max_temperature=%d current_power_limit=%d "
                "target_power_limit=%d average_power_limit=%d last_set_power_limit=%s "
                "min_power_limit=%d max_power_limit=%d min_fan_speed=%d hysteresis=%d "
                "monitor=%s performance=%s auto_fan_control=%s",
                s.fan_speed,
                s.target_fan_speed,
                self._fan.last_fan_speed,
                self._fan.curve.max_speed,
                s.temperature,
                s.average_temperature,
                self._fan.curve.min_temperature,
                self._fan.curve.max_temperature,
                s.power_limit,
                s.target_power_limit,
                s.average_power_limit,
                self._power.last_power_limit,
                self._power_limits.min,
                self._power_limits.max,
                self._fan_limits.min,
                self._config.hysteresis,
                s.monitor,
                s.performance,
                s.auto_fan_control,
            )
        elif self._config.verbose:
            log.info(
                "fan_speed=%d target_fan_speed=%d temperature=%d avg_temperature=%d "
                "power_limit=%d target_power_limit=%d avg_power_limit=%d",
                s.fan_speed,
                s.target_fan_speed,
                s.temperature,
                s.average_temperature,
                s.power_limit,
                s.target_power_limit,
                s.average_power_limit,
            )

    def _shutdown_sequence(self) -> None:
        if not self._config.monitor:
            default = min(self._power_limits.default, self._power_limits.max)
            try:
                self._device.set_power_limit(default)
                log.info("Power limit restored to %dW", default)
            except DeviceError as e:
                log.error("Failed to reset power limit: %s", e)

            try:
                self._device.enable_auto_fan_control()
                log.info("Auto fan control restored")
            except DeviceError as e:
                log.error("Failed to enable auto fan control: %s", e)

        try:
            self._collector.close()
        except MetricsError as e:
            log.error("Failed to close metrics collector: %s", e)

        try:
            self._device.close()
        except DeviceError as e:
            log.error("Failed to shut down NVML: %s", e)

    def shutdown(self) -> bool:
        """Hand the GPU back to its defaults.

        Returns False if the sequence did not finish within the shutdown timeout.
        """
        timeout = self._tuning.shutdown_timeout
        try:
            call_with_timeout(self._shutdown_sequence, timeout)
        except OperationTimeout:
            log.error("Shutdown did not complete within %.0f seconds", timeout)
            return False
        return True

    def _wait(self, seconds: float) -> None:
        """Sleep in small increments so we can respond to signals promptly."""
        end = time.monotonic() + seconds
        while self._running and time.monotonic() < end:
            time.sleep(max(0.0, min(0.5, end - time.monotonic())))

    def run(self) -> int:
        """Main loop: sample, regulate and record until stopped. Returns an exit status."""
        log.info(
            "Starting daemon with profile=%s, interval=%.1fs, temperature=%d°C, "
            "fan_speed=%d%%, hysteresis=%d%%, monitor=%s",
            self._config.profile,
            self._config.interval,
            self._config.temperature,
            self._config.fan_speed,
            self._config.hysteresis,
            self._config.monitor,
        )
        if self._config.monitor:
            log.info("Monitor mode activated. Logging GPU status...")

        signal.signal(signal.SIGTERM, self._on_shutdown)
        signal.signal(signal.SIGINT, self._on_shutdown)

        status = EXIT_OK
        try:
            self.start()
            while self._running:
                started = time.monotonic()
                self.tick()
                self._wait(self._config.interval - (time.monotonic() - started))
        except DeviceError as e:
            log.error("Failed to read initial GPU state: %s", e)
            status = EXIT_FAILURE
        except ControlError as e:
            log.error("Stopping after failed command: %s", e)
            status = EXIT_FAILURE
        except Exception:
            # The GPU must still be handed back below
            log.exception("Unexpected error in control loop")
            status = EXIT_FAILURE

        if not self.shutdown():
            return EXIT_SHUTDOWN_TIMEOUT

        log.info("Exiting...")
        return status


def main() -> None:
    """Entry point."""
    try:
        config = Config.load()
        tuning = load_tuning(config.profile)
        if config.temperature <= tuning.min_temperature:
            raise ValueError(
                f"Temperature must be above {tuning.min_temperature}°C, got {config.temperature}"
            )
    except (ValueError, KeyError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(EXIT_FAILURE)

    config.setup_logging()

    device = NvmlDevice(config.gpu_index)
    try:
        device.open()
    except DeviceError as e:
        log.error("Failed to initialize GPU: %s", e)
        sys.exit(EXIT_FAILURE)

    daemon = Daemon(config, device, create_collector(config.status_file), tuning)
    status = daemon.run()
    if status == EXIT_SHUTDOWN_TIMEOUT:
        # NVML may still be wedged; skip interpreter cleanup
        logging.shutdown()
        os._exit(status)
    sys.exit(status)


if __name__ == "__main__":
    main()
