"""Tests for the fan curve, hysteresis and auto/manual mode switching."""

import pytest

from nvidiactl.device import DeviceError, Limits
from nvidiactl.errors import ControlError
from nvidiactl.fan import FanCurve, FanMode, FanRegulator

CURVE = FanCurve(min_temperature=50, max_temperature=80, min_speed=30, max_speed=100, exponent=2.0)
PERF_CURVE = FanCurve(
    min_temperature=50, max_temperature=80, min_speed=30, max_speed=100, exponent=1.5
)


# --- FanCurve ---

class TestFanCurve:
    def test_at_or_below_min_temperature(self) -> None:
        assert CURVE.target_speed(50) == 30
        assert CURVE.target_speed(20) == 30

    def test_at_or_above_max_temperature(self) -> None:
        assert CURVE.target_speed(80) == 100
        assert CURVE.target_speed(95) == 100

    def test_midpoint_quadratic(self) -> None:
        # p = 0.5 → 30 + int(70 * 0.25) = 47
        assert CURVE.target_speed(65) == 47

    def test_midpoint_performance(self) -> None:
        # p = 0.5 → 30 + int(70 * 0.3536) = 54
        assert PERF_CURVE.target_speed(65) == 54

    def test_performance_curve_ramps_earlier(self) -> None:
        for t in range(51, 80):
            assert PERF_CURVE.target_speed(t) >= CURVE.target_speed(t)

    @pytest.mark.parametrize("curve", [CURVE, PERF_CURVE])
    def test_monotonically_non_decreasing(self, curve: FanCurve) -> None:
        speeds = [curve.target_speed(t) for t in range(40, 91)]
        assert speeds == sorted(speeds)

    @pytest.mark.parametrize("curve", [CURVE, PERF_CURVE])
    def test_always_within_bounds(self, curve: FanCurve) -> None:
        for t in range(0, 120):
            assert curve.min_speed <= curve.target_speed(t) <= curve.max_speed

    def test_max_temperature_must_be_above_min(self) -> None:
        with pytest.raises(ValueError, match="must be above 50°C"):
            FanCurve(min_temperature=50, max_temperature=50, min_speed=30, max_speed=100,
                     exponent=2.0)


class TestFanCurveForDevice:
    def test_configured_ceiling_below_hardware_max(self) -> None:
        curve = FanCurve.for_device(Limits(30, 100, 30), 50, 80, 80, 2.0)
        assert curve.max_speed == 80
        assert curve.target_speed(90) == 80

    def test_ceiling_capped_by_hardware_max(self) -> None:
        curve = FanCurve.for_device(Limits(30, 90, 30), 50, 80, 100, 2.0)
        assert curve.max_speed == 90

    def test_ceiling_never_below_hardware_min(self) -> None:
        curve = FanCurve.for_device(Limits(30, 100, 30), 50, 80, 20, 2.0)
        assert curve.max_speed == 30


# --- FanRegulator ---

class TestFanRegulatorAutoMode:
    def test_low_temperature_enables_auto(self, make_device) -> None:
        device = make_device()
        reg = FanRegulator(device, CURVE, hysteresis=4)

        assert reg.apply(45, 40) is None
        assert device.calls == [("enable_auto_fan_control",)]
        assert reg.mode is FanMode.AUTO
        assert reg.auto_fan_control is True

    def test_first_tick_at_threshold_enables_auto(self, make_device) -> None:
        device = make_device()
        reg = FanRegulator(device, CURVE, hysteresis=4)
        reg.apply(50, 40)
        assert device.calls == [("enable_auto_fan_control",)]

    def test_auto_entry_is_idempotent(self, make_device) -> None:
        device = make_device()
        reg = FanRegulator(device, CURVE, hysteresis=4)
        reg.apply(45, 40)
        reg.apply(48, 40)
        reg.apply(30, 40)
        assert device.calls == [("enable_auto_fan_control",)]

    def test_no_speed_command_in_auto(self, make_device) -> None:
        device = make_device()
        reg = FanRegulator(device, CURVE, hysteresis=0)
        for t in range(30, 51):
            reg.apply(t, 0)
        assert all(call[0] != "set_fan_speed" for call in device.calls)

    def test_manual_to_auto_when_cooling(self, make_device) -> None:
        device = make_device()
        reg = FanRegulator(device, CURVE, hysteresis=4)
        reg.apply(65, 40)
        assert reg.mode is FanMode.MANUAL

        reg.apply(50, 47)
        assert reg.mode is FanMode.AUTO
        assert device.calls[-1] == ("enable_auto_fan_control",)

    def test_enable_failure_retried_next_tick(self, make_device) -> None:
        device = make_device()
        device.fail.add("enable_auto_fan_control")
        reg = FanRegulator(device, CURVE, hysteresis=4)

        with pytest.raises(ControlError, match="Failed to enable auto fan control"):
            reg.apply(45, 40)
        assert reg.mode is None

        device.fail.clear()
        reg.apply(45, 40)
        assert reg.mode is FanMode.AUTO


class TestFanRegulatorManualMode:
    def test_above_threshold_sets_speed(self, make_device) -> None:
        device = make_device()
        reg = FanRegulator(device, CURVE, hysteresis=4)

        assert reg.apply(65, 40) == 47
        assert device.calls == [("set_fan_speed", 47)]
        assert reg.mode is FanMode.MANUAL
        assert reg.auto_fan_control is False

    def test_last_fan_speed_keeps_pre_change_value(self, make_device) -> None:
        device = make_device()
        reg = FanRegulator(device, CURVE, hysteresis=4)
        assert reg.last_fan_speed is None
        reg.apply(65, 40)
        assert reg.last_fan_speed == 40

    def test_hot_runs_at_ceiling(self, make_device) -> None:
        device = make_device()
        reg = FanRegulator(device, CURVE, hysteresis=4)
        assert reg.apply(90, 40) == 100

    @pytest.mark.parametrize("current", [43, 45, 47, 49, 51])
    def test_within_hysteresis_no_write(self, make_device, current: int) -> None:
        device = make_device()
        reg = FanRegulator(device, CURVE, hysteresis=4)
        assert reg.apply(65, current) is None
        assert device.calls == []

    def test_just_outside_hysteresis_writes(self, make_device) -> None:
        device = make_device()
        reg = FanRegulator(device, CURVE, hysteresis=4)
        assert reg.apply(65, 42) == 47

    def test_write_failure_raises_control_error(self, make_device) -> None:
        device = make_device()
        device.fail.add("set_fan_speed")
        reg = FanRegulator(device, CURVE, hysteresis=4)

        with pytest.raises(ControlError, match="Failed to set fan speed to 47%") as exc_info:
            reg.apply(65, 40)
        assert isinstance(exc_info.value.__cause__, DeviceError)
        # Still recorded as the speed before the attempted change
        assert reg.last_fan_speed == 40
