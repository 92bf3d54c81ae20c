"""Tests for tuning profiles."""

import dataclasses

import pytest

from nvidiactl.tuning import Tuning, available_profiles, load_tuning


class TestLoadTuning:
    def test_balanced(self) -> None:
        tuning = load_tuning("balanced")
        assert tuning.min_temperature == 50
        assert tuning.temperature_window == 5
        assert tuning.power_limit_window == 5
        assert tuning.fan_curve_exponent == 2.0
        assert tuning.watts_per_degree == 5
        assert tuning.max_power_change == 10
        assert tuning.power_hysteresis == 5

    def test_performance_uses_flatter_curve(self) -> None:
        assert load_tuning("performance").fan_curve_exponent == 1.5

    def test_restore_faster_than_cut(self) -> None:
        for profile in available_profiles():
            assert load_tuning(profile).restore_factor > 1

    def test_read_timeout_shorter_than_shutdown(self) -> None:
        tuning = load_tuning("balanced")
        assert tuning.read_timeout < tuning.shutdown_timeout

    def test_unknown_profile_raises(self) -> None:
        with pytest.raises(KeyError, match="Unknown tuning profile 'turbo'"):
            load_tuning("turbo")

    def test_available_profiles(self) -> None:
        assert set(available_profiles()) == {"balanced", "performance"}


class TestTuningValidation:
    def test_restore_factor_must_exceed_one(self, tuning: Tuning) -> None:
        with pytest.raises(ValueError, match="Restore factor must be greater than 1"):
            dataclasses.replace(tuning, restore_factor=1.0)

    def test_empty_window_raises(self, tuning: Tuning) -> None:
        with pytest.raises(ValueError, match="at least one sample"):
            dataclasses.replace(tuning, temperature_window=0)

    def test_non_positive_exponent_raises(self, tuning: Tuning) -> None:
        with pytest.raises(ValueError, match="exponent must be positive"):
            dataclasses.replace(tuning, fan_curve_exponent=0)

    def test_non_positive_timeout_raises(self, tuning: Tuning) -> None:
        with pytest.raises(ValueError, match="Timeouts must be positive"):
            dataclasses.replace(tuning, read_timeout=0)
