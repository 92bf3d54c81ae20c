"""Regulator tuning constants.

Each profile in tuning.yaml holds the constants used by the fan and power
regulators and the timeouts that bound hardware calls. The active profile is
selected by the PERFORMANCE config parameter.
"""

from dataclasses import dataclass
from pathlib import Path

import yaml

_TUNING_FILE = Path(__file__).parent / "tuning.yaml"


@dataclass(frozen=True)
class Tuning:
    """Constants for one control profile."""

    min_temperature: int
    temperature_window: int
    power_limit_window: int
    fan_curve_exponent: float

    # Power limit regulation (watts)
    watts_per_degree: int
    max_power_change: int
    power_hysteresis: int
    restore_factor: float

    # Deadlines (seconds)
    read_timeout: float
    shutdown_timeout: float

    def __post_init__(self) -> None:
        if self.temperature_window < 1 or self.power_limit_window < 1:
            raise ValueError("Moving average windows must hold at least one sample")

        if self.fan_curve_exponent <= 0:
            raise ValueError(
                f"Fan curve exponent must be positive, got {self.fan_curve_exponent}"
            )

        if self.restore_factor <= 1:
            raise ValueError(
                f"Restore factor must be greater than 1, got {self.restore_factor}"
            )

        if self.read_timeout <= 0 or self.shutdown_timeout <= 0:
            raise ValueError("Timeouts must be positive")


def _load_all() -> dict[str, dict]:
    """Load raw tuning profiles from YAML."""
    with open(_TUNING_FILE) as f:
        return yaml.safe_load(f)


def available_profiles() -> list[str]:
    """Return the list of tuning profile keys."""
    return list(_load_all().keys())


def load_tuning(profile: str) -> Tuning:
    """Load the Tuning for a profile from tuning.yaml.

    Raises KeyError if the profile is not found.
    """
    profiles = _load_all()
    if profile not in profiles:
        available = ", ".join(sorted(profiles.keys()))
        raise KeyError(f"Unknown tuning profile '{profile}'. Available: {available}")
    return Tuning(**profiles[profile])
