"""Integer helpers shared by the regulators."""


def clamp(value: int, low: int, high: int) -> int:
    """Clamp value into [low, high]."""
    if value < low:
        return low
    if value > high:
        return high
    return value


def within_hysteresis(target: int, current: int, threshold: int) -> bool:
    """True if target is inside the dead-band around current (no write needed)."""
    return abs(target - current) <= threshold
