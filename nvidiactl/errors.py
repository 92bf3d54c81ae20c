"""Errors raised by the control loop."""


class ControlError(Exception):
    """A corrective command (fan speed, power limit, fan mode) could not be applied."""
