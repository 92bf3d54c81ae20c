"""NVIDIA GPU fan speed and power limit controller."""
