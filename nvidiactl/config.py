"""Configuration parsing from /etc/default/nvidiactl, environment and CLI arguments."""

import argparse
import logging
import os
from dataclasses import dataclass

from dotenv import dotenv_values

DEFAULT_CONFIG_PATH = "/etc/default/nvidiactl"
ENV_PREFIX = "NVIDIACTL_"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
WRITE_ERROR_POLICIES = ("abort", "retry")


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in ("true", "1", "yes", "on")


def _parse_cli_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="nvidiactl",
        description="NVIDIA GPU fan speed and power limit controller",
    )
    parser.add_argument(
        "--interval",
        type=float,
        help="Seconds between control ticks",
    )
    parser.add_argument(
        "--temperature",
        type=int,
        help="Maximum allowed temperature (°C)",
    )
    parser.add_argument(
        "--fan-speed",
        type=int,
        help="Maximum allowed fan speed (0-100%%)",
    )
    parser.add_argument(
        "--hysteresis",
        type=int,
        help="Fan speed change (%%) required before a new speed is applied",
    )
    parser.add_argument(
        "--performance",
        action="store_true",
        default=None,
        help="Performance mode: keep the power limit at its maximum",
    )
    parser.add_argument(
        "--monitor",
        action="store_true",
        default=None,
        help="Monitor mode: only log, never change fan speed or power limit",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=None,
        help="Enable debug logging",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        default=None,
        help="Log GPU state on every tick",
    )
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        help="Log level (overrides config file)",
    )
    parser.add_argument(
        "--gpu",
        type=int,
        help="NVML index of the GPU to control",
    )
    parser.add_argument(
        "--status-file",
        help="Write the latest GPU state as JSON to this file",
    )
    parser.add_argument(
        "--on-write-error",
        choices=WRITE_ERROR_POLICIES,
        help="Stop (abort) or try again next tick (retry) when a command fails",
    )
    return parser.parse_args(argv)


@dataclass
class Config:
    """Daemon configuration. Treated as read-only once loaded."""

    interval: float = 2.0
    temperature: int = 80
    fan_speed: int = 100
    hysteresis: int = 4
    performance: bool = False
    monitor: bool = False
    debug: bool = False
    verbose: bool = False
    log_level: str = "WARNING"
    gpu_index: int = 0
    status_file: str | None = None
    write_error_policy: str = "abort"

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise ValueError(f"Interval must be positive, got {self.interval}")

        if not (0 < self.temperature <= 110):
            raise ValueError(f"Temperature must be 1-110°C, got {self.temperature}")

        if not (0 <= self.fan_speed <= 100):
            raise ValueError(f"Fan speed must be 0-100, got {self.fan_speed}")

        if self.hysteresis < 0:
            raise ValueError(f"Hysteresis must not be negative, got {self.hysteresis}")

        if self.gpu_index < 0:
            raise ValueError(f"GPU index must not be negative, got {self.gpu_index}")

        if self.write_error_policy not in WRITE_ERROR_POLICIES:
            raise ValueError(
                f"Invalid write error policy '{self.write_error_policy}'. "
                f"Must be one of: {', '.join(WRITE_ERROR_POLICIES)}"
            )

        # Monitor mode is useless without the per-tick state lines
        if self.monitor and not self.debug:
            self.verbose = True

        if self.debug:
            self.log_level = "DEBUG"
        elif self.verbose and self.log_level == "WARNING":
            self.log_level = "INFO"

    @property
    def profile(self) -> str:
        """Tuning profile matching the performance flag."""
        return "performance" if self.performance else "balanced"

    @classmethod
    def load(cls, argv: list[str] | None = None) -> "Config":
        """Load configuration from environment file, env vars, and CLI args.

        Priority (highest to lowest):
        1. CLI arguments
        2. NVIDIACTL_* environment variables
        3. /etc/default/nvidiactl file
        4. Dataclass defaults
        """
        file_env = {k: v for k, v in dotenv_values(DEFAULT_CONFIG_PATH).items() if v is not None}

        def env(key: str) -> str | None:
            key = ENV_PREFIX + key
            if key in os.environ:
                return os.environ[key]
            return file_env.get(key)

        kwargs: dict[str, object] = {}

        if (v := env("INTERVAL")) is not None:
            try:
                kwargs["interval"] = float(v)
            except ValueError:
                pass

        for key, field_name in (
            ("TEMPERATURE", "temperature"),
            ("FAN_SPEED", "fan_speed"),
            ("HYSTERESIS", "hysteresis"),
            ("GPU", "gpu_index"),
        ):
            if (v := env(key)) is not None:
                try:
                    kwargs[field_name] = int(v)
                except ValueError:
                    pass

        for key, field_name in (
            ("PERFORMANCE", "performance"),
            ("MONITOR", "monitor"),
            ("DEBUG", "debug"),
            ("VERBOSE", "verbose"),
        ):
            if (v := env(key)) is not None:
                kwargs[field_name] = _parse_bool(v)

        if (v := env("LOG_LEVEL")) is not None:
            kwargs["log_level"] = v.upper()

        if (v := env("STATUS_FILE")) is not None:
            kwargs["status_file"] = v or None

        if (v := env("ON_WRITE_ERROR")) is not None:
            kwargs["write_error_policy"] = v.lower()

        # CLI arguments override everything
        args = _parse_cli_args(argv)

        if args.interval is not None:
            kwargs["interval"] = args.interval

        if args.temperature is not None:
            kwargs["temperature"] = args.temperature

        if args.fan_speed is not None:
            kwargs["fan_speed"] = args.fan_speed

        if args.hysteresis is not None:
            kwargs["hysteresis"] = args.hysteresis

        for flag in ("performance", "monitor", "debug", "verbose"):
            if getattr(args, flag) is True:
                kwargs[flag] = True

        if args.log_level is not None:
            kwargs["log_level"] = args.log_level

        if args.gpu is not None:
            kwargs["gpu_index"] = args.gpu

        if args.status_file is not None:
            kwargs["status_file"] = args.status_file

        if args.on_write_error is not None:
            kwargs["write_error_policy"] = args.on_write_error

        return cls(**kwargs)

    def setup_logging(self) -> None:
        """Configure logging based on this config.

        Under systemd the journal stamps every line, so the timestamp is left out.
        """
        if os.environ.get("INVOCATION_ID"):
            fmt = "[%(levelname)s] [%(name)s] %(message)s"
        else:
            fmt = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"

        logging.basicConfig(
            level=getattr(logging, self.log_level, logging.WARNING),
            format=fmt,
            datefmt="%Y-%m-%d %H:%M:%S",
        )
