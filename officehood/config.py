"""Configuration for officehood.

Paths and the adapter are read from the environment at import time. Numeric
settings are only parsed by ``TrackerConfig.from_env()`` and ``web_port()``,
so a bad value is reported where the daemon can handle it. The daemon's
command line overrides them through ``TrackerConfig``.
"""

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

from .errors import ConfigurationError


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


DATA_DIR = Path(os.getenv(
    "OFFICEHOOD_DATA_DIR",
    Path.home() / ".local" / "share" / "officehood",
))
DB_PATH = Path(os.getenv("OFFICEHOOD_DB_PATH", DATA_DIR / "officehood.db"))

# Bluetooth adapter to scan with (None = system default)
BLUETOOTH_ADAPTER: Optional[str] = os.getenv("OFFICEHOOD_ADAPTER") or None

# Defaults, overridable with the OFFICEHOOD_* variable of the same name
SCAN_INTERVAL_MS = 60_000
SCAN_DURATION_MS = 30_000
ABSENCE_TIMEOUT_MS = 120_000
# 0 means "same as the absence timeout"
TIMEOUT_CHECK_MS = 0
CHECKPOINT_INTERVAL_MS = 900_000

WEB_HOST = os.getenv("OFFICEHOOD_WEB_HOST", "127.0.0.1")
WEB_PORT = 8080

# Sessions shorter than this are never written
MIN_SESSION_MINUTES = 1


def web_port() -> int:
    """API port from OFFICEHOOD_WEB_PORT."""
    return _env_int("OFFICEHOOD_WEB_PORT", WEB_PORT)


@dataclass(frozen=True)
class TrackerConfig:
    """Timer settings for the presence tracker, in milliseconds."""
    scan_interval_ms: int = SCAN_INTERVAL_MS
    scan_duration_ms: int = SCAN_DURATION_MS
    absence_timeout_ms: int = ABSENCE_TIMEOUT_MS
    timeout_check_ms: Optional[int] = TIMEOUT_CHECK_MS or None
    checkpoint_interval_ms: int = CHECKPOINT_INTERVAL_MS

    @classmethod
    def from_env(cls) -> "TrackerConfig":
        """Build a config from the OFFICEHOOD_* environment variables."""
        return cls(
            scan_interval_ms=_env_int("OFFICEHOOD_SCAN_INTERVAL_MS", SCAN_INTERVAL_MS),
            scan_duration_ms=_env_int("OFFICEHOOD_SCAN_DURATION_MS", SCAN_DURATION_MS),
            absence_timeout_ms=_env_int("OFFICEHOOD_ABSENCE_TIMEOUT_MS", ABSENCE_TIMEOUT_MS),
            timeout_check_ms=_env_int("OFFICEHOOD_TIMEOUT_CHECK_MS", TIMEOUT_CHECK_MS) or None,
            checkpoint_interval_ms=_env_int("OFFICEHOOD_CHECKPOINT_INTERVAL_MS", CHECKPOINT_INTERVAL_MS),
        )

    def with_overrides(self, **overrides: Optional[int]) -> "TrackerConfig":
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)

    def validate(self) -> None:
        """Raise ConfigurationError if any interval is unusable."""
        intervals = {
            "scan_interval_ms": self.scan_interval_ms,
            "scan_duration_ms": self.scan_duration_ms,
            "absence_timeout_ms": self.absence_timeout_ms,
            "checkpoint_interval_ms": self.checkpoint_interval_ms,
        }
        if self.timeout_check_ms is not None:
            intervals["timeout_check_ms"] = self.timeout_check_ms

        for name, value in intervals.items():
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")

        # The radio must be idle for part of every cycle
        if self.scan_duration_ms >= self.scan_interval_ms:
            raise ConfigurationError(
                f"scan_duration_ms ({self.scan_duration_ms}) must be shorter "
                f"than scan_interval_ms ({self.scan_interval_ms})"
            )

    @property
    def scan_interval(self) -> float:
        return self.scan_interval_ms / 1000

    @property
    def scan_duration(self) -> float:
        return self.scan_duration_ms / 1000

    @property
    def absence_timeout(self) -> float:
        return self.absence_timeout_ms / 1000

    @property
    def timeout_check_interval(self) -> float:
        return (self.timeout_check_ms or self.absence_timeout_ms) / 1000

    @property
    def checkpoint_interval(self) -> float:
        return self.checkpoint_interval_ms / 1000
