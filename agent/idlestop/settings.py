"""Environment-backed settings for the idle-stop service."""

from __future__ import annotations

import math
import os
from typing import TypeVar

import structlog

from idlestop.models import IdleOptions

logger = structlog.get_logger("idlestop.settings")

T = TypeVar("T", int, float)

DEFAULT_METADATA_URL = "http://169.254.169.254"


def _parse_env(
    name: str,
    default: T,
    type_fn: type,
    minimum: float = 0,
    maximum: float | None = None,
    allow_zero: bool = True,
) -> T:
    """Parse a numeric environment variable, falling back to ``default``.

    Args:
        name: Environment variable name.
        default: Value used when unset, unparsable or out of range.
        type_fn: Conversion function (int or float).
        minimum: Smallest accepted value.
        maximum: Largest accepted value, if bounded.
        allow_zero: Whether zero is accepted.
    """
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = type_fn(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid setting, using default", name=name, value=raw, default=default)
        return default
    if (
        not math.isfinite(value)
        or value < minimum
        or (maximum is not None and value > maximum)
        or (value == 0 and not allow_zero)
    ):
        logger.warning("Setting out of range, using default", name=name, value=raw, default=default)
        return default
    return value


def _parse_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


class Settings:
    """Accessors for the ``IDLE_STOP_*`` environment variables.

    Values are read on every call so tests and hosts can change the
    environment after import.
    """

    def grace(self) -> float:
        return _parse_env("IDLE_STOP_GRACE_SECONDS", 600.0, float)

    def attach_interval(self) -> float:
        return _parse_env("IDLE_STOP_ATTACH_INTERVAL_SECONDS", 0.5, float, allow_zero=False)

    def attach_timeout(self) -> float:
        return _parse_env("IDLE_STOP_ATTACH_TIMEOUT_SECONDS", 0.0, float)

    def player_port(self) -> int | None:
        port = _parse_env("IDLE_STOP_PLAYER_PORT", 0, int, maximum=65535)
        return port or None

    def first_viewer_grace(self) -> float:
        return _parse_env("IDLE_STOP_FIRST_VIEWER_GRACE_SECONDS", 3600.0, float)

    def first_viewer_delay(self) -> float:
        return _parse_env("IDLE_STOP_FIRST_VIEWER_DELAY_SECONDS", 0.0, float)

    def heartbeat_interval(self) -> float:
        return _parse_env("IDLE_STOP_HEARTBEAT_SECONDS", 30.0, float)

    def heartbeat_misses(self) -> int:
        return _parse_env("IDLE_STOP_HEARTBEAT_MISSES", 2, int)

    def max_depth(self) -> int:
        return _parse_env("IDLE_STOP_SCAN_DEPTH", 12, int)

    def metadata_url(self) -> str:
        return os.environ.get("IDLE_STOP_METADATA_URL", DEFAULT_METADATA_URL).rstrip("/")

    def dry_run(self) -> bool:
        return _parse_bool("IDLE_STOP_DRY_RUN")

    def log_level(self) -> str:
        return os.environ.get("IDLE_STOP_LOG_LEVEL", "info").strip().lower()

    def log_format(self) -> str:
        return os.environ.get("IDLE_STOP_LOG_FORMAT", "console").strip().lower()

    def options(self, **overrides) -> IdleOptions:
        """Build ``IdleOptions`` from the environment.

        Args:
            **overrides: Explicit values that win over the environment.
        """
        values = {
            "grace": self.grace(),
            "attach_interval": self.attach_interval(),
            "attach_timeout": self.attach_timeout(),
            "player_port": self.player_port(),
            "first_viewer_grace": self.first_viewer_grace(),
            "first_viewer_delay": self.first_viewer_delay(),
            "heartbeat_interval": self.heartbeat_interval(),
            "heartbeat_misses": self.heartbeat_misses(),
            "max_depth": self.max_depth(),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return IdleOptions(**values)


settings = Settings()
