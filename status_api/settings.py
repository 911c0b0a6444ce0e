from __future__ import annotations

import os
from dataclasses import dataclass, field

from health_checks.history import DEFAULT_CAPACITY, DEFAULT_HISTORY_PATH
from health_checks.registry import DEFAULT_REGISTRY_PATH


_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _env_flag(name: str, default: bool) -> bool:
    value = (os.getenv(name) or "").strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    return default


def _env_capacity(name: str, default: int) -> int:
    try:
        return max(1, int((os.getenv(name) or "").strip()))
    except ValueError:
        return default


def _env(name: str, default: str) -> str:
    # Unset and blank both mean "use the default".
    return (os.getenv(name) or "").strip() or default


@dataclass(frozen=True)
class StatusSettings:
    registry_path: str = field(default_factory=lambda: _env("HEALTH_REGISTRY_PATH", str(DEFAULT_REGISTRY_PATH)))

    # Snapshot history; a missing file on cold start is normal.
    history_path: str = field(default_factory=lambda: _env("HEALTH_HISTORY_PATH", str(DEFAULT_HISTORY_PATH)))
    history_capacity: int = field(default_factory=lambda: _env_capacity("HEALTH_HISTORY_CAPACITY", DEFAULT_CAPACITY))
    history_enabled: bool = field(default_factory=lambda: _env_flag("HEALTH_HISTORY_ENABLED", True))

    # /api/health response headers.
    cache_control: str = field(
        default_factory=lambda: _env("HEALTH_CACHE_CONTROL", "s-maxage=10, stale-while-revalidate=20")
    )
    cors_allow_origin: str = field(default_factory=lambda: _env("HEALTH_CORS_ALLOW_ORIGIN", "*"))
