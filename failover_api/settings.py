from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except ValueError:
        return int(default)


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return str(default)
    s = str(raw).strip()
    return s if s else str(default)


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(p.strip() for p in str(raw).split(",") if p.strip())


@dataclass(frozen=True)
class FailoverSettings:
    data_path: str = field(default_factory=lambda: _env_str("FAILOVER_DATA_PATH", "data.json"))
    config_path: str = field(default_factory=lambda: _env_str("FAILOVER_CONFIG", "config.yaml"))

    host: str = field(default_factory=lambda: _env_str("FAILOVER_HOST", "0.0.0.0"))
    # 0 means "use server.port from config.yaml", falling back to 8081.
    port: int = field(default_factory=lambda: _env_int("FAILOVER_PORT", 0))
    log_level: str = field(default_factory=lambda: _env_str("FAILOVER_LOG_LEVEL", "info"))

    cookie_max_age_seconds: int = field(default_factory=lambda: _env_int("FAILOVER_COOKIE_MAX_AGE", 24 * 3600))
    cors_allow_origins: tuple[str, ...] = field(default_factory=lambda: _env_csv("FAILOVER_CORS_ORIGINS", ("*",)))

    # /api/status
    status_history_limit: int = field(default_factory=lambda: _env_int("FAILOVER_STATUS_HISTORY_LIMIT", 50))
    offline_hot_min_count: int = field(default_factory=lambda: _env_int("FAILOVER_OFFLINE_HOT_MIN_COUNT", 3))
