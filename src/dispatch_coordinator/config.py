"""Runtime configuration for the coordination engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


@dataclass(slots=True)
class MonitorSettings:
    """Deadline monitor cadence and escalation thresholds."""

    interval_seconds: float = 30.0
    check_threshold: float = 0.5
    warn_threshold: float = 0.75
    reassign_threshold: float = 0.9


@dataclass(slots=True)
class RouterSettings:
    """Language-model router endpoint and call budget."""

    base_url: str = "https://api.anthropic.com"
    api_key: str = ""
    model: str = "claude-sonnet-4-20250514"
    timeout_seconds: float = 30.0
    max_attempts: int = 2
    max_tokens: int = 2000


@dataclass(slots=True)
class FanoutSettings:
    """Real-time delivery settings."""

    queue_size: int = 1000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".dispatch.db")
    sqlite_busy_timeout_ms: int = 5_000
    monitor: MonitorSettings = field(default_factory=MonitorSettings)
    router: RouterSettings = field(default_factory=RouterSettings)
    fanout: FanoutSettings = field(default_factory=FanoutSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("DISPATCH_DB_PATH", ".dispatch.db")),
            sqlite_busy_timeout_ms=_env_int("DISPATCH_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            monitor=MonitorSettings(
                interval_seconds=_env_float("DISPATCH_MONITOR_INTERVAL_SECONDS", 30.0),
                check_threshold=_env_float("DISPATCH_MONITOR_CHECK_THRESHOLD", 0.5),
                warn_threshold=_env_float("DISPATCH_MONITOR_WARN_THRESHOLD", 0.75),
                reassign_threshold=_env_float("DISPATCH_MONITOR_REASSIGN_THRESHOLD", 0.9),
            ),
            router=RouterSettings(
                base_url=os.getenv("DISPATCH_ROUTER_BASE_URL", "https://api.anthropic.com"),
                api_key=os.getenv("DISPATCH_ROUTER_API_KEY", ""),
                model=os.getenv("DISPATCH_ROUTER_MODEL", "claude-sonnet-4-20250514"),
                timeout_seconds=_env_float("DISPATCH_ROUTER_TIMEOUT_SECONDS", 30.0),
                max_attempts=_env_int("DISPATCH_ROUTER_MAX_ATTEMPTS", 2),
                max_tokens=_env_int("DISPATCH_ROUTER_MAX_TOKENS", 2000),
            ),
            fanout=FanoutSettings(
                queue_size=_env_int("DISPATCH_FANOUT_QUEUE_SIZE", 1000),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if monitor, router or fanout settings are inconsistent."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("DISPATCH_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        monitor = self.monitor
        if monitor.interval_seconds <= 0:
            raise ValueError("DISPATCH_MONITOR_INTERVAL_SECONDS must be > 0.")
        if not 0 < monitor.check_threshold < monitor.warn_threshold < monitor.reassign_threshold:
            raise ValueError(
                "Escalation thresholds must be strictly increasing: "
                "DISPATCH_MONITOR_CHECK_THRESHOLD < DISPATCH_MONITOR_WARN_THRESHOLD < "
                "DISPATCH_MONITOR_REASSIGN_THRESHOLD.",
            )
        if monitor.reassign_threshold > 1:
            raise ValueError("DISPATCH_MONITOR_REASSIGN_THRESHOLD must be <= 1.")

        router = self.router
        parsed = urlparse(router.base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                "Invalid DISPATCH_ROUTER_BASE_URL: "
                f"{router.base_url!r}. Expected an absolute http:// or https:// URL.",
            )
        if router.timeout_seconds <= 0:
            raise ValueError("DISPATCH_ROUTER_TIMEOUT_SECONDS must be > 0.")
        if router.max_attempts <= 0:
            raise ValueError("DISPATCH_ROUTER_MAX_ATTEMPTS must be a positive integer.")
        if router.max_tokens <= 0:
            raise ValueError("DISPATCH_ROUTER_MAX_TOKENS must be a positive integer.")

        if self.fanout.queue_size <= 0:
            raise ValueError("DISPATCH_FANOUT_QUEUE_SIZE must be a positive integer.")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {name}: {raw!r}") from error
