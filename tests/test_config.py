from __future__ import annotations

from pathlib import Path

import allure
import pytest

from dispatch_coordinator.config import MonitorSettings, RouterSettings, Settings

pytestmark = [
    allure.epic("Coordination Engine"),
    allure.feature("Configuration"),
]


def test_defaults_are_valid() -> None:
    settings = Settings()

    settings.validate()

    assert settings.monitor.interval_seconds == 30.0
    assert (
        settings.monitor.check_threshold,
        settings.monitor.warn_threshold,
        settings.monitor.reassign_threshold,
    ) == (0.5, 0.75, 0.9)
    assert settings.fanout.queue_size == 1000


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("DISPATCH_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("DISPATCH_MONITOR_INTERVAL_SECONDS", "5")
    monkeypatch.setenv("DISPATCH_ROUTER_API_KEY", "secret")
    monkeypatch.setenv("DISPATCH_ROUTER_MAX_ATTEMPTS", " 4 ")
    monkeypatch.setenv("DISPATCH_FANOUT_QUEUE_SIZE", "")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.monitor.interval_seconds == 5.0
    assert settings.router.api_key == "secret"
    assert settings.router.max_attempts == 4
    assert settings.fanout.queue_size == 1000


def test_explicit_db_path_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("DISPATCH_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


def test_non_numeric_env_value_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DISPATCH_ROUTER_TIMEOUT_SECONDS", "soon")

    with pytest.raises(ValueError, match="DISPATCH_ROUTER_TIMEOUT_SECONDS"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("monitor", "match"),
    [
        (MonitorSettings(interval_seconds=0), "INTERVAL_SECONDS"),
        (MonitorSettings(check_threshold=0.8), "strictly increasing"),
        (MonitorSettings(check_threshold=0), "strictly increasing"),
        (MonitorSettings(reassign_threshold=1.2), "REASSIGN_THRESHOLD must be <= 1"),
    ],
)
def test_validate_rejects_bad_monitor_settings(monitor: MonitorSettings, match: str) -> None:
    with pytest.raises(ValueError, match=match):
        Settings(monitor=monitor).validate()


@pytest.mark.parametrize(
    ("router", "match"),
    [
        (RouterSettings(base_url="ftp://router.test"), "Invalid DISPATCH_ROUTER_BASE_URL"),
        (RouterSettings(timeout_seconds=0), "TIMEOUT_SECONDS"),
        (RouterSettings(max_attempts=0), "MAX_ATTEMPTS"),
    ],
)
def test_validate_rejects_bad_router_settings(router: RouterSettings, match: str) -> None:
    with pytest.raises(ValueError, match=match):
        Settings(router=router).validate()
