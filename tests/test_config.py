from __future__ import annotations

import json
import logging

import pytest
from click.testing import CliRunner

from clinic_realtime.cli import cli
from config.settings import ConfigError, get_safe_config_report, get_settings


def test_defaults() -> None:
    s = get_settings()
    assert s.notify_throttle_ms == 2000
    assert s.desktop_auto_close_ms == 5000
    assert s.long_wait_minutes == 30
    assert s.urgent_task_priority_max == 2
    assert s.escalate_kind_list() == ["queue", "alert"]


def test_escalate_kinds_are_normalized(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NOTIFY_ESCALATE_KINDS", " Queue; alert ,queue,task")
    get_settings.cache_clear()
    assert get_settings().escalate_kind_list() == ["queue", "alert", "task"]


def test_strict_mode_rejects_bad_timezone(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STRICT_SECRETS", "1")
    monkeypatch.setenv("CLINIC_TIMEZONE", "Mars/Olympus_Mons")
    get_settings.cache_clear()
    with pytest.raises(ConfigError):
        _ = get_settings()


def test_strict_mode_requires_ntfy_target(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STRICT_SECRETS", "1")
    monkeypatch.setenv("NTFY_ENABLED", "1")
    monkeypatch.setenv("NTFY_BASE_URL", "")
    get_settings.cache_clear()
    with pytest.raises(ConfigError):
        _ = get_settings()


def test_lenient_mode_only_warns(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NOTIFY_ESCALATE_KINDS", "queue,fireworks")
    get_settings.cache_clear()
    assert "fireworks" in get_settings().escalate_kind_list()


def test_safe_config_report_masks_secrets(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NTFY_AUTH", "token:very-secret-token-value")
    get_settings.cache_clear()
    rep = get_safe_config_report()
    assert rep["secrets"] == {"ntfy_auth": "SET"}
    assert "very-secret-token-value" not in json.dumps(rep, default=str)
    assert rep["public"]["notify_throttle_ms"] == 2000


def test_cli_show_config() -> None:
    result = CliRunner().invoke(cli, ["show-config"])
    assert result.exit_code == 0, result.output
    rep = json.loads(result.output)
    assert rep["secrets"]["ntfy_auth"] == "UNSET"
    assert rep["strict_secrets"] is False


def test_cli_log_level_override() -> None:
    root = logging.getLogger()
    before = root.level
    try:
        result = CliRunner().invoke(cli, ["--log-level", "debug", "show-config"])
        assert result.exit_code == 0, result.output
        assert root.level == logging.DEBUG
    finally:
        root.setLevel(before)
