from __future__ import annotations

import os
import tempfile

import pytest

# The logger binds its file handler at first import (during collection).
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="clinic_rt_logs_"))

from clinic_realtime.config import get_settings  # noqa: E402


@pytest.fixture(autouse=True)
def _test_env(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    root = tmp_path_factory.mktemp("crt_test")
    (root / "logs").mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("LOG_DIR", str(root / "logs"))
    monkeypatch.setenv("STRICT_SECRETS", "0")
    monkeypatch.setenv("NTFY_ENABLED", "0")
    monkeypatch.setenv("CLINIC_TIMEZONE", "UTC")
    monkeypatch.delenv("NTFY_AUTH", raising=False)
    monkeypatch.delenv("NOTIFY_ESCALATE_KINDS", raising=False)
    monkeypatch.delenv("NOTIFY_THROTTLE_MS", raising=False)
    get_settings.cache_clear()
