from __future__ import annotations

import importlib


def test_imports_smoke() -> None:
    modules = [
        "clinic_realtime",
        "clinic_realtime.cli",
        "clinic_realtime.config",
        "clinic_realtime.events.labels",
        "clinic_realtime.feed.local",
        "clinic_realtime.notify.ntfy",
        "clinic_realtime.notify.outbox",
        "clinic_realtime.notify.throttle",
        "clinic_realtime.queue.reorder",
        "clinic_realtime.queue.sync",
        "clinic_realtime.realtime.multiplexer",
        "clinic_realtime.web.app",
        "clinic_realtime.web.run",
        "config.settings",
    ]
    for name in modules:
        importlib.import_module(name)
