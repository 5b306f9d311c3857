from __future__ import annotations

import asyncio

from clinic_realtime.config import get_settings
from clinic_realtime.events.models import DomainEvent, EventKind, Severity
from clinic_realtime.notify.base import RecordingToastSink
from clinic_realtime.notify.outbox import Outbox
from clinic_realtime.notify.permission import PermissionState
from clinic_realtime.notify.throttle import NotificationContext, NotificationThrottle
from tests._helpers.fakes import FakeClock, FakeDesktop, FakePermission, RecordingSender


def _stage(*, hidden: bool = True, permission: PermissionState = PermissionState.GRANTED, **kw):
    clock = FakeClock()
    ctx = NotificationContext(clock=clock, **kw)
    ctx.permission.state = permission
    sink = RecordingToastSink()
    desktop = FakeDesktop(hidden=hidden)
    return clock, ctx, sink, desktop, NotificationThrottle(ctx, sink, desktop=desktop)


def test_same_key_coalesced_inside_window() -> None:
    clock, _, sink, _, throttle = _stage()
    assert throttle.show("queue-new-1", "New patient waiting") is True
    clock.advance(1.999)
    assert throttle.show("queue-new-1", "New patient waiting") is False
    assert sink.messages == ["New patient waiting"]


def test_same_key_shown_again_after_window() -> None:
    clock, _, sink, _, throttle = _stage()
    throttle.show("k", "first")
    clock.advance(2.0)
    assert throttle.show("k", "second") is True
    assert sink.messages == ["first", "second"]


def test_distinct_keys_are_independent() -> None:
    _, _, sink, _, throttle = _stage()
    throttle.show("a", "A")
    throttle.show("b", "B")
    assert sink.messages == ["A", "B"]


def test_coalesced_call_is_not_replayed() -> None:
    clock, ctx, sink, _, throttle = _stage()
    throttle.show("k", "one")
    clock.advance(0.5)
    throttle.show("k", "two")
    clock.advance(5)
    assert sink.messages == ["one"]
    # The dropped call did not move the window.
    assert ctx.last_shown["k"] == 100.0


def test_toast_uses_context_presentation() -> None:
    _, _, sink, _, throttle = _stage(toast_duration_ms=4000, toast_position="bottom-right")
    throttle.publish(
        DomainEvent(
            key="task-urgent-1",
            kind=EventKind.TASK,
            message="New urgent task",
            severity=Severity.ERROR,
            description="Call the lab",
        )
    )
    t = sink.toasts[0]
    assert t.variant is Severity.ERROR
    assert t.description == "Call the lab"
    assert t.duration_ms == 4000
    assert t.position == "bottom-right"
    assert t.key == "task-urgent-1"


def test_escalates_when_granted_and_hidden() -> None:
    _, _, sink, desktop, throttle = _stage(hidden=True)
    throttle.show("queue-new-1", "New patient waiting", kind=EventKind.QUEUE, description="Ada")
    assert len(sink.toasts) == 1
    assert len(desktop.handles) == 1
    n = desktop.handles[0].notification
    assert n.title == "New patient waiting"
    assert n.body == "Ada"
    assert n.icon == "/favicon.ico"
    assert n.tag.startswith("notification-")


def test_no_escalation_when_window_visible() -> None:
    _, _, sink, desktop, throttle = _stage(hidden=False)
    throttle.show("queue-new-1", "New patient waiting", kind=EventKind.QUEUE)
    assert len(sink.toasts) == 1
    assert desktop.handles == []


def test_no_escalation_without_permission() -> None:
    _, _, sink, desktop, throttle = _stage(hidden=True, permission=PermissionState.DENIED)
    throttle.show("queue-new-1", "New patient waiting", kind=EventKind.QUEUE)
    assert len(sink.toasts) == 1
    assert desktop.handles == []


def test_non_escalating_kind_stays_in_app() -> None:
    _, _, _, desktop, throttle = _stage(hidden=True)
    throttle.show("activity-1", "Patient updated", kind=EventKind.ACTIVITY)
    assert desktop.handles == []


def test_desktop_disabled_by_context() -> None:
    _, _, _, desktop, throttle = _stage(hidden=True, desktop_enabled=False)
    throttle.show("queue-new-1", "New patient waiting", kind=EventKind.QUEUE)
    assert desktop.handles == []


def test_click_focuses_and_closes() -> None:
    _, _, _, desktop, throttle = _stage(hidden=True)
    throttle.show("alert-1", "Extended wait", kind=EventKind.ALERT)
    handle = desktop.handles[0]
    assert handle.click_cb is not None
    handle.click_cb()
    assert desktop.focused == 1
    assert handle.closed is True


def test_desktop_auto_closes() -> None:
    async def run() -> FakeDesktop:
        _, _, _, desktop, throttle = _stage(hidden=True, desktop_auto_close_ms=10)
        throttle.show("alert-1", "Extended wait", kind=EventKind.ALERT)
        assert desktop.handles[0].closed is False
        await asyncio.sleep(0.05)
        return desktop

    desktop = asyncio.run(run())
    assert desktop.handles[0].closed is True


def test_close_pending_closes_open_notifications() -> None:
    async def run() -> FakeDesktop:
        _, _, _, desktop, throttle = _stage(hidden=True, desktop_auto_close_ms=60_000)
        throttle.show("alert-1", "Extended wait", kind=EventKind.ALERT)
        throttle.close_pending()
        return desktop

    desktop = asyncio.run(run())
    assert desktop.handles[0].closed is True


def test_escalation_forwards_intent_to_outbox() -> None:
    _, ctx, sink, desktop, _ = _stage(hidden=True)
    outbox = Outbox(RecordingSender(), max_pending=10)
    throttle = NotificationThrottle(ctx, sink, desktop=desktop, forward=outbox, tenant_id="s1")
    throttle.show("queue-longwait-1", "Extended wait", kind=EventKind.ALERT, description="Ada")
    assert outbox.pending == 1
    intent = outbox._queue.get_nowait()
    assert intent.event == "alert.escalated"
    assert intent.tenant_id == "s1"
    assert intent.priority == 4
    assert intent.metadata == {"key": "queue-longwait-1"}


def test_permission_requested_once_per_session() -> None:
    _, ctx, _, _, throttle = _stage(permission=PermissionState.DEFAULT)
    provider = FakePermission()
    asyncio.run(throttle.activate(provider))
    asyncio.run(throttle.activate(provider))
    assert provider.requests == 1
    assert ctx.permission.granted is True


def test_permission_not_requested_when_already_decided() -> None:
    _, ctx, _, _, throttle = _stage(permission=PermissionState.DEFAULT)
    provider = FakePermission(current=PermissionState.DENIED)
    asyncio.run(throttle.activate(provider))
    assert provider.requests == 0
    assert ctx.permission.state is PermissionState.DENIED


def test_permission_parse_accepts_enum_and_text() -> None:
    assert PermissionState.parse(PermissionState.GRANTED) is PermissionState.GRANTED
    assert PermissionState.parse(" Denied ") is PermissionState.DENIED
    assert PermissionState.parse(None) is PermissionState.DEFAULT
    assert PermissionState.parse("later") is PermissionState.DEFAULT


def test_granted_prompt_enables_escalation() -> None:
    _, ctx, sink, desktop, throttle = _stage(hidden=True, permission=PermissionState.DEFAULT)
    asyncio.run(throttle.activate(FakePermission()))
    assert ctx.permission.state is PermissionState.GRANTED
    throttle.show("queue-new-1", "New patient waiting", kind=EventKind.QUEUE)
    assert len(desktop.handles) == 1


def test_cancelled_prompt_is_asked_again() -> None:
    _, ctx, _, _, throttle = _stage(permission=PermissionState.DEFAULT)

    async def run() -> FakePermission:
        provider = FakePermission(gate=asyncio.Event())
        task = asyncio.create_task(throttle.activate(provider))
        await asyncio.sleep(0)
        assert ctx.permission.prompting is True
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        assert ctx.permission.activated is False
        assert ctx.permission.prompting is False

        provider.gate.set()
        await throttle.activate(provider)
        return provider

    provider = asyncio.run(run())
    assert provider.requests == 2
    assert ctx.permission.granted is True
    assert ctx.permission.activated is True


def test_explicit_request_only_while_undecided() -> None:
    cache = NotificationContext(clock=FakeClock()).permission
    provider = FakePermission(answer=PermissionState.DENIED)
    assert asyncio.run(cache.request_permission(provider)) is PermissionState.DENIED
    assert asyncio.run(cache.request_permission(provider)) is PermissionState.DENIED
    assert provider.requests == 1
    assert asyncio.run(cache.request_permission(None)) is PermissionState.DENIED


def test_context_from_settings(monkeypatch) -> None:
    monkeypatch.setenv("NOTIFY_THROTTLE_MS", "500")
    monkeypatch.setenv("NOTIFY_ESCALATE_KINDS", "alert, task")
    get_settings.cache_clear()
    ctx = NotificationContext.from_settings()
    assert ctx.throttle_ms == 500
    assert ctx.escalate_kinds == frozenset({EventKind.ALERT, EventKind.TASK})
