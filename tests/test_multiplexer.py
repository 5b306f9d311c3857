from __future__ import annotations

import asyncio
from datetime import timedelta

from clinic_realtime.events.models import EventKind, Severity
from clinic_realtime.feed.local import InMemoryRows, LocalChangeFeed
from clinic_realtime.notify.base import RecordingToastSink
from clinic_realtime.notify.permission import PermissionState
from clinic_realtime.notify.throttle import NotificationContext, NotificationThrottle
from clinic_realtime.realtime.interpret import Rules
from clinic_realtime.realtime.multiplexer import SubscriptionMultiplexer
from tests._helpers.fakes import T0, FailingReader, FakeClock, FakeDesktop, GatedReader

TENANT = "s1"


def _patients() -> InMemoryRows:
    return InMemoryRows(
        {"patients": {"p1": {"id": "p1", "first_name": "Ada", "last_name": "Lovelace"}}}
    )


class Harness:
    def __init__(self, reader=None, *, user_id: str | None = "u1") -> None:
        self.feed = LocalChangeFeed()
        self.reader = reader if reader is not None else _patients()
        self.sink = RecordingToastSink()
        self.clock = FakeClock()
        self.now = T0
        self.throttle = NotificationThrottle(NotificationContext(clock=self.clock), self.sink)
        self.rules = Rules(user_id=user_id or "", now=lambda: self.now)
        self.mux = SubscriptionMultiplexer(
            self.feed, self.reader, self.throttle, user_id=user_id, rules=self.rules
        )

    def queue_row(self, **kw) -> dict:
        row = {
            "id": "q1",
            "structure_id": TENANT,
            "patient_id": "p1",
            "status": "waiting",
            "arrival_time": T0.isoformat(),
        }
        row.update(kw)
        return row


def test_long_wait_alert_end_to_end() -> None:
    h = Harness()

    async def run() -> None:
        assert await h.mux.start(TENANT) is True
        h.feed.insert("patient_queue", h.queue_row())
        await h.mux.wait_idle()

        h.now = T0 + timedelta(minutes=31)
        old = h.queue_row()
        for i in range(3):
            h.feed.update("patient_queue", h.queue_row(notes=f"update {i}"), old)
            h.clock.advance(0.2)
        await h.mux.wait_idle()
        await h.mux.stop()

    asyncio.run(run())

    alerts = [t for t in h.sink.toasts if t.key == "queue-longwait-q1"]
    assert len(alerts) == 1
    assert alerts[0].message == "Extended wait"
    assert alerts[0].variant is Severity.WARNING
    assert alerts[0].description == "Ada Lovelace waiting for 31 min"
    assert h.sink.toasts[0].message == "New patient waiting"
    assert h.sink.toasts[0].description == "Ada Lovelace"


def test_update_without_old_row_still_checks_long_wait() -> None:
    h = Harness()
    h.now = T0 + timedelta(minutes=31)

    async def run() -> None:
        await h.mux.start(TENANT)
        h.feed.update("patient_queue", h.queue_row(), {})
        await h.mux.wait_idle()
        await h.mux.stop()

    asyncio.run(run())
    assert [t.key for t in h.sink.toasts] == ["queue-longwait-q1"]
    assert h.sink.toasts[0].description == "Ada Lovelace waiting for 31 min"


def test_update_without_old_row_reports_new_status() -> None:
    h = Harness()

    async def run() -> None:
        await h.mux.start(TENANT)
        h.feed.update("patient_queue", h.queue_row(status="called"), {})
        await h.mux.wait_idle()
        await h.mux.stop()

    asyncio.run(run())
    assert [t.key for t in h.sink.toasts] == ["queue-called-q1"]


def test_long_wait_only_while_waiting() -> None:
    h = Harness()
    h.now = T0 + timedelta(minutes=45)

    async def run() -> None:
        await h.mux.start(TENANT)
        h.feed.update(
            "patient_queue", h.queue_row(status="called"), h.queue_row(status="waiting")
        )
        await h.mux.wait_idle()
        await h.mux.stop()

    asyncio.run(run())
    assert [t.key for t in h.sink.toasts] == ["queue-called-q1"]
    assert h.sink.toasts[0].message == "Patient called"


def test_status_transitions() -> None:
    h = Harness()

    async def run() -> None:
        await h.mux.start(TENANT)
        h.feed.update(
            "patient_queue",
            h.queue_row(status="in_consultation"),
            h.queue_row(status="called"),
        )
        h.feed.update(
            "patient_queue", h.queue_row(id="q2", status="no_show"), h.queue_row(id="q2")
        )
        h.feed.update(
            "patient_queue", h.queue_row(id="q3", status="completed"), h.queue_row(id="q3")
        )
        await h.mux.wait_idle()
        await h.mux.stop()

    asyncio.run(run())
    by_key = {t.key: t for t in h.sink.toasts}
    assert by_key["queue-consultation-q1"].variant is Severity.SUCCESS
    assert by_key["queue-noshow-q2"].message == "Patient absent"
    assert "queue-completed-q3" not in by_key
    assert len(h.sink.toasts) == 2


def test_enrichment_failure_degrades_to_generic_label() -> None:
    reader = FailingReader()
    h = Harness(reader)

    async def run() -> None:
        await h.mux.start(TENANT)
        h.feed.insert("patient_queue", h.queue_row())
        await h.mux.wait_idle()
        await h.mux.stop()

    asyncio.run(run())
    assert reader.reads == 1
    assert h.sink.toasts[0].message == "New patient waiting"
    assert h.sink.toasts[0].description == "New patient"


def test_missing_patient_row_uses_fallback() -> None:
    h = Harness(InMemoryRows())
    h.now = T0 + timedelta(minutes=90)

    async def run() -> None:
        await h.mux.start(TENANT)
        h.feed.update("patient_queue", h.queue_row(), h.queue_row())
        await h.mux.wait_idle()
        await h.mux.stop()

    asyncio.run(run())
    assert h.sink.toasts[0].description == "Patient waiting for 1h30"


def test_start_without_tenant_is_disabled() -> None:
    h = Harness()
    assert asyncio.run(h.mux.start(None)) is False
    assert h.feed.channel_count == 0
    assert h.mux.active is False


def test_start_without_user_is_disabled() -> None:
    h = Harness(user_id=None)
    assert asyncio.run(h.mux.start(TENANT)) is False
    assert h.feed.channel_count == 0


def test_opens_one_channel_per_table() -> None:
    h = Harness()

    async def run() -> list[str]:
        await h.mux.start(TENANT)
        names = h.feed.channel_names()
        await h.mux.stop()
        return names

    names = asyncio.run(run())
    assert sorted(names) == [
        "realtime-activity_logs",
        "realtime-appointments",
        "realtime-patient_queue",
        "realtime-practitioner_assistants",
        "realtime-tasks",
    ]
    assert h.feed.channel_count == 0


def test_other_tenant_rows_are_ignored() -> None:
    h = Harness()

    async def run() -> None:
        await h.mux.start(TENANT)
        h.feed.insert("patient_queue", h.queue_row(structure_id="other"))
        await h.mux.wait_idle()
        await h.mux.stop()

    asyncio.run(run())
    assert h.sink.toasts == []


def test_switch_tenant_releases_previous_subscriptions() -> None:
    h = Harness()

    async def run() -> None:
        await h.mux.start(TENANT)
        await h.mux.switch_tenant("s2")
        assert h.feed.channel_count == 5
        h.feed.insert("patient_queue", h.queue_row())
        h.feed.insert("patient_queue", h.queue_row(id="q9", structure_id="s2"))
        await h.mux.wait_idle()
        await h.mux.stop()

    asyncio.run(run())
    assert [t.key for t in h.sink.toasts] == ["queue-new-q9"]
    assert h.mux.tenant_id is None


def test_no_delivery_after_teardown() -> None:
    reader = GatedReader({"first_name": "Ada", "last_name": "Lovelace"})
    h = Harness(reader)

    async def run() -> None:
        await h.mux.start(TENANT)
        h.feed.insert("patient_queue", h.queue_row())
        await asyncio.sleep(0)
        assert reader.started == 1
        await h.mux.stop()
        reader.gate.set()
        await asyncio.sleep(0.01)
        assert h.feed.insert("patient_queue", h.queue_row(id="q2")) == 0

    asyncio.run(run())
    assert h.sink.toasts == []


def test_activity_own_and_unmapped_actions_are_dropped() -> None:
    h = Harness()

    def row(i: str, actor: str, action: str) -> dict:
        return {"id": i, "structure_id": TENANT, "actor_user_id": actor, "action": action}

    async def run() -> None:
        await h.mux.start(TENANT)
        h.feed.insert("activity_logs", row("a1", "u1", "PATIENT_CREATED"))
        h.feed.insert("activity_logs", row("a2", "u2", "SOMETHING_NEW"))
        h.feed.insert("activity_logs", row("a3", "u2", "PATIENT_ARCHIVED"))
        await h.mux.wait_idle()
        await h.mux.stop()

    asyncio.run(run())
    assert [(t.key, t.message) for t in h.sink.toasts] == [("activity-a3", "Patient archived")]


def test_delegation_changes() -> None:
    h = Harness()
    d = {"id": "d1", "structure_id": TENANT}

    async def run() -> None:
        await h.mux.start(TENANT)
        h.feed.insert("practitioner_assistants", d)
        h.feed.update("practitioner_assistants", d, d)
        h.feed.delete("practitioner_assistants", d)
        await h.mux.wait_idle()
        await h.mux.stop()

    asyncio.run(run())
    assert [t.key for t in h.sink.toasts] == [
        "delegation-new",
        "delegation-update",
        "delegation-delete",
    ]
    assert h.sink.toasts[2].message == "Delegation deleted"


def test_appointments_today_and_cancelled() -> None:
    h = Harness()

    def apt(i: str, start, status: str = "scheduled") -> dict:
        return {
            "id": i,
            "structure_id": TENANT,
            "patient_id": "p1",
            "start_time": start.isoformat(),
            "status": status,
        }

    async def run() -> None:
        await h.mux.start(TENANT)
        h.feed.insert("appointments", apt("a1", T0 + timedelta(hours=3)))
        h.feed.insert("appointments", apt("a2", T0 + timedelta(days=1)))
        h.feed.update("appointments", apt("a3", T0, "cancelled"), apt("a3", T0))
        h.feed.update("appointments", apt("a4", T0, "confirmed"), apt("a4", T0))
        await h.mux.wait_idle()
        await h.mux.stop()

    asyncio.run(run())
    by_key = {t.key: t for t in h.sink.toasts}
    assert set(by_key) == {"apt-new-a1", "apt-cancelled-a3"}
    assert by_key["apt-new-a1"].message == "New appointment today"
    assert by_key["apt-cancelled-a3"].description == "Ada Lovelace"
    assert by_key["apt-cancelled-a3"].variant is Severity.WARNING


def test_cancelled_appointment_without_old_row() -> None:
    h = Harness()
    row = {
        "id": "a9",
        "structure_id": TENANT,
        "patient_id": "p1",
        "start_time": T0.isoformat(),
        "status": "cancelled",
    }

    async def run() -> None:
        await h.mux.start(TENANT)
        h.feed.update("appointments", row, {})
        await h.mux.wait_idle()
        await h.mux.stop()

    asyncio.run(run())
    assert [(t.key, t.description) for t in h.sink.toasts] == [("apt-cancelled-a9", "Ada Lovelace")]


def test_urgent_tasks_only() -> None:
    h = Harness()

    def task(i: str, priority) -> dict:
        return {"id": i, "structure_id": TENANT, "priority": priority, "title": f"Task {i}"}

    async def run() -> None:
        await h.mux.start(TENANT)
        h.feed.insert("tasks", task("t1", 1))
        h.feed.insert("tasks", task("t2", 2))
        h.feed.insert("tasks", task("t3", 3))
        h.feed.insert("tasks", task("t4", None))
        await h.mux.wait_idle()
        await h.mux.stop()

    asyncio.run(run())
    assert [t.key for t in h.sink.toasts] == ["task-urgent-t1", "task-urgent-t2"]
    assert h.sink.toasts[0].variant is Severity.ERROR
    assert h.sink.toasts[0].description == "Task t1"


def test_urgent_task_escalates_with_default_context() -> None:
    ctx = NotificationContext(clock=FakeClock())
    assert EventKind.TASK not in ctx.escalate_kinds
    ctx.permission.state = PermissionState.GRANTED
    desktop = FakeDesktop(hidden=True)
    feed = LocalChangeFeed()
    throttle = NotificationThrottle(ctx, RecordingToastSink(), desktop=desktop)
    mux = SubscriptionMultiplexer(
        feed, InMemoryRows(), throttle, user_id="u1", rules=Rules(user_id="u1", now=lambda: T0)
    )

    async def run() -> None:
        await mux.start(TENANT)
        feed.insert("tasks", {"id": "t1", "structure_id": TENANT, "priority": 1, "title": "x"})
        await mux.wait_idle()
        await mux.stop()

    asyncio.run(run())
    assert [h.notification.title for h in desktop.handles] == ["New urgent task"]
    assert desktop.handles[0].closed is True
