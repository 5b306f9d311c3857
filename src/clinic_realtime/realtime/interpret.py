"""
Table-specific interpretation of change-feed payloads into domain events.

Each interpreter takes one payload and returns zero or more `DomainEvent`s.
Enrichment reads (patient names) are best-effort: a missing row or a failing
reader degrades to a generic label and never blocks the event.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from zoneinfo import ZoneInfo

from clinic_realtime.config import get_settings
from clinic_realtime.events.labels import (
    CANCELLED_FALLBACK,
    DELEGATION_MESSAGES,
    NEW_PATIENT_FALLBACK,
    PATIENT_FALLBACK,
    QUEUE_TRANSITIONS,
    ActivityAction,
    QueueStatus,
)
from clinic_realtime.events.models import (
    ChangePayload,
    ChangeType,
    DomainEvent,
    EventKind,
    Severity,
)
from clinic_realtime.feed.interfaces import RowReader
from clinic_realtime.ops import metrics
from clinic_realtime.queue.waiting import format_wait, parse_ts, wait_minutes
from clinic_realtime.utils.log import logger

QUEUE_TABLE = "patient_queue"
APPOINTMENTS_TABLE = "appointments"
TASKS_TABLE = "tasks"
ACTIVITY_TABLE = "activity_logs"
DELEGATIONS_TABLE = "practitioner_assistants"
PATIENTS_TABLE = "patients"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class Rules:
    user_id: str
    long_wait_minutes: int = 30
    urgent_task_priority_max: int = 2
    tz: tzinfo = timezone.utc
    now: Callable[[], datetime] = field(default=_utcnow)

    @classmethod
    def from_settings(cls, user_id: str, **overrides) -> Rules:
        s = get_settings()
        values = {
            "long_wait_minutes": int(s.long_wait_minutes),
            "urgent_task_priority_max": int(s.urgent_task_priority_max),
            "tz": ZoneInfo(str(s.clinic_timezone)),
        }
        values.update(overrides)
        return cls(user_id=str(user_id), **values)


class PatientNames:
    """Best-effort patient display-name lookup. Never raises, never retries."""

    def __init__(self, reader: RowReader) -> None:
        self.reader = reader

    async def display_name(self, patient_id: object, fallback: str) -> str:
        pid = str(patient_id or "").strip()
        if not pid:
            return fallback
        try:
            row = await self.reader.fetch_one(PATIENTS_TABLE, pid, ("first_name", "last_name"))
        except Exception as ex:
            metrics.enrichment_failures.labels(table=PATIENTS_TABLE).inc()
            logger.warning("patient_lookup_failed", patient_id=pid, error=str(ex)[:200])
            return fallback
        if not row:
            metrics.enrichment_failures.labels(table=PATIENTS_TABLE).inc()
            logger.info("patient_lookup_empty", patient_id=pid)
            return fallback
        name = f"{row.get('first_name') or ''} {row.get('last_name') or ''}".strip()
        return name or fallback


class _LazyName:
    """One lookup per payload, shared by every event the payload produces."""

    def __init__(self, names: PatientNames, patient_id: object, fallback: str) -> None:
        self._names = names
        self._pid = patient_id
        self._fallback = fallback
        self._value: str | None = None

    async def get(self) -> str:
        if self._value is None:
            self._value = await self._names.display_name(self._pid, self._fallback)
        return self._value


async def queue_insert(p: ChangePayload, rules: Rules, names: PatientNames) -> list[DomainEvent]:
    row = p.new
    if not row:
        return []
    name = await names.display_name(row.get("patient_id"), NEW_PATIENT_FALLBACK)
    return [
        DomainEvent(
            key=f"queue-new-{row.get('id')}",
            kind=EventKind.QUEUE,
            message="New patient waiting",
            severity=Severity.INFO,
            description=name,
        )
    ]


async def queue_update(p: ChangePayload, rules: Rules, names: PatientNames) -> list[DomainEvent]:
    new, old = p.new, p.old
    if not new:
        return []
    row_id = new.get("id")
    name = _LazyName(names, new.get("patient_id"), PATIENT_FALLBACK)
    out: list[DomainEvent] = []

    new_status = new.get("status")
    if new_status != old.get("status"):
        try:
            transition = QUEUE_TRANSITIONS.get(QueueStatus(str(new_status)))
        except ValueError:
            transition = None
        if transition is not None:
            prefix, message, severity = transition
            out.append(
                DomainEvent(
                    key=f"{prefix}-{row_id}",
                    kind=EventKind.QUEUE,
                    message=message,
                    severity=severity,
                    description=await name.get(),
                )
            )

    # Re-checked on every update row; repeated alerts are coalesced by the throttle key.
    waited = wait_minutes(new.get("arrival_time"), rules.now())
    if (
        waited is not None
        and waited >= int(rules.long_wait_minutes)
        and new_status == QueueStatus.WAITING.value
    ):
        out.append(
            DomainEvent(
                key=f"queue-longwait-{row_id}",
                kind=EventKind.ALERT,
                message="Extended wait",
                severity=Severity.WARNING,
                description=f"{await name.get()} waiting for {format_wait(waited)}",
            )
        )
    return out


async def appointment_update(
    p: ChangePayload, rules: Rules, names: PatientNames
) -> list[DomainEvent]:
    new, old = p.new, p.old
    # `old` is empty when the feed only replicates primary keys.
    if not new or new.get("status") == old.get("status"):
        return []
    if new.get("status") != "cancelled":
        return []
    name = await names.display_name(new.get("patient_id"), CANCELLED_FALLBACK)
    return [
        DomainEvent(
            key=f"apt-cancelled-{new.get('id')}",
            kind=EventKind.APPOINTMENT,
            message="Appointment cancelled",
            severity=Severity.WARNING,
            description=name,
        )
    ]


async def appointment_insert(
    p: ChangePayload, rules: Rules, names: PatientNames
) -> list[DomainEvent]:
    row = p.new
    start = parse_ts(row.get("start_time")) if row else None
    if start is None:
        return []
    today = rules.now().astimezone(rules.tz).date()
    if start.astimezone(rules.tz).date() != today:
        return []
    name = await names.display_name(row.get("patient_id"), "")
    return [
        DomainEvent(
            key=f"apt-new-{row.get('id')}",
            kind=EventKind.APPOINTMENT,
            message="New appointment today",
            severity=Severity.INFO,
            description=name or None,
        )
    ]


async def task_insert(p: ChangePayload, rules: Rules, names: PatientNames) -> list[DomainEvent]:
    row = p.new
    if not row:
        return []
    try:
        priority = int(row.get("priority"))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return []
    if priority > int(rules.urgent_task_priority_max):
        return []
    return [
        DomainEvent(
            key=f"task-urgent-{row.get('id')}",
            kind=EventKind.ALERT,
            message="New urgent task",
            severity=Severity.ERROR,
            description=str(row.get("title") or "") or None,
        )
    ]


async def activity_insert(
    p: ChangePayload, rules: Rules, names: PatientNames
) -> list[DomainEvent]:
    row = p.new
    if not row or str(row.get("actor_user_id") or "") == rules.user_id:
        return []
    action = ActivityAction.parse(row.get("action"))
    if action is ActivityAction.UNKNOWN:
        logger.debug("activity_action_unmapped", action=str(row.get("action") or "")[:64])
        return []
    return [
        DomainEvent(
            key=f"activity-{row.get('id')}",
            kind=EventKind.ACTIVITY,
            message=action.label or action.value,
            severity=Severity.INFO,
        )
    ]


async def delegation_change(
    p: ChangePayload, rules: Rules, names: PatientNames
) -> list[DomainEvent]:
    entry = DELEGATION_MESSAGES.get(p.event_type)
    if entry is None:
        return []
    key, message = entry
    return [DomainEvent(key=key, kind=EventKind.ACTIVITY, message=message, severity=Severity.INFO)]


Interpreter = Callable[[ChangePayload, Rules, PatientNames], Awaitable[list[DomainEvent]]]

# table -> (subscribed event types, {event type: interpreter})
ROUTES: dict[str, tuple[tuple[ChangeType, ...], dict[ChangeType, Interpreter]]] = {
    QUEUE_TABLE: (
        (ChangeType.INSERT, ChangeType.UPDATE),
        {ChangeType.INSERT: queue_insert, ChangeType.UPDATE: queue_update},
    ),
    APPOINTMENTS_TABLE: (
        (ChangeType.INSERT, ChangeType.UPDATE),
        {ChangeType.INSERT: appointment_insert, ChangeType.UPDATE: appointment_update},
    ),
    TASKS_TABLE: ((ChangeType.INSERT,), {ChangeType.INSERT: task_insert}),
    ACTIVITY_TABLE: ((ChangeType.INSERT,), {ChangeType.INSERT: activity_insert}),
    DELEGATIONS_TABLE: (
        (ChangeType.ALL,),
        {
            ChangeType.INSERT: delegation_change,
            ChangeType.UPDATE: delegation_change,
            ChangeType.DELETE: delegation_change,
        },
    ),
}


async def interpret(p: ChangePayload, rules: Rules, names: PatientNames) -> list[DomainEvent]:
    route = ROUTES.get(p.table)
    if route is None:
        return []
    fn = route[1].get(p.event_type)
    if fn is None:
        return []
    return await fn(p, rules, names)
