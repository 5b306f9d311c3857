from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventKind(str, Enum):
    QUEUE = "queue"
    ALERT = "alert"
    APPOINTMENT = "appointment"
    TASK = "task"
    ACTIVITY = "activity"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ALL = "*"

    def matches(self, other: ChangeType) -> bool:
        return self is ChangeType.ALL or self is other


@dataclass(frozen=True, slots=True)
class ChangePayload:
    """One row-level change delivered by the change feed."""

    table: str
    event_type: ChangeType
    new: dict[str, Any] = field(default_factory=dict)
    old: dict[str, Any] = field(default_factory=dict)

    @property
    def row_id(self) -> str:
        row = self.new or self.old
        return str(row.get("id") or "")


@dataclass(frozen=True, slots=True)
class DomainEvent:
    key: str
    kind: EventKind
    message: str
    severity: Severity = Severity.INFO
    description: str | None = None
    occurred_at: float = field(default_factory=time.time)

