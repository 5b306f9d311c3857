from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from clinic_realtime.events.models import Severity


@dataclass(frozen=True, slots=True)
class Toast:
    message: str
    variant: Severity = Severity.INFO
    description: str | None = None
    duration_ms: int = 4000
    position: str = "bottom-right"
    key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "message": self.message,
            "description": self.description,
            "variant": self.variant.value,
            "duration_ms": int(self.duration_ms),
            "position": self.position,
        }


@dataclass(frozen=True, slots=True)
class DesktopNotification:
    title: str
    body: str
    icon: str
    tag: str

    def to_dict(self) -> dict[str, Any]:
        return {"title": self.title, "body": self.body, "icon": self.icon, "tag": self.tag}


@dataclass(frozen=True, slots=True)
class NotificationIntent:
    """Out-of-band delivery request drained by the outbox worker."""

    event: str
    title: str
    message: str
    tenant_id: str | None = None
    tags: Sequence[str] | None = None
    priority: int | None = None  # 1..5 (ntfy convention)
    metadata: dict[str, Any] = field(default_factory=dict)


class ToastSink(Protocol):
    def show(self, toast: Toast) -> None: ...


class DesktopHandle(Protocol):
    def close(self) -> None: ...

    def on_click(self, cb: Callable[[], None]) -> None: ...


class DesktopSurface(Protocol):
    """OS-level notification surface plus the visibility of the application window."""

    def is_hidden(self) -> bool: ...

    def show(self, notification: DesktopNotification) -> DesktopHandle: ...

    def focus(self) -> None: ...


class IntentSender(Protocol):
    async def deliver(self, intent: NotificationIntent) -> None: ...


class RecordingToastSink:
    """Keeps every toast in memory; handy for CLIs and tests."""

    def __init__(self) -> None:
        self.toasts: list[Toast] = []

    def show(self, toast: Toast) -> None:
        self.toasts.append(toast)

    @property
    def messages(self) -> list[str]:
        return [t.message for t in self.toasts]
