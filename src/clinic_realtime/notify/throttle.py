from __future__ import annotations

import asyncio
import itertools
import time
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from clinic_realtime.config import get_settings
from clinic_realtime.events.models import DomainEvent, EventKind, Severity
from clinic_realtime.ops import metrics
from clinic_realtime.utils.log import logger

from .base import (
    DesktopHandle,
    DesktopNotification,
    DesktopSurface,
    NotificationIntent,
    Toast,
    ToastSink,
)
from .permission import PermissionCache, PermissionProvider

if TYPE_CHECKING:
    from .outbox import Outbox

_tag_seq = itertools.count(1)


@dataclass(slots=True)
class NotificationContext:
    """
    Per-session notification state.

    Owned by whoever owns the subscription lifecycle and passed explicitly to the
    throttle stage. Holds the key -> last-shown map and the permission cache.
    """

    throttle_ms: int = 2000
    escalate_kinds: frozenset[EventKind] = frozenset({EventKind.QUEUE, EventKind.ALERT})
    desktop_enabled: bool = True
    toast_duration_ms: int = 4000
    toast_position: str = "bottom-right"
    desktop_auto_close_ms: int = 5000
    desktop_icon: str = "/favicon.ico"
    clock: Callable[[], float] = time.monotonic
    last_shown: dict[str, float] = field(default_factory=dict)
    permission: PermissionCache = field(default_factory=PermissionCache)

    @classmethod
    def from_settings(cls, **overrides) -> NotificationContext:
        s = get_settings()
        kinds: list[EventKind] = []
        for k in s.escalate_kind_list():
            with suppress(ValueError):
                kinds.append(EventKind(k))
        values = {
            "throttle_ms": int(s.notify_throttle_ms),
            "escalate_kinds": frozenset(kinds),
            "desktop_enabled": bool(s.desktop_notifications_enabled),
            "toast_duration_ms": int(s.notify_toast_duration_ms),
            "toast_position": str(s.notify_toast_position),
            "desktop_auto_close_ms": int(s.desktop_auto_close_ms),
            "desktop_icon": str(s.desktop_icon),
        }
        values.update(overrides)
        return cls(**values)

    def should_show(self, key: str) -> bool:
        """Gate + record: True means the caller must surface the notification now."""
        now = self.clock()
        last = self.last_shown.get(key)
        if last is not None and (now - last) * 1000.0 < float(self.throttle_ms):
            return False
        self.last_shown[key] = now
        return True


class NotificationThrottle:
    """
    Throttle/dedup stage between domain events and the presentation sinks.

    Bursts on the same key inside the cool-down window are coalesced silently:
    the first one wins and nothing is replayed later.
    """

    def __init__(
        self,
        ctx: NotificationContext,
        toasts: ToastSink,
        *,
        desktop: DesktopSurface | None = None,
        forward: Outbox | None = None,
        tenant_id: str | None = None,
    ) -> None:
        self.ctx = ctx
        self.toasts = toasts
        self.desktop = desktop
        self.forward = forward
        self.tenant_id = tenant_id
        self._pending: list[tuple[asyncio.TimerHandle, DesktopHandle]] = []

    async def activate(self, provider: PermissionProvider | None) -> None:
        if self.ctx.desktop_enabled and self.desktop is not None:
            await self.ctx.permission.activate(provider)

    def publish(self, event: DomainEvent) -> bool:
        return self.show(
            event.key,
            event.message,
            kind=event.kind,
            severity=event.severity,
            description=event.description,
        )

    def show(
        self,
        key: str,
        message: str,
        *,
        kind: EventKind = EventKind.ACTIVITY,
        severity: Severity = Severity.INFO,
        description: str | None = None,
    ) -> bool:
        if not self.ctx.should_show(key):
            metrics.notifications_dropped.labels(kind=kind.value).inc()
            logger.debug("notification_coalesced", key=key, kind=kind.value)
            return False

        self.toasts.show(
            Toast(
                message=message,
                variant=severity,
                description=description,
                duration_ms=self.ctx.toast_duration_ms,
                position=self.ctx.toast_position,
                key=key,
            )
        )
        metrics.notifications_shown.labels(kind=kind.value).inc()

        if kind in self.ctx.escalate_kinds:
            if self.escalate(message, description or ""):
                self._forward(key, kind, message, description)
        return True

    def escalate(self, title: str, body: str) -> bool:
        """
        Raise a desktop notification when permitted and the app window is hidden.
        """
        if not self.ctx.desktop_enabled or self.desktop is None:
            return False
        if not self.ctx.permission.granted:
            metrics.desktop_notifications.labels(outcome="no_permission").inc()
            return False
        try:
            hidden = bool(self.desktop.is_hidden())
        except Exception as ex:
            logger.warning("desktop_visibility_failed", error=str(ex))
            return False
        if not hidden:
            metrics.desktop_notifications.labels(outcome="visible").inc()
            return False

        n = DesktopNotification(
            title=title,
            body=body,
            icon=self.ctx.desktop_icon,
            tag=f"notification-{int(time.time() * 1000)}-{next(_tag_seq)}",
        )
        try:
            handle = self.desktop.show(n)
        except Exception as ex:
            metrics.desktop_notifications.labels(outcome="error").inc()
            logger.warning("desktop_notification_failed", error=str(ex))
            return False

        def _clicked() -> None:
            with suppress(Exception):
                self.desktop.focus()  # type: ignore[union-attr]
            with suppress(Exception):
                handle.close()

        handle.on_click(_clicked)
        self._schedule_close(handle)
        metrics.desktop_notifications.labels(outcome="shown").inc()
        return True

    def _schedule_close(self, handle: DesktopHandle) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller): the surface keeps its own default lifetime.
            return
        delay = max(0.0, float(self.ctx.desktop_auto_close_ms) / 1000.0)
        now = loop.time()
        self._pending = [(t, h) for t, h in self._pending if not t.cancelled() and t.when() > now]
        self._pending.append((loop.call_later(delay, handle.close), handle))

    def _forward(self, key: str, kind: EventKind, message: str, description: str | None) -> None:
        if self.forward is None:
            return
        self.forward.enqueue(
            NotificationIntent(
                event=f"{kind.value}.escalated",
                title=message,
                message=description or message,
                tenant_id=self.tenant_id,
                tags=[kind.value],
                priority=4 if kind is EventKind.ALERT else 3,
                metadata={"key": key},
            )
        )

    def close_pending(self) -> None:
        """Close desktop notifications still waiting for their auto-close timer."""
        for timer, handle in self._pending:
            timer.cancel()
            with suppress(Exception):
                handle.close()
        self._pending.clear()

