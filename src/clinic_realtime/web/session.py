from __future__ import annotations

import asyncio
import json
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from clinic_realtime.feed.interfaces import ChangeFeed, RowReader
from clinic_realtime.notify.base import DesktopNotification, Toast
from clinic_realtime.notify.outbox import Outbox
from clinic_realtime.notify.permission import PermissionState
from clinic_realtime.notify.throttle import NotificationContext, NotificationThrottle
from clinic_realtime.realtime.multiplexer import SubscriptionMultiplexer
from clinic_realtime.utils.log import logger

_MAX_BUFFERED = 500


class BrowserDesktopHandle:
    def __init__(self, channel: BrowserChannel, tag: str) -> None:
        self.channel = channel
        self.tag = tag
        self.closed = False
        self._click: Callable[[], None] | None = None

    def on_click(self, cb: Callable[[], None]) -> None:
        self._click = cb

    def click(self) -> None:
        if self._click is not None and not self.closed:
            self._click()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.channel._handles.pop(self.tag, None)
        self.channel.push("desktop_close", {"tag": self.tag})


class BrowserChannel:
    """
    Everything the notification stage needs from one connected browser tab,
    carried over a single server-sent event stream.

    Acts as toast sink, desktop surface and permission provider at once. The tab
    reports visibility and permission answers back through the POST endpoints.
    """

    def __init__(self, permission: PermissionState = PermissionState.DEFAULT) -> None:
        self.hidden = False
        self.permission = permission
        self._queue: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue(
            maxsize=_MAX_BUFFERED
        )
        self._handles: dict[str, BrowserDesktopHandle] = {}
        self._answer: asyncio.Future[PermissionState] | None = None

    def push(self, event: str, data: dict[str, Any]) -> None:
        try:
            self._queue.put_nowait((event, data))
        except asyncio.QueueFull:
            logger.warning("sse_buffer_full", sse_event=event)

    async def next_message(self, timeout: float) -> dict[str, str] | None:
        try:
            event, data = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        return {"event": event, "data": json.dumps(data)}

    # ToastSink
    def show_toast(self, toast: Toast) -> None:
        self.push("toast", toast.to_dict())

    # DesktopSurface
    def is_hidden(self) -> bool:
        return bool(self.hidden)

    def show(self, notification: DesktopNotification) -> BrowserDesktopHandle:
        handle = BrowserDesktopHandle(self, notification.tag)
        self._handles[notification.tag] = handle
        self.push("desktop", notification.to_dict())
        return handle

    def focus(self) -> None:
        self.push("focus", {})

    def click(self, tag: str) -> bool:
        handle = self._handles.get(tag)
        if handle is None:
            return False
        handle.click()
        return True

    # PermissionProvider
    def current(self) -> PermissionState:
        return self.permission

    async def request(self) -> PermissionState:
        answer: asyncio.Future[PermissionState] = asyncio.get_running_loop().create_future()
        self._answer = answer
        self.push("permission_request", {})
        try:
            return await answer
        finally:
            if self._answer is answer:
                self._answer = None

    def answer_permission(self, state: PermissionState) -> None:
        self.permission = state
        if self._answer is not None and not self._answer.done():
            self._answer.set_result(state)

    def close(self) -> None:
        for handle in list(self._handles.values()):
            handle.close()
        if self._answer is not None and not self._answer.done():
            self._answer.cancel()


class _ToastAdapter:
    def __init__(self, channel: BrowserChannel) -> None:
        self.channel = channel

    def show(self, toast: Toast) -> None:
        self.channel.show_toast(toast)


@dataclass(slots=True)
class LiveSession:
    id: str
    tenant_id: str
    user_id: str
    channel: BrowserChannel
    context: NotificationContext
    multiplexer: SubscriptionMultiplexer


class SessionRegistry:
    """Live notification sessions keyed by an opaque session id."""

    def __init__(
        self,
        feed: ChangeFeed,
        reader: RowReader,
        *,
        outbox: Outbox | None = None,
        context_factory: Callable[[], NotificationContext] | None = None,
    ) -> None:
        self.feed = feed
        self.reader = reader
        self.outbox = outbox
        self.context_factory = context_factory or NotificationContext.from_settings
        self._sessions: dict[str, LiveSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> LiveSession | None:
        return self._sessions.get(str(session_id))

    async def open(
        self,
        *,
        tenant_id: str,
        user_id: str,
        permission: PermissionState = PermissionState.DEFAULT,
    ) -> LiveSession:
        channel = BrowserChannel(permission)
        ctx = self.context_factory()
        throttle = NotificationThrottle(
            ctx, _ToastAdapter(channel), desktop=channel, forward=self.outbox
        )
        mux = SubscriptionMultiplexer(
            self.feed, self.reader, throttle, user_id=user_id, permission_provider=channel
        )
        session = LiveSession(
            id=secrets.token_urlsafe(16),
            tenant_id=str(tenant_id),
            user_id=str(user_id),
            channel=channel,
            context=ctx,
            multiplexer=mux,
        )
        await mux.start(tenant_id)
        self._sessions[session.id] = session
        logger.info("session_opened", session_id=session.id, tenant_id=session.tenant_id)
        return session

    async def close(self, session_id: str) -> None:
        session = self._sessions.pop(str(session_id), None)
        if session is None:
            return
        session.channel.close()
        await session.multiplexer.stop()
        logger.info("session_closed", session_id=session.id)

    async def close_all(self) -> None:
        for sid in list(self._sessions):
            try:
                await self.close(sid)
            except Exception as ex:
                logger.warning("session_close_failed", session_id=sid, error=str(ex))
