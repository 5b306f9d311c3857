from __future__ import annotations

import asyncio
import itertools
from typing import Any

from clinic_realtime.events.models import ChangePayload, DomainEvent
from clinic_realtime.feed.interfaces import Channel, ChangeFeed, RowReader
from clinic_realtime.notify.permission import PermissionProvider
from clinic_realtime.notify.throttle import NotificationThrottle
from clinic_realtime.ops import metrics
from clinic_realtime.utils.log import logger

from .interpret import ROUTES, PatientNames, Rules, interpret
from .scope import LivenessScope

_seq = itertools.count(1)


class SubscriptionMultiplexer:
    """
    One live subscription per watched table for the current tenant.

    Raw payloads become domain events (see `interpret`) and are handed to the
    throttle stage. Every payload is processed in its own task inside a
    `LivenessScope`, so a slow enrichment read never blocks the feed and never
    reaches the sink after teardown.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        reader: RowReader,
        throttle: NotificationThrottle,
        *,
        user_id: str | None,
        rules: Rules | None = None,
        permission_provider: PermissionProvider | None = None,
    ) -> None:
        self.feed = feed
        self.names = PatientNames(reader)
        self.throttle = throttle
        self.user_id = str(user_id) if user_id else None
        self.rules = rules
        self.permission_provider = permission_provider
        self.tenant_id: str | None = None
        self._channels: list[Channel] = []
        self._scope: LivenessScope | None = None
        self._lock = asyncio.Lock()

    @property
    def active(self) -> bool:
        return bool(self._channels)

    @property
    def channel_names(self) -> list[str]:
        return [c.name for c in self._channels]

    async def __aenter__(self) -> SubscriptionMultiplexer:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    async def start(self, tenant_id: str | None) -> bool:
        """
        Open every subscription for `tenant_id`. Returns False when disabled
        (no tenant or no authenticated user).
        """
        async with self._lock:
            await self._teardown()
            if not tenant_id or not self.user_id:
                logger.info(
                    "realtime_disabled", has_tenant=bool(tenant_id), has_user=bool(self.user_id)
                )
                return False

            tenant_id = str(tenant_id)
            rules = self.rules or Rules.from_settings(self.user_id)
            scope = LivenessScope(f"realtime.{tenant_id}.{next(_seq)}")
            self.throttle.tenant_id = tenant_id

            opened: list[Channel] = []
            try:
                for table, (events, _) in ROUTES.items():
                    ch = await self.feed.subscribe(
                        name=f"realtime-{table}",
                        table=table,
                        tenant_id=tenant_id,
                        events=events,
                        handler=self._handler(scope, rules),
                    )
                    opened.append(ch)
            except Exception:
                await self._release(opened)
                await scope.close()
                raise

            self.tenant_id = tenant_id
            self._channels = opened
            self._scope = scope
            metrics.live_sessions.inc()
            logger.info("realtime_started", tenant_id=tenant_id, channels=len(opened))

        # Outside the lock: a permission prompt may wait on the user.
        if scope.alive:
            scope.spawn(self.throttle.activate(self.permission_provider), name="permission")
        return True

    async def stop(self) -> None:
        async with self._lock:
            await self._teardown()

    async def switch_tenant(self, tenant_id: str | None) -> bool:
        return await self.start(tenant_id)

    def request_permission(self) -> bool:
        """
        Ask for desktop permission again, in the background. Only prompts while
        the session state is still `default`; returns False when not running.
        """
        scope = self._scope
        if scope is None or not scope.alive or self.permission_provider is None:
            return False
        scope.spawn(
            self.throttle.ctx.permission.request_permission(self.permission_provider),
            name="permission-request",
        )
        return True

    async def wait_idle(self) -> None:
        """Wait until every payload received so far has been fully processed."""
        if self._scope is not None:
            await self._scope.join()

    def _handler(self, scope: LivenessScope, rules: Rules):
        def on_change(payload: ChangePayload) -> None:
            if not scope.alive:
                return
            metrics.change_events.labels(
                table=payload.table, event_type=payload.event_type.value
            ).inc()
            scope.spawn(
                self._dispatch(scope, rules, payload),
                name=f"{payload.table}.{payload.event_type.value.lower()}",
            )

        return on_change

    async def _dispatch(self, scope: LivenessScope, rules: Rules, payload: ChangePayload) -> None:
        events = await interpret(payload, rules, self.names)
        if not scope.alive:
            return
        for ev in events:
            self._publish(ev)

    def _publish(self, ev: DomainEvent) -> None:
        try:
            self.throttle.publish(ev)
        except Exception as ex:
            logger.warning("notification_sink_failed", key=ev.key, error=str(ex)[:200])

    async def _teardown(self) -> None:
        # Detach first so no caller ever observes a half-released set.
        channels, self._channels = self._channels, []
        scope, self._scope = self._scope, None
        tenant_id, self.tenant_id = self.tenant_id, None
        if scope is not None:
            await scope.close()
        if channels:
            await self._release(channels)
            metrics.live_sessions.dec()
            logger.info("realtime_stopped", tenant_id=tenant_id, channels=len(channels))
        self.throttle.close_pending()

    async def _release(self, channels: list[Channel]) -> None:
        results = await asyncio.gather(
            *(c.unsubscribe() for c in channels), return_exceptions=True
        )
        for ch, res in zip(channels, results):
            if isinstance(res, BaseException):
                logger.warning("channel_unsubscribe_failed", channel=ch.name, error=str(res))
