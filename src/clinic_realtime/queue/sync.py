from __future__ import annotations

import itertools
from typing import Any

from clinic_realtime.events.models import ChangePayload, ChangeType
from clinic_realtime.feed.interfaces import Channel, ChangeFeed, QueueReader
from clinic_realtime.realtime.interpret import QUEUE_TABLE
from clinic_realtime.realtime.scope import LivenessScope
from clinic_realtime.utils.log import logger

from .reorder import ReorderCoordinator

_seq = itertools.count(1)


class QueueSync:
    """
    Keeps a `ReorderCoordinator` in line with the server copy of the queue.

    Every change to the tenant's queue rows (any event type) triggers a reload.
    Reloads may overlap; only the one started last is applied, and nothing is
    applied once `stop()` has run.
    """

    def __init__(
        self, feed: ChangeFeed, reader: QueueReader, coordinator: ReorderCoordinator[Any]
    ) -> None:
        self.feed = feed
        self.reader = reader
        self.coordinator = coordinator
        self.reloads = 0
        self._channel: Channel | None = None
        self._scope: LivenessScope | None = None
        self._generation = 0

    @property
    def tenant_id(self) -> str:
        return self.coordinator.tenant_id

    @property
    def active(self) -> bool:
        return self._channel is not None

    async def start(self) -> None:
        await self.stop()
        scope = LivenessScope(f"queue-sync.{self.tenant_id}.{next(_seq)}")
        self._scope = scope
        self._channel = await self.feed.subscribe(
            name=f"queue-refresh-{self.tenant_id}",
            table=QUEUE_TABLE,
            tenant_id=self.tenant_id,
            events=(ChangeType.ALL,),
            handler=self._on_change,
        )
        logger.info("queue_sync_started", tenant_id=self.tenant_id)

    async def stop(self) -> None:
        channel, self._channel = self._channel, None
        scope, self._scope = self._scope, None
        if scope is not None:
            await scope.close()
        if channel is not None:
            try:
                await channel.unsubscribe()
            except Exception as ex:
                logger.warning("channel_unsubscribe_failed", channel=channel.name, error=str(ex))
            logger.info("queue_sync_stopped", tenant_id=self.tenant_id)

    async def refresh(self) -> bool:
        """Reload now. Returns True when the fetched list was applied."""
        scope = self._scope
        if scope is None or not scope.alive:
            return False
        self._generation += 1
        return await self._reload(scope, self._generation)

    async def wait_idle(self) -> None:
        if self._scope is not None:
            await self._scope.join()

    def _on_change(self, payload: ChangePayload) -> None:
        scope = self._scope
        if scope is None or not scope.alive:
            return
        self._generation += 1
        logger.debug(
            "queue_changed", event_type=payload.event_type.value, row_id=payload.row_id
        )
        scope.spawn(self._reload(scope, self._generation), name="reload")

    async def _reload(self, scope: LivenessScope, generation: int) -> bool:
        self.reloads += 1
        try:
            rows = await self.reader.fetch_queue(self.tenant_id)
        except Exception as ex:
            logger.warning("queue_refresh_failed", tenant_id=self.tenant_id, error=str(ex)[:200])
            return False
        if not scope.alive or generation != self._generation:
            return False
        self.coordinator.replace(list(rows))
        return True
