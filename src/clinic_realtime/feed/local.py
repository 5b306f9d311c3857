from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from clinic_realtime.events.models import ChangePayload, ChangeType
from clinic_realtime.utils.log import logger

from .interfaces import TENANT_COLUMN, ChangeHandler


@dataclass(slots=True)
class LocalChannel:
    name: str
    table: str
    tenant_id: str
    events: tuple[ChangeType, ...]
    handler: ChangeHandler
    feed: LocalChangeFeed | None = field(default=None, repr=False)

    def accepts(self, payload: ChangePayload) -> bool:
        if payload.table != self.table:
            return False
        if not any(e.matches(payload.event_type) for e in self.events):
            return False
        row = payload.new or payload.old
        return str(row.get(TENANT_COLUMN) or "") == self.tenant_id

    async def unsubscribe(self) -> None:
        if self.feed is not None:
            self.feed._remove(self)
            self.feed = None


class LocalChangeFeed:
    """
    In-process change feed.

    Used for development and tests; the production feed is the managed database's
    realtime service. Delivery is synchronous and in publish order.
    """

    def __init__(self) -> None:
        self._channels: list[LocalChannel] = []

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    def channel_names(self) -> list[str]:
        return [c.name for c in self._channels]

    async def subscribe(
        self,
        *,
        name: str,
        table: str,
        tenant_id: str,
        events: Sequence[ChangeType],
        handler: ChangeHandler,
    ) -> LocalChannel:
        ch = LocalChannel(
            name=str(name),
            table=str(table),
            tenant_id=str(tenant_id),
            events=tuple(events),
            handler=handler,
            feed=self,
        )
        self._channels.append(ch)
        logger.debug("feed_subscribed", channel=ch.name, table=ch.table)
        return ch

    def _remove(self, ch: LocalChannel) -> None:
        if ch in self._channels:
            self._channels.remove(ch)
            logger.debug("feed_unsubscribed", channel=ch.name, table=ch.table)

    def publish(self, payload: ChangePayload) -> int:
        """
        Deliver `payload` to every matching channel. Returns the delivery count.
        """
        delivered = 0
        for ch in list(self._channels):
            if not ch.accepts(payload):
                continue
            ch.handler(payload)
            delivered += 1
        return delivered

    def insert(self, table: str, row: dict[str, Any]) -> int:
        return self.publish(ChangePayload(table=table, event_type=ChangeType.INSERT, new=dict(row)))

    def update(self, table: str, new: dict[str, Any], old: dict[str, Any]) -> int:
        return self.publish(
            ChangePayload(table=table, event_type=ChangeType.UPDATE, new=dict(new), old=dict(old))
        )

    def delete(self, table: str, old: dict[str, Any]) -> int:
        return self.publish(ChangePayload(table=table, event_type=ChangeType.DELETE, old=dict(old)))


class InMemoryRows:
    """Dict-backed `RowReader` and `QueueReader`: {table: {row_id: row}}."""

    def __init__(self, tables: dict[str, dict[str, dict[str, Any]]] | None = None) -> None:
        self._tables: dict[str, dict[str, dict[str, Any]]] = {
            t: dict(rows) for t, rows in (tables or {}).items()
        }
        self.reads = 0

    def put(self, table: str, row: dict[str, Any]) -> None:
        self._tables.setdefault(table, {})[str(row["id"])] = dict(row)

    async def fetch_one(
        self, table: str, row_id: str, columns: Sequence[str] | None = None
    ) -> dict[str, Any] | None:
        self.reads += 1
        row = self._tables.get(table, {}).get(str(row_id))
        if row is None:
            return None
        if columns:
            return {c: row.get(c) for c in columns}
        return dict(row)

    async def fetch_queue(self, tenant_id: str) -> list[dict[str, Any]]:
        """Queue rows for `tenant_id`, ordered by position, then priority and arrival."""
        self.reads += 1
        rows = [
            dict(r)
            for r in self._tables.get("patient_queue", {}).values()
            if str(r.get(TENANT_COLUMN) or "") == str(tenant_id)
        ]
        rows.sort(
            key=lambda r: (
                int(r.get("position") or 0),
                int(r.get("priority") or 3),
                str(r.get("arrival_time") or ""),
            )
        )
        return rows


class InMemoryQueueOrderStore:
    """
    Dict-backed `QueueOrderStore` with an optional artificial delay and failure switch.
    """

    def __init__(self, *, delay_s: float = 0.0) -> None:
        self.orders: dict[str, list[str]] = {}
        self.calls: list[tuple[str, list[str]]] = []
        self.delay_s = float(delay_s)
        self.fail_with: BaseException | None = None

    async def update_queue_order(self, tenant_id: str, ordered_ids: list[str]) -> None:
        self.calls.append((str(tenant_id), list(ordered_ids)))
        if self.delay_s > 0:
            await asyncio.sleep(self.delay_s)
        if self.fail_with is not None:
            raise self.fail_with
        self.orders[str(tenant_id)] = list(ordered_ids)
