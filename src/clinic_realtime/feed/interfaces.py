from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any, Protocol

from clinic_realtime.events.models import ChangePayload, ChangeType

ChangeHandler = Callable[[ChangePayload], None]

TENANT_COLUMN = "structure_id"


class Channel(Protocol):
    name: str

    async def unsubscribe(self) -> None: ...


class ChangeFeed(Protocol):
    """
    Row-level change stream of the backing database.

    Handlers are called synchronously in delivery order; implementations own
    reconnects and backoff.
    """

    async def subscribe(
        self,
        *,
        name: str,
        table: str,
        tenant_id: str,
        events: Sequence[ChangeType],
        handler: ChangeHandler,
    ) -> Channel: ...


class RowReader(Protocol):
    """Point lookups by id. Zero rows is `None`, not an error."""

    async def fetch_one(
        self, table: str, row_id: str, columns: Sequence[str] | None = None
    ) -> dict[str, Any] | None: ...


class QueueOrderStore(Protocol):
    """Atomically replaces the tenant's queue ordering with `ordered_ids`."""

    async def update_queue_order(self, tenant_id: str, ordered_ids: list[str]) -> None: ...


class QueueReader(Protocol):
    """The tenant's waiting-room queue in display order."""

    async def fetch_queue(self, tenant_id: str) -> list[dict[str, Any]]: ...
