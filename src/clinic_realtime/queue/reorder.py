from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from clinic_realtime.config import get_settings
from clinic_realtime.events.models import Severity
from clinic_realtime.feed.interfaces import QueueOrderStore
from clinic_realtime.notify.base import NotificationIntent, Toast, ToastSink
from clinic_realtime.notify.outbox import Outbox
from clinic_realtime.ops import metrics
from clinic_realtime.realtime.scope import LivenessScope
from clinic_realtime.utils.log import logger

T = TypeVar("T")


class ReorderState(str, Enum):
    IDLE = "idle"
    OPTIMISTIC = "optimistic"
    PERSISTING = "persisting"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"
    NOOP = "noop"


@dataclass(frozen=True, slots=True)
class ReorderOutcome:
    state: ReorderState
    ordered_ids: list[str]
    error: str | None = None

    @property
    def applied(self) -> bool:
        return self.state is ReorderState.CONFIRMED


def item_id(item: Any) -> str:
    if isinstance(item, dict):
        return str(item.get("id") or "")
    return str(getattr(item, "id", "") or "")


def move_item(items: Sequence[T], old_index: int, new_index: int) -> list[T]:
    """Remove at `old_index`, insert at `new_index`; returns a new list."""
    out = list(items)
    out.insert(new_index, out.pop(old_index))
    return out


def index_of(items: Sequence[Any], wanted: str, id_of: Callable[[Any], str] = item_id) -> int:
    for i, it in enumerate(items):
        if id_of(it) == wanted:
            return i
    return -1


class ReorderCoordinator(Generic[T]):
    """
    Optimistic drag-reorder of the waiting-room queue.

    The moved list is applied locally before any await; the full id list is then
    persisted. On failure the exact pre-drag list object is restored. Drags are
    never blocked while saving; concurrent persists resolve last-write-wins at
    the server.
    """

    def __init__(
        self,
        items: list[T],
        *,
        tenant_id: str,
        store: QueueOrderStore,
        toasts: ToastSink,
        on_change: Callable[[list[T]], None] | None = None,
        scope: LivenessScope | None = None,
        outbox: Outbox | None = None,
        id_of: Callable[[Any], str] = item_id,
        confirm_duration_ms: int | None = None,
    ) -> None:
        self._items = items
        self.tenant_id = str(tenant_id)
        self.store = store
        self.toasts = toasts
        self.on_change = on_change
        self.scope = scope
        self.outbox = outbox
        self.id_of = id_of
        if confirm_duration_ms is None:
            confirm_duration_ms = int(get_settings().reorder_confirm_duration_ms)
        self.confirm_duration_ms = int(confirm_duration_ms)
        self.state = ReorderState.IDLE
        self._inflight = 0

    @property
    def items(self) -> list[T]:
        return self._items

    @property
    def saving(self) -> bool:
        return self._inflight > 0

    def replace(self, items: list[T]) -> None:
        """Adopt a server-fetched list (e.g. after a queue refresh)."""
        self._set(items)

    def _alive(self) -> bool:
        return self.scope is None or self.scope.alive

    def _set(self, items: list[T]) -> None:
        self._items = items
        if self.on_change is not None:
            self.on_change(items)

    async def handle_drop(self, source_id: str | None, target_id: str | None) -> ReorderOutcome:
        current = self._items
        ids = [self.id_of(e) for e in current]
        if not source_id or not target_id or source_id == target_id:
            return ReorderOutcome(state=ReorderState.NOOP, ordered_ids=ids)
        old_index = index_of(current, str(source_id), self.id_of)
        new_index = index_of(current, str(target_id), self.id_of)
        if old_index == -1 or new_index == -1:
            return ReorderOutcome(state=ReorderState.NOOP, ordered_ids=ids)

        previous = current
        moved = move_item(current, old_index, new_index)
        ordered_ids = [self.id_of(e) for e in moved]

        self.state = ReorderState.OPTIMISTIC
        self._set(moved)

        self.state = ReorderState.PERSISTING
        self._inflight += 1
        error: Exception | None = None
        try:
            await self.store.update_queue_order(self.tenant_id, ordered_ids)
        except Exception as ex:
            error = ex
        finally:
            self._inflight -= 1
        # `saving` already reflects this persist when feedback runs.
        if error is not None:
            return self._rolled_back(previous, ordered_ids, error)
        return self._confirmed(ordered_ids)

    def _confirmed(self, ordered_ids: list[str]) -> ReorderOutcome:
        metrics.reorders.labels(outcome="confirmed").inc()
        logger.info("queue_reorder_saved", tenant_id=self.tenant_id, size=len(ordered_ids))
        if self._alive():
            self.toasts.show(
                Toast(
                    message="Queue order updated",
                    variant=Severity.SUCCESS,
                    duration_ms=self.confirm_duration_ms,
                    key="queue-reorder",
                )
            )
        if self.outbox is not None:
            self.outbox.enqueue(
                NotificationIntent(
                    event="queue.reordered",
                    title="Queue order updated",
                    message=f"{len(ordered_ids)} patients reordered",
                    tenant_id=self.tenant_id,
                    tags=["queue"],
                    priority=2,
                    metadata={"ordered_ids": list(ordered_ids)},
                )
            )
        self.state = ReorderState.IDLE
        return ReorderOutcome(state=ReorderState.CONFIRMED, ordered_ids=ordered_ids)

    def _rolled_back(
        self, previous: list[T], ordered_ids: list[str], ex: Exception
    ) -> ReorderOutcome:
        metrics.reorders.labels(outcome="rolled_back").inc()
        logger.warning("queue_reorder_failed", tenant_id=self.tenant_id, error=str(ex)[:200])
        if self._alive():
            self.toasts.show(
                Toast(
                    message="Could not update the queue order",
                    variant=Severity.ERROR,
                    key="queue-reorder-error",
                )
            )
            self._set(previous)
        self.state = ReorderState.IDLE
        return ReorderOutcome(
            state=ReorderState.ROLLED_BACK, ordered_ids=ordered_ids, error=str(ex)[:200]
        )
