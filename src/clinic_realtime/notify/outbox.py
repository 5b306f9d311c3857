from __future__ import annotations

import asyncio
from contextlib import suppress

from clinic_realtime.config import get_settings
from clinic_realtime.ops import metrics
from clinic_realtime.utils.log import logger
from clinic_realtime.utils.retry import retry_async

from .base import IntentSender, NotificationIntent


class Outbox:
    """
    Notification outbox.

    Mutations and escalations enqueue intents and return immediately; a single
    worker task drains the queue and delivers with capped exponential backoff.
    Delivery failures are logged and counted, never raised to the producer.
    """

    def __init__(
        self,
        sender: IntentSender,
        *,
        retries: int | None = None,
        base: float | None = None,
        cap: float | None = None,
        jitter: bool = True,
        max_pending: int | None = None,
    ) -> None:
        s = get_settings()
        self.sender = sender
        self.retries = int(s.outbox_retries if retries is None else retries)
        self.base = float(s.outbox_backoff_base_s if base is None else base)
        self.cap = float(s.outbox_backoff_cap_s if cap is None else cap)
        self.jitter = bool(jitter)
        self._queue: asyncio.Queue[NotificationIntent] = asyncio.Queue(
            maxsize=max(1, int(s.outbox_max_pending if max_pending is None else max_pending))
        )
        self._task: asyncio.Task | None = None
        self.delivered = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def enqueue(self, intent: NotificationIntent) -> bool:
        try:
            self._queue.put_nowait(intent)
        except asyncio.QueueFull:
            metrics.outbox_deliveries.labels(result="overflow").inc()
            logger.warning("outbox_overflow", intent_event=intent.event)
            return False
        return True

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._drain_loop(), name="notify.outbox")
        logger.info("outbox_started")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await self._task
        self._task = None
        logger.info("outbox_stopped", pending=self.pending)

    async def drain(self) -> None:
        """Wait until every queued intent has been attempted."""
        await self._queue.join()

    async def _drain_loop(self) -> None:
        while True:
            intent = await self._queue.get()
            try:
                await self._deliver(intent)
            finally:
                self._queue.task_done()

    async def _deliver(self, intent: NotificationIntent) -> None:
        def _on_retry(attempt: int, delay: float, ex: BaseException) -> None:
            logger.info(
                "outbox_retry",
                intent_event=intent.event,
                attempt=attempt,
                delay_s=round(delay, 3),
                error=str(ex)[:200],
            )

        try:
            await retry_async(
                lambda: self.sender.deliver(intent),
                retries=self.retries,
                base=self.base,
                cap=self.cap,
                jitter=self.jitter,
                on_retry=_on_retry,
            )
        except Exception as ex:
            self.failed += 1
            metrics.outbox_deliveries.labels(result="failed").inc()
            logger.warning("outbox_delivery_failed", intent_event=intent.event, error=str(ex)[:200])
            return
        self.delivered += 1
        metrics.outbox_deliveries.labels(result="delivered").inc()
        logger.debug("outbox_delivered", intent_event=intent.event)
