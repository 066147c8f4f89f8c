"""
Dispatch worker - drains the webhook queue off the request path.

A bounded asyncio.Queue feeds N worker tasks. Each event is processed in
isolation: a crashing handler is logged and the worker moves on.
"""
import asyncio
import logging
from typing import Optional

from billing_sentinel.schemas.stripe_events import WebhookEvent
from billing_sentinel.services.ingestion import run_dispatch
from billing_sentinel.utils.logging import correlation_scope

logger = logging.getLogger(__name__)


class DispatchWorker:
    def __init__(self, retry, ledger, queue_size: int = 1000, worker_count: int = 4):
        self.retry = retry
        self.ledger = ledger
        self.worker_count = max(1, worker_count)
        self.queue: asyncio.Queue[WebhookEvent] = asyncio.Queue(maxsize=queue_size)
        self._tasks: list[asyncio.Task] = []
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._run(i), name=f"dispatch-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.info("Dispatch worker started (%d tasks)", self.worker_count)

    def submit(self, event: WebhookEvent) -> None:
        """Enqueue without waiting. Raises asyncio.QueueFull when saturated."""
        self.queue.put_nowait(event)

    async def _run(self, worker_id: int) -> None:
        while True:
            event = await self.queue.get()
            try:
                await self.handle(event)
            except Exception as e:
                self.failed += 1
                logger.error(
                    "Dispatch worker %d crashed on %s: %s", worker_id, event.id, str(e),
                    exc_info=True,
                    extra={"event_id": event.id, "event_type": event.type},
                )
            finally:
                self.queue.task_done()

    async def handle(self, event: WebhookEvent):
        with correlation_scope(event.id):
            result = await run_dispatch(self.retry, self.ledger, event)
        self.processed += 1
        if result.is_failure:
            self.failed += 1
        return result

    async def join(self) -> None:
        """Wait until every queued event has been handled."""
        await self.queue.join()

    async def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Let in-flight work finish (up to timeout), then cancel the tasks."""
        if self._tasks:
            try:
                await asyncio.wait_for(self.queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Dispatch worker stopping with %d events queued", self.queue.qsize())
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info(
            "Dispatch worker stopped (processed=%d failed=%d)", self.processed, self.failed,
        )
        self._tasks = []
