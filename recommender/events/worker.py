"""
One-way interaction event emission and the background worker that drains it.
"""

import asyncio
from typing import List, Optional

from recommender.events.log import InteractionEventLog
from recommender.models.domain import InteractionEvent
from recommender.shared.config import settings
from recommender.shared.logging import get_logger

logger = get_logger(__name__)


class EventEmitter:
    """Non-blocking queue in front of the event log. Never feeds back into a request."""

    def __init__(self, maxsize: Optional[int] = None):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or settings.events.queue_size)
        self.dropped = 0

    def emit(self, event: InteractionEvent):
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"Event queue full, dropped {event.kind} event",
                extra={"student_id": event.student_id, "action": "event_drop"},
            )

    @property
    def backlog(self) -> int:
        return self.queue.qsize()

    def drain(self, limit: int) -> List[InteractionEvent]:
        events: List[InteractionEvent] = []
        while len(events) < limit:
            try:
                events.append(self.queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        return events


class EventLogWorker:
    """Background worker that writes queued events to the event log."""

    def __init__(self, emitter: EventEmitter, event_log: InteractionEventLog, batch_size: int = 100):
        self.emitter = emitter
        self.event_log = event_log
        self.batch_size = batch_size
        self.metrics = {
            "written": 0,
            "failed_batches": 0,
        }
        self.running = False

    async def run_forever(self, interval: Optional[float] = None):
        """Run worker continuously."""
        interval = interval if interval is not None else settings.events.flush_interval_seconds
        self.running = True
        logger.info("Event log worker started")

        while self.running:
            await self.process_batch()
            await asyncio.sleep(interval)

    def stop(self):
        """Stop the worker."""
        self.running = False
        logger.info("Event log worker stopped")

    async def process_batch(self) -> int:
        """Write one batch of queued events; returns how many were written."""
        events = self.emitter.drain(self.batch_size)
        if not events:
            return 0

        try:
            written = await asyncio.to_thread(self.event_log.append_many, events)
        except Exception as e:
            # Batch is dropped; counted in metrics.
            logger.error(f"Failed to write {len(events)} events: {e}")
            self.metrics["failed_batches"] += 1
            return 0

        self.metrics["written"] += written
        return written

    async def flush(self) -> int:
        """Write everything queued, batch by batch; stops at the first failed batch."""
        total = 0
        while self.emitter.backlog:
            failed = self.metrics["failed_batches"]
            total += await self.process_batch()
            if self.metrics["failed_batches"] != failed:
                break
        return total
