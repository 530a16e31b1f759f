"""In-process progress push channel.

Subscribers get a bounded ``asyncio.Queue`` per execution. A channel exists
only while it has subscribers; publishing to an execution nobody watches
is a no-op. A full queue drops its oldest event so a slow subscriber never
blocks the engine. The state store stays authoritative: a subscriber that
misses events can always poll ``ExecutionService.get_progress``.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Set

from core.constants import ExecutionStatus
from schemas.execution import ProgressEvent

logger = logging.getLogger(__name__)


class ProgressBroadcaster:
    """Manages per-execution progress subscriptions."""

    def __init__(self, queue_size: int = 100):
        # Map of execution_id -> set of subscriber queues
        self._channels: Dict[str, Set[asyncio.Queue]] = {}
        self.queue_size = queue_size

    def subscribe(self, execution_id: str) -> asyncio.Queue:
        """Register a subscriber and return its queue."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._channels.setdefault(execution_id, set()).add(queue)
        logger.debug(f"Progress subscriber added - execution_id: {execution_id}")
        return queue

    def unsubscribe(self, execution_id: str, queue: asyncio.Queue) -> None:
        """Remove a subscriber; the channel goes away with its last subscriber."""
        subscribers = self._channels.get(execution_id)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._channels[execution_id]
        logger.debug(f"Progress subscriber removed - execution_id: {execution_id}")

    @asynccontextmanager
    async def subscription(self, execution_id: str) -> AsyncIterator[asyncio.Queue]:
        queue = self.subscribe(execution_id)
        try:
            yield queue
        finally:
            self.unsubscribe(execution_id, queue)

    async def stream(self, execution_id: str, timeout: Optional[float] = None) -> AsyncIterator[ProgressEvent]:
        """Yield events for one execution until it reaches a terminal status.

        Args:
            execution_id: Execution to follow
            timeout: Seconds to wait for each event; None waits forever
        """
        async with self.subscription(execution_id) as queue:
            while True:
                event = await asyncio.wait_for(queue.get(), timeout)
                yield event
                if event.event == "status" and ExecutionStatus(event.status).is_terminal:
                    return

    def publish(self, event: ProgressEvent) -> int:
        """Push an event to every subscriber of its execution.

        Returns:
            Number of subscribers the event was delivered to
        """
        subscribers = self._channels.get(event.execution_id)
        if not subscribers:
            return 0

        for queue in subscribers:
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                logger.warning(f"Progress queue full, dropped oldest event - execution_id: {event.execution_id}")
            queue.put_nowait(event)
        return len(subscribers)

    def subscriber_count(self, execution_id: str) -> int:
        return len(self._channels.get(execution_id, ()))

    @property
    def channel_count(self) -> int:
        return len(self._channels)


_broadcaster: Optional[ProgressBroadcaster] = None


def get_progress_broadcaster() -> ProgressBroadcaster:
    """Get or create the process-wide broadcaster."""
    global _broadcaster
    if _broadcaster is None:
        from app.config import get_settings

        _broadcaster = ProgressBroadcaster(queue_size=get_settings().PROGRESS_QUEUE_SIZE)
    return _broadcaster
