"""
Priority work queue
===================

Five FIFO lanes (CRITICAL > HIGH > NORMAL > LOW > BACKGROUND).

  - Dequeue always takes the oldest ready item of the highest non-empty lane.
  - Anti-starvation: once ``starvation_interval`` dequeues have gone by
    while a BACKGROUND item was waiting, the next dequeue serves BACKGROUND.
  - Items re-enqueued after a retryable failure carry ``not_before``; they
    are skipped until their backoff has elapsed.
  - ``cancel`` and ``remove`` take out a not-yet-dequeued item (a waiting
    retry included) without side effects.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from time import monotonic

from aicore.core.errors import QueueFull
from aicore.core.types import Priority, QueueItem
from aicore.metrics import set_gauge

logger = logging.getLogger("aicore.queue")


class PriorityWorkQueue:
    def __init__(
        self,
        max_size: int = 10_000,
        starvation_interval: int = 20,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        if starvation_interval < 1:
            raise ValueError("starvation_interval must be >= 1")
        self._max_size = max_size
        self._starvation_interval = starvation_interval
        self._clock = clock
        self._lanes: dict[Priority, deque[QueueItem]] = {p: deque() for p in Priority}
        self._changed = asyncio.Event()
        self._since_background = 0
        self._total_enqueued = 0
        self._total_dequeued = 0

    def __len__(self) -> int:
        return sum(len(lane) for lane in self._lanes.values())

    def depths(self) -> dict[str, int]:
        return {priority.name.lower(): len(lane) for priority, lane in self._lanes.items()}

    def put_nowait(self, item: QueueItem) -> None:
        if len(self) >= self._max_size:
            logger.warning(
                "queue_full",
                extra={"request_id": item.request_id, "priority": item.priority.name.lower()},
            )
            raise QueueFull(len(self))
        self._lanes[item.priority].append(item)
        self._total_enqueued += 1
        self._publish_depth(item.priority)
        self._changed.set()

    def cancel(self, request_id: str) -> bool:
        return self.remove(request_id) is not None

    def remove(self, request_id: str) -> QueueItem | None:
        for priority, lane in self._lanes.items():
            for item in lane:
                if item.request_id == request_id:
                    lane.remove(item)
                    self._publish_depth(priority)
                    return item
        return None

    def contains(self, request_id: str) -> bool:
        return any(item.request_id == request_id for lane in self._lanes.values() for item in lane)

    async def get(self, prefer_background: bool = False) -> QueueItem:
        """Wait for and return the next ready item."""
        while True:
            item = self.get_nowait(prefer_background=prefer_background)
            if item is not None:
                return item
            self._changed.clear()
            delay = self._next_ready_in()
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=delay)
            except TimeoutError:
                continue

    def get_nowait(self, prefer_background: bool = False) -> QueueItem | None:
        now = self._clock()
        background_waiting = self._first_ready(Priority.BACKGROUND, now) is not None
        serve_background = background_waiting and (
            prefer_background or self._since_background >= self._starvation_interval
        )
        order: list[Priority] = list(Priority)
        if serve_background:
            order = [Priority.BACKGROUND] + order[:-1]

        for priority in order:
            item = self._first_ready(priority, now)
            if item is None:
                continue
            self._lanes[priority].remove(item)
            self._total_dequeued += 1
            if priority == Priority.BACKGROUND:
                self._since_background = 0
            elif background_waiting:
                self._since_background += 1
            self._publish_depth(priority)
            return item
        return None

    def stats(self) -> dict[str, object]:
        return {
            "depth": len(self),
            "lanes": self.depths(),
            "enqueued": self._total_enqueued,
            "dequeued": self._total_dequeued,
        }

    def _first_ready(self, priority: Priority, now: float) -> QueueItem | None:
        for item in self._lanes[priority]:
            if item.ready(now):
                return item
        return None

    def _next_ready_in(self) -> float | None:
        pending = [item.not_before for lane in self._lanes.values() for item in lane]
        if not pending:
            return None
        return max(min(pending) - self._clock(), 0.001)

    def _publish_depth(self, priority: Priority) -> None:
        set_gauge("aic_queue_depth", {"priority": priority.name.lower()}, len(self._lanes[priority]))
