import asyncio

import pytest

from aicore.core.errors import QueueFull
from aicore.core.types import AIRequest, Operation, Priority, QueueItem
from aicore.queue.priority_queue import PriorityWorkQueue


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _item(request_id: str, priority: Priority, not_before: float = 0.0) -> QueueItem:
    request = AIRequest(
        id=request_id,
        operation=Operation.SUMMARIZE,
        tenant_id="tenant-a",
        user_id="user-1",
        priority=priority,
        payload={"messages": [{"text": request_id}]},
        params={"model": "default"},
        fingerprint=f"fp-{request_id}",
        submitted_at=0.0,
        deadline=1_000_000.0,
    )
    return QueueItem(request=request, priority=priority, enqueued_at=0.0, not_before=not_before)


def _drain(queue: PriorityWorkQueue) -> list[str]:
    order: list[str] = []
    while (item := queue.get_nowait()) is not None:
        order.append(item.request_id)
    return order


def test_dequeue_follows_priority_then_fifo() -> None:
    queue = PriorityWorkQueue(clock=_Clock())
    queue.put_nowait(_item("low", Priority.LOW))
    queue.put_nowait(_item("critical", Priority.CRITICAL))
    queue.put_nowait(_item("normal-1", Priority.NORMAL))
    queue.put_nowait(_item("normal-2", Priority.NORMAL))

    assert _drain(queue) == ["critical", "normal-1", "normal-2", "low"]


def test_background_is_served_after_starvation_interval() -> None:
    queue = PriorityWorkQueue(starvation_interval=3, clock=_Clock())
    queue.put_nowait(_item("bg", Priority.BACKGROUND))
    for index in range(5):
        queue.put_nowait(_item(f"high-{index}", Priority.HIGH))

    order = _drain(queue)
    assert order.index("bg") == 3
    assert order[:3] == ["high-0", "high-1", "high-2"]


def test_prefer_background_takes_background_first() -> None:
    queue = PriorityWorkQueue(clock=_Clock())
    queue.put_nowait(_item("critical", Priority.CRITICAL))
    queue.put_nowait(_item("bg", Priority.BACKGROUND))

    item = queue.get_nowait(prefer_background=True)
    assert item is not None
    assert item.request_id == "bg"


def test_items_in_backoff_are_skipped_until_ready() -> None:
    clock = _Clock()
    queue = PriorityWorkQueue(clock=clock)
    queue.put_nowait(_item("retry", Priority.CRITICAL, not_before=clock.now + 5))
    queue.put_nowait(_item("fresh", Priority.LOW))

    first = queue.get_nowait()
    assert first is not None and first.request_id == "fresh"
    assert queue.get_nowait() is None
    clock.now += 5
    second = queue.get_nowait()
    assert second is not None and second.request_id == "retry"


def test_cancel_removes_queued_item() -> None:
    queue = PriorityWorkQueue(clock=_Clock())
    queue.put_nowait(_item("a", Priority.NORMAL))
    queue.put_nowait(_item("b", Priority.NORMAL))

    assert queue.cancel("a") is True
    assert queue.cancel("a") is False
    assert queue.contains("b") is True
    assert _drain(queue) == ["b"]


def test_queue_full_is_rejected() -> None:
    queue = PriorityWorkQueue(max_size=1, clock=_Clock())
    queue.put_nowait(_item("a", Priority.NORMAL))
    with pytest.raises(QueueFull):
        queue.put_nowait(_item("b", Priority.CRITICAL))
    assert queue.stats()["depth"] == 1
    assert queue.depths()["normal"] == 1


def test_async_get_wakes_on_put() -> None:
    async def scenario() -> str:
        queue = PriorityWorkQueue()
        getter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)
        queue.put_nowait(_item("late", Priority.HIGH))
        item = await asyncio.wait_for(getter, timeout=1.0)
        return item.request_id

    assert asyncio.run(scenario()) == "late"
