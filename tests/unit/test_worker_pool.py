import asyncio
from typing import Any

from aicore.core.errors import (
    AppError,
    InvalidInput,
    PermanentFailure,
    ProviderUnavailable,
)
from aicore.core.types import AIRequest, Operation, Priority, QueueItem
from aicore.queue.priority_queue import PriorityWorkQueue
from aicore.queue.worker_pool import RetryPolicy, WorkerPool


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _item(request_id: str = "req-1", deadline: float = 1_000.0) -> QueueItem:
    request = AIRequest(
        id=request_id,
        operation=Operation.SENTIMENT,
        tenant_id="tenant-a",
        user_id="user-1",
        priority=Priority.NORMAL,
        payload={"text": "great"},
        params={"model": "default"},
        fingerprint=f"fp-{request_id}",
        submitted_at=0.0,
        deadline=deadline,
    )
    return QueueItem(request=request, priority=Priority.NORMAL, enqueued_at=0.0)


class _Outcomes:
    def __init__(self) -> None:
        self.successes: list[tuple[str, Any]] = []
        self.failures: list[tuple[str, AppError]] = []

    def on_success(self, item: QueueItem, result: Any) -> None:
        self.successes.append((item.request_id, result))

    def on_failure(self, item: QueueItem, exc: AppError) -> None:
        self.failures.append((item.request_id, exc))


def test_retry_policy_backoff_is_exponential_and_capped() -> None:
    policy = RetryPolicy(max_attempts=6, backoff_base_s=0.5, backoff_max_s=3.0)
    assert [policy.delay_for(attempt) for attempt in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_retryable_failure_is_requeued_with_backoff_then_succeeds() -> None:
    clock = _Clock()
    queue = PriorityWorkQueue(clock=clock)
    outcomes = _Outcomes()
    calls: list[int] = []

    async def handler(item: QueueItem) -> str:
        calls.append(item.attempts)
        if item.attempts < 3:
            raise ProviderUnavailable("upstream 502", provider="stub")
        return "ok"

    pool = WorkerPool(
        queue=queue,
        handler=handler,
        on_success=outcomes.on_success,
        on_failure=outcomes.on_failure,
        retry_policy=RetryPolicy(max_attempts=4, backoff_base_s=1.0, backoff_max_s=8.0),
        clock=clock,
    )

    async def scenario() -> None:
        await pool.process(_item())
        assert queue.get_nowait() is None
        clock.now += 1.0
        retried = queue.get_nowait()
        assert retried is not None
        await pool.process(retried)
        clock.now += 2.0
        retried = queue.get_nowait()
        assert retried is not None
        await pool.process(retried)

    asyncio.run(scenario())
    assert calls == [1, 2, 3]
    assert outcomes.successes == [("req-1", "ok")]
    assert outcomes.failures == []


def test_attempt_cap_yields_permanent_failure_with_history() -> None:
    clock = _Clock()
    queue = PriorityWorkQueue(clock=clock)
    outcomes = _Outcomes()

    async def handler(item: QueueItem) -> str:
        raise ProviderUnavailable(f"attempt {item.attempts} failed", provider="stub")

    pool = WorkerPool(
        queue=queue,
        handler=handler,
        on_success=outcomes.on_success,
        on_failure=outcomes.on_failure,
        retry_policy=RetryPolicy(max_attempts=2, backoff_base_s=0.0, backoff_max_s=0.0),
        clock=clock,
    )

    async def scenario() -> None:
        await pool.process(_item())
        retried = queue.get_nowait()
        assert retried is not None
        await pool.process(retried)

    asyncio.run(scenario())
    assert len(outcomes.failures) == 1
    _, error = outcomes.failures[0]
    assert isinstance(error, PermanentFailure)
    assert [record.attempt for record in error.history] == [1, 2]
    assert error.details()["attempts"][0]["provider"] == "stub"


def test_non_retryable_failure_is_reported_immediately() -> None:
    queue = PriorityWorkQueue()
    outcomes = _Outcomes()

    async def handler(item: QueueItem) -> str:
        raise InvalidInput("bad payload")

    pool = WorkerPool(
        queue=queue, handler=handler, on_success=outcomes.on_success, on_failure=outcomes.on_failure
    )
    asyncio.run(pool.process(_item()))

    assert len(queue) == 0
    assert isinstance(outcomes.failures[0][1], InvalidInput)


def test_retry_past_deadline_fails_permanently() -> None:
    clock = _Clock()
    outcomes = _Outcomes()

    async def handler(item: QueueItem) -> str:
        raise ProviderUnavailable("down")

    pool = WorkerPool(
        queue=PriorityWorkQueue(clock=clock),
        handler=handler,
        on_success=outcomes.on_success,
        on_failure=outcomes.on_failure,
        retry_policy=RetryPolicy(max_attempts=10, backoff_base_s=5.0, backoff_max_s=5.0),
        clock=clock,
    )
    asyncio.run(pool.process(_item(deadline=3.0)))

    error = outcomes.failures[0][1]
    assert isinstance(error, PermanentFailure)
    assert "deadline" in error.message


def test_unexpected_exception_becomes_permanent_failure() -> None:
    outcomes = _Outcomes()

    async def handler(item: QueueItem) -> str:
        raise RuntimeError("boom")

    pool = WorkerPool(
        queue=PriorityWorkQueue(),
        handler=handler,
        on_success=outcomes.on_success,
        on_failure=outcomes.on_failure,
    )
    asyncio.run(pool.process(_item()))

    error = outcomes.failures[0][1]
    assert isinstance(error, PermanentFailure)
    assert error.history[0].error_code == "internal_error"


def test_started_pool_drains_queue() -> None:
    outcomes = _Outcomes()

    async def scenario() -> None:
        queue = PriorityWorkQueue()

        async def handler(item: QueueItem) -> str:
            return item.request_id.upper()

        pool = WorkerPool(
            queue=queue,
            handler=handler,
            on_success=outcomes.on_success,
            on_failure=outcomes.on_failure,
            size=2,
        )
        await pool.start()
        assert pool.running is True
        for index in range(5):
            queue.put_nowait(_item(f"req-{index}"))
        for _ in range(100):
            if len(outcomes.successes) == 5:
                break
            await asyncio.sleep(0.01)
        await pool.stop()
        assert pool.running is False

    asyncio.run(scenario())
    assert sorted(result for _, result in outcomes.successes) == [
        f"REQ-{index}" for index in range(5)
    ]


def test_raising_success_callback_fails_the_item_and_keeps_workers_alive() -> None:
    outcomes = _Outcomes()
    failures_before_recovery = ["req-0"]

    def on_success(item: QueueItem, result: Any) -> None:
        if item.request_id in failures_before_recovery:
            raise RuntimeError("ledger write failed")
        outcomes.on_success(item, result)

    async def scenario() -> bool:
        queue = PriorityWorkQueue()

        async def handler(item: QueueItem) -> str:
            return "ok"

        pool = WorkerPool(
            queue=queue,
            handler=handler,
            on_success=on_success,
            on_failure=outcomes.on_failure,
            size=1,
            reserved_background=0,
        )
        await pool.start()
        queue.put_nowait(_item("req-0"))
        queue.put_nowait(_item("req-1"))
        for _ in range(100):
            if outcomes.successes and outcomes.failures:
                break
            await asyncio.sleep(0.01)
        alive = pool.running
        await pool.stop()
        return alive

    assert asyncio.run(scenario()) is True
    assert [request_id for request_id, _ in outcomes.successes] == ["req-1"]
    request_id, error = outcomes.failures[0]
    assert request_id == "req-0"
    assert isinstance(error, PermanentFailure)
    assert error.history[-1].error_code == "internal_error"
    assert "RuntimeError" in error.message


def test_raising_failure_callback_does_not_kill_the_worker() -> None:
    handled: list[str] = []

    def on_failure(item: QueueItem, exc: AppError) -> None:
        handled.append(item.request_id)
        raise RuntimeError("alert sink down")

    async def scenario() -> bool:
        queue = PriorityWorkQueue()

        async def handler(item: QueueItem) -> str:
            raise InvalidInput("bad payload")

        pool = WorkerPool(
            queue=queue,
            handler=handler,
            on_success=lambda item, result: None,
            on_failure=on_failure,
            size=1,
            reserved_background=0,
        )
        await pool.start()
        queue.put_nowait(_item("req-0"))
        queue.put_nowait(_item("req-1"))
        for _ in range(100):
            if len(handled) == 2:
                break
            await asyncio.sleep(0.01)
        alive = pool.running
        await pool.stop()
        return alive

    assert asyncio.run(scenario()) is True
    assert handled == ["req-0", "req-1"]
