"""Fixed-size worker pool draining the priority work queue.

Each worker pulls one item, runs the handler and reports the outcome.
Retryable ``AppError`` failures are re-enqueued with exponential backoff
until the attempt cap or the request deadline is reached; the caller then
receives ``PermanentFailure`` with the full attempt history.  Non-retryable
failures are reported immediately.  An outcome callback that raises fails
the item instead of taking the worker down with it.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from time import monotonic
from typing import Any

from aicore.core.errors import AppError, PermanentFailure, QueueFull
from aicore.core.types import AttemptRecord, QueueItem
from aicore.queue.priority_queue import PriorityWorkQueue

logger = logging.getLogger("aicore.workers")

Handler = Callable[[QueueItem], Awaitable[Any]]
SuccessCallback = Callable[[QueueItem, Any], None]
FailureCallback = Callable[[QueueItem, AppError], None]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    backoff_base_s: float = 0.25
    backoff_max_s: float = 8.0

    def delay_for(self, attempts: int) -> float:
        return min(self.backoff_base_s * (2 ** max(attempts - 1, 0)), self.backoff_max_s)


class WorkerPool:
    """
    Parameters
    ----------
    queue : PriorityWorkQueue
        Source of work.
    handler : callable
        Runs the full pipeline for one item and returns its result.
    on_success, on_failure : callable
        Terminal outcome callbacks.
    size : int
        Number of workers.
    reserved_background : int
        Workers that take BACKGROUND items first whenever one is ready.
    """

    def __init__(
        self,
        queue: PriorityWorkQueue,
        handler: Handler,
        on_success: SuccessCallback,
        on_failure: FailureCallback,
        size: int = 8,
        reserved_background: int = 1,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        if size < 1:
            raise ValueError("size must be >= 1")
        self._queue = queue
        self._handler = handler
        self._on_success = on_success
        self._on_failure = on_failure
        self._size = size
        self._reserved_background = min(max(reserved_background, 0), size)
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._tasks: list[asyncio.Task[None]] = []
        self._busy = 0

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    @property
    def busy(self) -> int:
        return self._busy

    async def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(
                self._run(worker_id, prefer_background=worker_id < self._reserved_background),
                name=f"aicore-worker-{worker_id}",
            )
            for worker_id in range(self._size)
        ]
        logger.info(
            "worker_pool_started",
            extra={"workers": self._size, "reserved_background": self._reserved_background},
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

    async def _run(self, worker_id: int, prefer_background: bool) -> None:
        while True:
            item = await self._queue.get(prefer_background=prefer_background)
            self._busy += 1
            try:
                await self.process(item)
            finally:
                self._busy -= 1

    async def process(self, item: QueueItem) -> None:
        item.attempts += 1
        try:
            result = await self._handler(item)
        except AppError as exc:
            self._handle_failure(item, exc)
            return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(
                "worker_handler_crashed",
                extra={"request_id": item.request_id, "attempt": item.attempts},
            )
            item.history.append(
                AttemptRecord(
                    attempt=item.attempts,
                    provider=None,
                    error_code="internal_error",
                    message=str(exc),
                    retryable=False,
                )
            )
            self._fail(
                item, PermanentFailure("Internal error while executing request", item.history)
            )
            return
        self._succeed(item, result)

    def _succeed(self, item: QueueItem, result: Any) -> None:
        try:
            self._on_success(item, result)
        except Exception as exc:
            logger.exception(
                "worker_success_callback_failed",
                extra={"request_id": item.request_id, "attempt": item.attempts},
            )
            item.history.append(
                AttemptRecord(
                    attempt=item.attempts,
                    provider=None,
                    error_code="internal_error",
                    message=f"{type(exc).__name__}: {exc}",
                    retryable=False,
                )
            )
            self._fail(
                item,
                PermanentFailure(
                    f"Result could not be recorded: {type(exc).__name__}", item.history
                ),
            )

    def _fail(self, item: QueueItem, exc: AppError) -> None:
        try:
            self._on_failure(item, exc)
        except Exception:
            logger.exception(
                "worker_failure_callback_failed",
                extra={"request_id": item.request_id, "error_code": exc.code},
            )

    def _handle_failure(self, item: QueueItem, exc: AppError) -> None:
        item.history.append(
            AttemptRecord(
                attempt=item.attempts,
                provider=getattr(exc, "provider", None),
                error_code=exc.code,
                message=exc.message,
                retryable=exc.retryable,
            )
        )
        log_extra = {
            "request_id": item.request_id,
            "fingerprint": item.request.fingerprint,
            "provider": getattr(exc, "provider", None),
            "attempt": item.attempts,
            "error_code": exc.code,
        }
        if not exc.retryable:
            logger.warning("request_failed", extra=log_extra)
            self._fail(item, exc)
            return

        now = self._clock()
        delay = self._retry_policy.delay_for(item.attempts)
        if item.attempts >= self._retry_policy.max_attempts:
            logger.warning("request_attempts_exhausted", extra=log_extra)
            self._fail(
                item,
                PermanentFailure(
                    f"Gave up after {item.attempts} attempts: {exc.message}", item.history
                ),
            )
            return
        if now + delay >= item.request.deadline:
            logger.warning("request_deadline_exceeded", extra=log_extra)
            self._fail(
                item,
                PermanentFailure(
                    f"Request deadline exceeded after {item.attempts} attempts: {exc.message}",
                    item.history,
                ),
            )
            return

        logger.info("request_retry_scheduled", extra={**log_extra, "latency_ms": delay * 1000})
        item.not_before = now + delay
        item.enqueued_at = now
        try:
            self._queue.put_nowait(item)
        except QueueFull as full:
            self._fail(item, PermanentFailure(full.message, item.history))
