"""Request orchestration: the submit / await / cancel contract.

Admission path (``submit``), in order:

  1. validate the payload and fingerprint it
  2. cache hit: resolve immediately
  3. same fingerprint already in flight: join as a follower (shared hit)
  4. reserve the estimated cost against the tenant budget
  5. take an admission token from the tenant's rate bucket
  6. register the single-flight leader and enqueue

Workers then route the leader through the provider chain, commit the actual
cost, write the result through to the cache and deliver to the leader and
every follower.  Admission errors are raised from ``submit`` itself;
execution errors are raised from ``await_result``.

Every admitted request carries a deadline timer.  A leader still waiting in
the queue when it fires (first attempt or retry backoff) is pulled out and
failed together with its followers; a follower whose own deadline passes is
detached and failed alone.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from time import monotonic, time
from typing import Any
from uuid import uuid4

from aicore.budget.tracker import BudgetAlert, CostTracker, Reservation
from aicore.cache.fingerprint import Fingerprinter
from aicore.cache.response_cache import ResponseCache
from aicore.core.errors import (
    AppError,
    InvalidInput,
    PermanentFailure,
    QueueFull,
    RequestCancelled,
    RequestNotFound,
)
from aicore.core.types import (
    AIRequest,
    AIResult,
    Operation,
    Priority,
    QueueItem,
    RequestState,
)
from aicore.limits.rate_limiter import TokenBucketRateLimiter
from aicore.metrics import record_request, set_gauge
from aicore.providers.base import ProviderCall
from aicore.providers.circuit_breaker import BreakerState, ProviderHealth
from aicore.providers.registry import ProviderRouter, ProviderRoutingResult, estimate_tokens
from aicore.queue.priority_queue import PriorityWorkQueue
from aicore.queue.worker_pool import RetryPolicy, WorkerPool
from aicore.services.validation import MAX_EMBED_TEXTS, parse_operation, validate_payload
from aicore.vectors.index import SearchFilters
from aicore.vectors.pipeline import IngestItem, IngestReport, SearchHit, VectorPipeline
from aicore.webhooks.dispatcher import WebhookDispatcher, WebhookEventType

logger = logging.getLogger("aicore.orchestrator")

_TERMINAL = {RequestState.SUCCEEDED, RequestState.FAILED, RequestState.CANCELLED}


@dataclass
class _Tracked:
    request: AIRequest
    future: "asyncio.Future[AIResult]"
    started: float
    state: RequestState = RequestState.QUEUED
    leader: bool = False
    reservation: Reservation | None = None
    rate_key: str | None = None
    attempts: int = 0
    finished_at: float | None = None
    followers: set[str] = field(default_factory=set)
    deadline_timer: asyncio.TimerHandle | None = None


class Orchestrator:
    """Composes cache, budget, rate limits, queue, workers and routing.

    Parameters
    ----------
    router : ProviderRouter
        Provider chain with circuit breakers.
    default_models : dict, optional
        Model used per operation when the caller does not pass ``model``.
    request_timeout_s : float
        Overall time budget per request, spanning retries.
    provider_timeout_s : float
        Upper bound for a single provider call.
    result_retention_s : float
        How long finished requests stay queryable.
    """

    def __init__(
        self,
        router: ProviderRouter,
        fingerprinter: Fingerprinter | None = None,
        cache: ResponseCache | None = None,
        rate_limiter: TokenBucketRateLimiter | None = None,
        cost_tracker: CostTracker | None = None,
        queue: PriorityWorkQueue | None = None,
        vectors: VectorPipeline | None = None,
        dispatcher: WebhookDispatcher | None = None,
        default_models: dict[Operation, str] | None = None,
        worker_count: int = 8,
        reserved_background_workers: int = 1,
        retry_policy: RetryPolicy | None = None,
        request_timeout_s: float = 120.0,
        provider_timeout_s: float = 20.0,
        result_retention_s: float = 3_600.0,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self._router = router
        self._fingerprinter = fingerprinter or Fingerprinter()
        self._cache = cache or ResponseCache()
        self._rate_limiter = rate_limiter or TokenBucketRateLimiter()
        self._cost_tracker = cost_tracker or CostTracker()
        self._queue = queue or PriorityWorkQueue(clock=clock)
        self._vectors = vectors
        self._dispatcher = dispatcher
        self._default_models = dict(default_models) if default_models else {}
        self._request_timeout_s = request_timeout_s
        self._provider_timeout_s = provider_timeout_s
        self._result_retention_s = result_retention_s
        self._clock = clock
        self._requests: dict[str, _Tracked] = {}
        self._leaders: dict[str, str] = {}
        self._finished: deque[tuple[float, str]] = deque()
        self._pool = WorkerPool(
            queue=self._queue,
            handler=self._execute,
            on_success=self._on_success,
            on_failure=self._on_failure,
            size=worker_count,
            reserved_background=reserved_background_workers,
            retry_policy=retry_policy,
            clock=clock,
        )
        if self._dispatcher is not None:
            self._cost_tracker.set_alert_handler(self._on_budget_alert)

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    @property
    def queue(self) -> PriorityWorkQueue:
        return self._queue

    @property
    def cost_tracker(self) -> CostTracker:
        return self._cost_tracker

    @property
    def router(self) -> ProviderRouter:
        return self._router

    @property
    def vectors(self) -> VectorPipeline | None:
        return self._vectors

    @property
    def running(self) -> bool:
        return self._pool.running

    async def start(self) -> None:
        await self._pool.start()
        if self._vectors is not None:
            await self._vectors.start()

    async def stop(self) -> None:
        if self._vectors is not None:
            await self._vectors.stop()
        await self._pool.stop()
        if self._dispatcher is not None:
            await self._dispatcher.drain()

    async def submit(
        self,
        operation: str | Operation,
        payload: dict[str, Any],
        priority: str | int | Priority = Priority.NORMAL,
        tenant_id: str = "",
        user_id: str = "",
        params: dict[str, Any] | None = None,
        timeout_s: float | None = None,
    ) -> str:
        """Admit a request and return its id without waiting for the result."""
        op = parse_operation(operation)
        try:
            level = Priority.parse(priority)
        except (KeyError, ValueError) as exc:
            raise InvalidInput(f"Unknown priority '{priority}'") from exc
        if not tenant_id:
            raise InvalidInput("tenant_id is required")
        validate_payload(op, payload)
        if params is not None and not isinstance(params, dict):
            raise InvalidInput("params must be an object")
        self._prune_finished()

        model_params = {key: value for key, value in (params or {}).items() if value is not None}
        model_params["model"] = str(
            model_params.get("model") or self._default_models.get(op, "default")
        )
        fingerprint = self._fingerprinter.fingerprint(op, payload, model_params)
        now = self._clock()
        request = AIRequest(
            id=f"req-{uuid4().hex}",
            operation=op,
            tenant_id=tenant_id,
            user_id=user_id,
            priority=level,
            payload=payload,
            params=model_params,
            fingerprint=fingerprint,
            submitted_at=time(),
            deadline=now + (timeout_s if timeout_s is not None else self._request_timeout_s),
        )
        tracked = _Tracked(
            request=request,
            future=asyncio.get_running_loop().create_future(),
            started=now,
        )
        log_extra = {
            "request_id": request.id,
            "tenant_id": tenant_id,
            "user_id": user_id,
            "operation": op.value,
            "priority": level.name.lower(),
            "fingerprint": fingerprint,
        }

        entry = self._cache.get(fingerprint, count_miss=False)
        if entry is not None:
            self._requests[request.id] = tracked
            result = AIResult(
                request_id=request.id,
                operation=op,
                fingerprint=fingerprint,
                output=entry.result,
                provider=entry.provider_used,
                cached=True,
            )
            self._finish(tracked, RequestState.SUCCEEDED, result=result)
            logger.info("request_cache_hit", extra=log_extra)
            return request.id

        leader_id = self._leaders.get(fingerprint)
        leader = self._requests.get(leader_id) if leader_id is not None else None
        if leader is not None and self._cache.flights.peek(fingerprint) is not None:
            self._requests[request.id] = tracked
            leader.followers.add(request.id)
            self._cache.record_shared_hit(op)
            self._arm_deadline(tracked)
            logger.info("request_joined_flight", extra={**log_extra, "leader_id": leader_id})
            return request.id

        self._cache.record_miss()
        estimate = self._router.registry.estimate_cents(
            op, model_params["model"], estimate_tokens(payload)
        )
        reservation = self._cost_tracker.reserve(tenant_id, estimate, level)
        try:
            self._rate_limiter.acquire_for(tenant_id, op.value)
        except AppError:
            self._cost_tracker.release(reservation)
            raise

        tracked.leader = True
        tracked.reservation = reservation
        tracked.rate_key = TokenBucketRateLimiter.admission_key(tenant_id, op.value)
        self._cache.flights.join(fingerprint)
        try:
            self._queue.put_nowait(
                QueueItem(request=request, priority=level, enqueued_at=now)
            )
        except QueueFull:
            self._cost_tracker.release(reservation)
            self._rate_limiter.refund(tracked.rate_key)
            self._cache.flights.resolve(fingerprint, None)
            raise
        self._requests[request.id] = tracked
        self._leaders[fingerprint] = request.id
        self._arm_deadline(tracked)
        logger.info("request_submitted", extra={**log_extra, "cost_cents": estimate})
        return request.id

    async def wait(self, request_id: str, timeout_s: float | None = None) -> RequestState:
        """Wait up to *timeout_s* for a terminal state; return the current state."""
        tracked = self._get(request_id)
        if not tracked.future.done() and (timeout_s is None or timeout_s > 0):
            await asyncio.wait({tracked.future}, timeout=timeout_s)
        return tracked.state

    async def await_result(self, request_id: str, timeout_s: float | None = None) -> AIResult:
        """Return the result or raise the request's typed error."""
        tracked = self._get(request_id)
        return await asyncio.wait_for(asyncio.shield(tracked.future), timeout=timeout_s)

    def status(self, request_id: str) -> dict[str, object]:
        tracked = self._get(request_id)
        request = tracked.request
        return {
            "request_id": request.id,
            "status": tracked.state.value,
            "tenant_id": request.tenant_id,
            "operation": request.operation.value,
            "priority": request.priority.name.lower(),
            "fingerprint": request.fingerprint,
            "attempts": tracked.attempts,
            "submitted_at": request.submitted_at,
        }

    def cancel(self, request_id: str) -> bool:
        """Cancel a request.

        A queued leader without followers is removed from the queue and its
        budget reservation and rate token are returned.  Otherwise the
        caller is detached and any in-flight result is discarded on delivery.
        """
        tracked = self._get(request_id)
        if tracked.state in _TERMINAL:
            return False
        request = tracked.request
        if not tracked.leader:
            self._detach_follower(tracked)
        elif not tracked.followers and self._queue.cancel(request_id):
            if tracked.reservation is not None:
                self._cost_tracker.release(tracked.reservation)
            if tracked.rate_key is not None:
                self._rate_limiter.refund(tracked.rate_key)
            self._cache.flights.resolve(request.fingerprint, None)
            self._leaders.pop(request.fingerprint, None)
        self._finish(tracked, RequestState.CANCELLED, error=RequestCancelled(request_id))
        logger.info(
            "request_cancelled",
            extra={"request_id": request_id, "fingerprint": request.fingerprint},
        )
        return True

    async def _execute(self, item: QueueItem) -> ProviderRoutingResult:
        request = item.request
        tracked = self._requests.get(request.id)
        if tracked is not None:
            tracked.attempts = item.attempts
            if tracked.state == RequestState.QUEUED:
                tracked.state = RequestState.RUNNING
        remaining = request.remaining_s(self._clock())
        if remaining <= 0:
            raise PermanentFailure(
                f"Request deadline exceeded before attempt {item.attempts}", item.history
            )
        params = {key: value for key, value in request.params.items() if key != "model"}
        call = ProviderCall(
            operation=request.operation,
            model=str(request.params["model"]),
            payload=request.payload,
            params=params,
        )
        return await self._router.route(call, timeout_s=min(self._provider_timeout_s, remaining))

    def _on_success(self, item: QueueItem, routed: ProviderRoutingResult) -> None:
        request = item.request
        output = routed.result.output
        tracked = self._requests.get(request.id)
        # Spend is on the ledger before the result becomes visible anywhere.
        if tracked is not None and tracked.reservation is not None:
            self._cost_tracker.commit(tracked.reservation, routed.cost_cents)
        else:
            self._cost_tracker.record(request.tenant_id, routed.cost_cents)
        try:
            self._cache.put(request.fingerprint, request.operation, output, routed.provider_name)
        except Exception:
            logger.exception(
                "cache_write_failed",
                extra={"request_id": request.id, "fingerprint": request.fingerprint},
            )
        self._release_flight(request.fingerprint, request.id)

        result = AIResult(
            request_id=request.id,
            operation=request.operation,
            fingerprint=request.fingerprint,
            output=output,
            provider=routed.provider_name,
            cached=False,
            cost_cents=routed.cost_cents,
            attempts=item.attempts,
        )
        logger.info(
            "request_succeeded",
            extra={
                "request_id": request.id,
                "tenant_id": request.tenant_id,
                "operation": request.operation.value,
                "fingerprint": request.fingerprint,
                "provider": routed.provider_name,
                "attempt": item.attempts,
                "cost_cents": routed.cost_cents,
            },
        )
        if tracked is not None:
            self._finish(tracked, RequestState.SUCCEEDED, result=result)
            for follower_id in list(tracked.followers):
                follower = self._requests.get(follower_id)
                if follower is None:
                    continue
                self._finish(
                    follower,
                    RequestState.SUCCEEDED,
                    result=AIResult(
                        request_id=follower_id,
                        operation=request.operation,
                        fingerprint=request.fingerprint,
                        output=output,
                        provider=routed.provider_name,
                        cached=True,
                    ),
                )

    def _on_failure(self, item: QueueItem, exc: AppError) -> None:
        request = item.request
        tracked = self._requests.get(request.id)
        if tracked is not None and tracked.reservation is not None:
            self._cost_tracker.release(tracked.reservation)
        self._release_flight(request.fingerprint, request.id)
        logger.warning(
            "request_failed_permanently",
            extra={
                "request_id": request.id,
                "tenant_id": request.tenant_id,
                "operation": request.operation.value,
                "fingerprint": request.fingerprint,
                "provider": getattr(exc, "provider", None),
                "attempt": item.attempts,
                "error_code": exc.code,
            },
        )
        if self._dispatcher is not None:
            self._dispatcher.notify(
                WebhookEventType.REQUEST_FAILED,
                {
                    "request_id": request.id,
                    "tenant_id": request.tenant_id,
                    "operation": request.operation.value,
                    "fingerprint": request.fingerprint,
                    "error_code": exc.code,
                    "attempts": item.attempts,
                },
            )
        if tracked is None:
            return
        self._finish(tracked, RequestState.FAILED, error=exc)
        for follower_id in list(tracked.followers):
            follower = self._requests.get(follower_id)
            if follower is not None:
                self._finish(follower, RequestState.FAILED, error=exc)

    def _arm_deadline(self, tracked: _Tracked) -> None:
        delay = max(tracked.request.remaining_s(self._clock()), 0.0)
        tracked.deadline_timer = asyncio.get_running_loop().call_later(
            delay, self._expire, tracked.request.id
        )

    def _expire(self, request_id: str) -> None:
        tracked = self._requests.get(request_id)
        if tracked is None or tracked.state in _TERMINAL:
            return
        tracked.deadline_timer = None
        if not tracked.leader:
            self._detach_follower(tracked)
            logger.warning(
                "request_deadline_exceeded",
                extra={"request_id": request_id, "fingerprint": tracked.request.fingerprint},
            )
            self._finish(
                tracked,
                RequestState.FAILED,
                error=PermanentFailure("Request deadline exceeded waiting for a shared call", []),
            )
            return
        item = self._queue.remove(request_id)
        if item is None:
            # Dispatched; the provider call is already capped at the remaining budget.
            return
        if item.attempts == 0 and tracked.rate_key is not None:
            self._rate_limiter.refund(tracked.rate_key)
        self._on_failure(
            item,
            PermanentFailure(
                f"Request deadline exceeded while queued after {item.attempts} attempts",
                item.history,
            ),
        )

    def _detach_follower(self, tracked: _Tracked) -> None:
        leader_id = self._leaders.get(tracked.request.fingerprint)
        if leader_id is not None and leader_id in self._requests:
            self._requests[leader_id].followers.discard(tracked.request.id)

    def _release_flight(self, fingerprint: str, leader_id: str) -> None:
        if self._leaders.get(fingerprint) == leader_id:
            del self._leaders[fingerprint]
        self._cache.flights.resolve(fingerprint, None)

    def _finish(
        self,
        tracked: _Tracked,
        state: RequestState,
        result: AIResult | None = None,
        error: AppError | None = None,
    ) -> None:
        if tracked.state in _TERMINAL:
            # Cancelled callers keep their cancellation; the result is discarded.
            return
        tracked.state = state
        tracked.finished_at = self._clock()
        if tracked.deadline_timer is not None:
            tracked.deadline_timer.cancel()
            tracked.deadline_timer = None
        self._finished.append((tracked.finished_at, tracked.request.id))
        if error is not None:
            tracked.future.set_exception(error)
            # Nobody may ever await this request.
            tracked.future.exception()
        else:
            tracked.future.set_result(result)
        request = tracked.request
        record_request(
            operation=request.operation.value,
            provider=result.provider if result is not None else "none",
            outcome=state.value if error is None else error.code,
            latency_s=tracked.finished_at - tracked.started,
            cached=result.cached if result is not None else False,
            cost_cents=result.cost_cents if result is not None else 0.0,
            attempts=max(tracked.attempts, 1),
        )

    def _prune_finished(self) -> None:
        cutoff = self._clock() - self._result_retention_s
        while self._finished and self._finished[0][0] < cutoff:
            _, request_id = self._finished.popleft()
            tracked = self._requests.get(request_id)
            if tracked is not None and tracked.state in _TERMINAL:
                del self._requests[request_id]
        set_gauge("aic_tracked_requests", {}, len(self._requests))

    def _get(self, request_id: str) -> _Tracked:
        tracked = self._requests.get(request_id)
        if tracked is None:
            raise RequestNotFound(request_id)
        return tracked

    # Admin

    def get_budget(self, tenant_id: str) -> dict[str, object]:
        budget = self._cost_tracker.get_budget(tenant_id)
        return budget.as_dict(reserved_cents=self._cost_tracker.reserved_cents(tenant_id))

    def set_budget(self, tenant_id: str, limit_cents: float) -> dict[str, object]:
        if limit_cents < 0:
            raise InvalidInput("limit_cents must be >= 0")
        budget = self._cost_tracker.set_budget(tenant_id, limit_cents)
        return budget.as_dict(reserved_cents=self._cost_tracker.reserved_cents(tenant_id))

    def invalidate_cache(self, pattern: str) -> int:
        return self._cache.invalidate(pattern)

    def get_provider_health(self) -> list[ProviderHealth]:
        return self._router.health()

    def cache_stats(self) -> dict[str, object]:
        return self._cache.stats()

    def stats(self) -> dict[str, object]:
        return {
            "queue": self._queue.stats(),
            "workers_busy": self._pool.busy,
            "tracked_requests": len(self._requests),
            "cache": self._cache.stats(),
            "vectors": self._vectors.stats() if self._vectors is not None else None,
        }

    # Vectors

    async def ingest_content(
        self, tenant_id: str, items: list[IngestItem], user_id: str = "ingest"
    ) -> IngestReport:
        pipeline = self._require_vectors()
        if not items:
            raise InvalidInput("items must be a non-empty list")

        async def embed(texts: list[str]) -> list[list[float]]:
            return await self._embed(texts, tenant_id, user_id, Priority.BACKGROUND)

        return await pipeline.ingest(items, embed)

    async def search(
        self,
        tenant_id: str,
        query_text: str | None = None,
        query_vector: list[float] | None = None,
        k: int = 20,
        filters: SearchFilters | None = None,
        min_score: float = 0.0,
        rank_by: str = "relevance",
        user_id: str = "search",
    ) -> list[SearchHit]:
        pipeline = self._require_vectors()
        if query_vector is None:
            if not query_text or not query_text.strip():
                raise InvalidInput("query_text or query_vector is required")
            query_vector = (await self._embed([query_text], tenant_id, user_id, Priority.HIGH))[0]
        return await pipeline.search(
            query_vector, k=k, filters=filters, min_score=min_score, rank_by=rank_by
        )

    async def _embed(
        self, texts: list[str], tenant_id: str, user_id: str, priority: Priority
    ) -> list[list[float]]:
        vectors: list[list[float]] = []
        for start in range(0, len(texts), MAX_EMBED_TEXTS):
            chunk = texts[start : start + MAX_EMBED_TEXTS]
            request_id = await self.submit(
                Operation.EMBED,
                {"texts": chunk},
                priority=priority,
                tenant_id=tenant_id,
                user_id=user_id,
            )
            result = await self.await_result(request_id)
            embeddings = result.output.get("embeddings")
            if not isinstance(embeddings, list):
                raise InvalidInput("Embedding result missing embeddings")
            vectors.extend([float(value) for value in vector] for vector in embeddings)
        return vectors

    def _require_vectors(self) -> VectorPipeline:
        if self._vectors is None:
            raise InvalidInput("Vector store is not configured")
        return self._vectors

    # Alerts

    def _on_budget_alert(self, alert: BudgetAlert) -> None:
        if self._dispatcher is None:
            return
        event = (
            WebhookEventType.BUDGET_EXCEEDED if alert.exceeded else WebhookEventType.BUDGET_WARNING
        )
        self._dispatcher.notify(
            event,
            {
                "tenant_id": alert.tenant_id,
                "period": alert.period,
                "threshold": alert.threshold,
                "spent_cents": alert.spent_cents,
                "limit_cents": alert.limit_cents,
            },
        )


def circuit_alert_handler(
    dispatcher: WebhookDispatcher | None,
    persist: Callable[[ProviderHealth], None] | None = None,
) -> Callable[[ProviderHealth, BreakerState], None]:
    """Breaker callback that persists health and announces newly opened circuits."""

    def handle(health: ProviderHealth, old_state: BreakerState) -> None:
        if persist is not None:
            persist(health)
        if (
            dispatcher is not None
            and health.state == BreakerState.OPEN
            and old_state != BreakerState.OPEN
        ):
            dispatcher.notify(
                WebhookEventType.CIRCUIT_OPENED,
                {
                    "provider": health.provider_id,
                    "consecutive_failures": health.consecutive_failures,
                    "opened_at": health.opened_at,
                },
            )

    return handle
