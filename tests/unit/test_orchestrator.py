import asyncio
import sqlite3

import httpx
import pytest

from aicore.budget.tracker import Budget, BudgetBackendError, CostTracker, InMemoryBudgetStore
from aicore.cache.fingerprint import Fingerprinter
from aicore.cache.response_cache import CacheEntry, ResponseCache
from aicore.core.errors import (
    AllProvidersUnavailable,
    BudgetExceeded,
    InvalidInput,
    PermanentFailure,
    PolicyRejected,
    RateLimited,
    RequestCancelled,
    RequestNotFound,
)
from aicore.core.types import Priority, RequestState
from aicore.limits.rate_limiter import BucketPolicy, TokenBucketRateLimiter
from aicore.providers.base import Provider, ProviderCall, ProviderError, ProviderResult
from aicore.providers.registry import ProviderCost, ProviderEntry, ProviderRegistry, ProviderRouter
from aicore.providers.stub import StubProvider
from aicore.queue.worker_pool import RetryPolicy
from aicore.services.orchestrator import Orchestrator
from aicore.vectors.index import LSHIndex
from aicore.vectors.pipeline import IngestItem, VectorPipeline
from aicore.vectors.store import InMemoryEmbeddingStore
from aicore.webhooks.dispatcher import WebhookDispatcher, WebhookEndpoint

DIM = 16
TENANT = "tenant-a"


class _FlakyProvider:
    def __init__(self, failures: int) -> None:
        self.calls = 0
        self._failures = failures
        self._stub = StubProvider(embedding_dim=DIM)

    async def call(self, request: ProviderCall) -> ProviderResult:
        self.calls += 1
        if self.calls <= self._failures:
            raise ProviderError(status_code=503, code="busy", message="upstream busy")
        return await self._stub.call(request)


class _RecordingProvider:
    def __init__(self) -> None:
        self.seen: list[str] = []
        self._stub = StubProvider(embedding_dim=DIM)

    async def call(self, request: ProviderCall) -> ProviderResult:
        self.seen.append(str(request.payload.get("text")))
        return await self._stub.call(request)


def _orchestrator(
    provider: Provider | None = None,
    cost: ProviderCost | None = None,
    cost_tracker: CostTracker | None = None,
    rate_limiter: TokenBucketRateLimiter | None = None,
    retry_policy: RetryPolicy | None = None,
    dispatcher: WebhookDispatcher | None = None,
    cache: ResponseCache | None = None,
    worker_count: int = 2,
    with_vectors: bool = False,
    register: bool = True,
) -> Orchestrator:
    registry = ProviderRegistry()
    if register:
        registry.register(
            ProviderEntry(
                name="stub",
                provider=provider or StubProvider(embedding_dim=DIM),
                cost=cost or ProviderCost(),
            )
        )
    fingerprinter = Fingerprinter()
    vectors = (
        VectorPipeline(
            store=InMemoryEmbeddingStore(),
            index=LSHIndex(dim=DIM),
            fingerprinter=fingerprinter,
            model="default",
            flush_interval_s=0.01,
        )
        if with_vectors
        else None
    )
    return Orchestrator(
        router=ProviderRouter(registry),
        fingerprinter=fingerprinter,
        cache=cache,
        rate_limiter=rate_limiter,
        cost_tracker=cost_tracker,
        vectors=vectors,
        dispatcher=dispatcher,
        worker_count=worker_count,
        retry_policy=retry_policy or RetryPolicy(backoff_base_s=0.01, backoff_max_s=0.02),
    )


def test_identical_concurrent_requests_share_one_provider_call() -> None:
    provider = StubProvider(embedding_dim=DIM, delay_s=0.05)
    orchestrator = _orchestrator(provider=provider)

    async def scenario() -> list[object]:
        await orchestrator.start()
        try:
            request_ids = [
                await orchestrator.submit(
                    "sentiment", {"text": "great launch"}, tenant_id=TENANT, user_id=f"u{index}"
                )
                for index in range(100)
            ]
            return list(
                await asyncio.gather(*(orchestrator.await_result(rid) for rid in request_ids))
            )
        finally:
            await orchestrator.stop()

    results = asyncio.run(scenario())
    assert provider.calls == 1
    assert sum(1 for result in results if not result.cached) == 1  # type: ignore[attr-defined]
    assert len({str(result.output) for result in results}) == 1  # type: ignore[attr-defined]
    stats = orchestrator.cache_stats()
    assert stats["misses"] == 1
    assert stats["hits"] == 99
    assert stats["shared"] == 99


def test_completed_result_is_served_from_cache() -> None:
    provider = StubProvider(embedding_dim=DIM)
    orchestrator = _orchestrator(provider=provider)

    async def scenario() -> tuple[bool, bool, str]:
        await orchestrator.start()
        try:
            first = await orchestrator.submit(
                "summarize", {"messages": [{"content": "ship it"}]}, tenant_id=TENANT
            )
            first_result = await orchestrator.await_result(first)
            second = await orchestrator.submit(
                "summarize", {"messages": [{"content": "  ship   it "}]}, tenant_id=TENANT
            )
            status = orchestrator.status(second)["status"]
            second_result = await orchestrator.await_result(second)
            return first_result.cached, second_result.cached, str(status)
        finally:
            await orchestrator.stop()

    assert asyncio.run(scenario()) == (False, True, "succeeded")
    assert provider.calls == 1


def test_budget_denies_request_that_would_exceed_limit() -> None:
    tracker = CostTracker(default_limit_cents=100.0)
    orchestrator = _orchestrator(cost=ProviderCost(per_call_cents=60.0), cost_tracker=tracker)

    async def scenario() -> float:
        await orchestrator.start()
        try:
            first = await orchestrator.submit("moderate", {"text": "hello"}, tenant_id=TENANT)
            result = await orchestrator.await_result(first)
            assert result.cost_cents == 60.0
            with pytest.raises(BudgetExceeded):
                await orchestrator.submit("moderate", {"text": "goodbye"}, tenant_id=TENANT)
            return result.cost_cents
        finally:
            await orchestrator.stop()

    asyncio.run(scenario())
    budget = orchestrator.get_budget(TENANT)
    assert budget["spent_cents"] == 60.0
    assert budget["reserved_cents"] == 0.0


def test_rate_limited_submit_releases_its_reservation() -> None:
    limiter = TokenBucketRateLimiter(
        default_policy=BucketPolicy(capacity=1, refill_per_second=0.0)
    )
    tracker = CostTracker()
    orchestrator = _orchestrator(
        cost=ProviderCost(per_call_cents=5.0), rate_limiter=limiter, cost_tracker=tracker
    )

    async def scenario() -> None:
        await orchestrator.submit("moderate", {"text": "one"}, tenant_id=TENANT)
        with pytest.raises(RateLimited):
            await orchestrator.submit("moderate", {"text": "two"}, tenant_id=TENANT)
        assert tracker.reserved_cents(TENANT) == 5.0

    asyncio.run(scenario())


def test_cancel_queued_request_returns_reservation_and_token() -> None:
    limiter = TokenBucketRateLimiter(
        default_policy=BucketPolicy(capacity=1, refill_per_second=0.0)
    )
    tracker = CostTracker()
    orchestrator = _orchestrator(
        cost=ProviderCost(per_call_cents=5.0), rate_limiter=limiter, cost_tracker=tracker
    )

    async def scenario() -> None:
        request_id = await orchestrator.submit("moderate", {"text": "x"}, tenant_id=TENANT)
        assert orchestrator.cancel(request_id) is True
        assert orchestrator.cancel(request_id) is False
        assert orchestrator.status(request_id)["status"] == "cancelled"
        with pytest.raises(RequestCancelled):
            await orchestrator.await_result(request_id)
        assert len(orchestrator.queue) == 0
        assert tracker.reserved_cents(TENANT) == 0.0
        # The refunded token admits the next request.
        await orchestrator.submit("moderate", {"text": "y"}, tenant_id=TENANT)

    asyncio.run(scenario())


def test_cancelled_follower_does_not_affect_leader() -> None:
    provider = StubProvider(embedding_dim=DIM)
    orchestrator = _orchestrator(provider=provider)

    async def scenario() -> None:
        leader = await orchestrator.submit("sentiment", {"text": "nice"}, tenant_id=TENANT)
        follower = await orchestrator.submit("sentiment", {"text": "nice"}, tenant_id=TENANT)
        assert orchestrator.cancel(follower) is True
        await orchestrator.start()
        try:
            result = await orchestrator.await_result(leader)
            assert result.output["sentiment"] == "positive"
            with pytest.raises(RequestCancelled):
                await orchestrator.await_result(follower)
        finally:
            await orchestrator.stop()

    asyncio.run(scenario())
    assert provider.calls == 1


def test_cancelled_leader_still_serves_its_followers() -> None:
    provider = StubProvider(embedding_dim=DIM)
    orchestrator = _orchestrator(provider=provider)

    async def scenario() -> None:
        leader = await orchestrator.submit("sentiment", {"text": "nice"}, tenant_id=TENANT)
        follower = await orchestrator.submit("sentiment", {"text": "nice"}, tenant_id=TENANT)
        assert orchestrator.cancel(leader) is True
        await orchestrator.start()
        try:
            result = await orchestrator.await_result(follower)
            assert result.cached is True
            with pytest.raises(RequestCancelled):
                await orchestrator.await_result(leader)
        finally:
            await orchestrator.stop()

    asyncio.run(scenario())
    assert provider.calls == 1


def test_retryable_failures_are_retried_until_success() -> None:
    provider = _FlakyProvider(failures=2)
    orchestrator = _orchestrator(provider=provider)

    async def scenario() -> int:
        await orchestrator.start()
        try:
            request_id = await orchestrator.submit("moderate", {"text": "x"}, tenant_id=TENANT)
            result = await orchestrator.await_result(request_id, timeout_s=5.0)
            return result.attempts
        finally:
            await orchestrator.stop()

    assert asyncio.run(scenario()) == 3
    assert provider.calls == 3


def test_exhausted_retries_fail_permanently_and_release_budget() -> None:
    tracker = CostTracker()
    orchestrator = _orchestrator(
        cost=ProviderCost(per_call_cents=1.0),
        cost_tracker=tracker,
        retry_policy=RetryPolicy(max_attempts=2, backoff_base_s=0.01, backoff_max_s=0.01),
    )

    async def scenario() -> PermanentFailure:
        await orchestrator.start()
        try:
            request_id = await orchestrator.submit(
                "moderate", {"text": "x"}, tenant_id=TENANT, params={"model": "error-502"}
            )
            with pytest.raises(PermanentFailure) as exc_info:
                await orchestrator.await_result(request_id, timeout_s=5.0)
            assert orchestrator.status(request_id)["status"] == "failed"
            return exc_info.value
        finally:
            await orchestrator.stop()

    error = asyncio.run(scenario())
    assert [record.attempt for record in error.history] == [1, 2]
    assert tracker.reserved_cents(TENANT) == 0.0
    assert tracker.get_budget(TENANT).spent_cents == 0.0


def test_policy_rejection_is_not_retried() -> None:
    provider = StubProvider(embedding_dim=DIM)
    orchestrator = _orchestrator(provider=provider)

    async def scenario() -> None:
        await orchestrator.start()
        try:
            request_id = await orchestrator.submit(
                "moderate", {"text": "x"}, tenant_id=TENANT, params={"model": "error-policy"}
            )
            with pytest.raises(PolicyRejected):
                await orchestrator.await_result(request_id, timeout_s=5.0)
        finally:
            await orchestrator.stop()

    asyncio.run(scenario())
    assert provider.calls == 1


def test_no_provider_available_is_terminal() -> None:
    orchestrator = _orchestrator(register=False)

    async def scenario() -> None:
        await orchestrator.start()
        try:
            request_id = await orchestrator.submit("embed", {"texts": ["a"]}, tenant_id=TENANT)
            with pytest.raises(AllProvidersUnavailable):
                await orchestrator.await_result(request_id, timeout_s=5.0)
        finally:
            await orchestrator.stop()

    asyncio.run(scenario())


def test_request_deadline_bounds_provider_timeouts() -> None:
    orchestrator = _orchestrator()

    async def scenario() -> None:
        await orchestrator.start()
        try:
            request_id = await orchestrator.submit(
                "moderate",
                {"text": "x"},
                tenant_id=TENANT,
                params={"model": "error-timeout"},
                timeout_s=0.1,
            )
            with pytest.raises(PermanentFailure):
                await orchestrator.await_result(request_id, timeout_s=5.0)
        finally:
            await orchestrator.stop()

    asyncio.run(scenario())


def test_higher_priority_is_served_first() -> None:
    provider = _RecordingProvider()
    orchestrator = _orchestrator(provider=provider, worker_count=1)

    async def scenario() -> None:
        low = await orchestrator.submit(
            "moderate", {"text": "low"}, priority="low", tenant_id=TENANT
        )
        critical = await orchestrator.submit(
            "moderate", {"text": "critical"}, priority=Priority.CRITICAL, tenant_id=TENANT
        )
        normal = await orchestrator.submit("moderate", {"text": "normal"}, tenant_id=TENANT)
        await orchestrator.start()
        try:
            for request_id in (low, critical, normal):
                await orchestrator.await_result(request_id, timeout_s=5.0)
        finally:
            await orchestrator.stop()

    asyncio.run(scenario())
    assert provider.seen == ["critical", "normal", "low"]


def test_submit_rejects_invalid_requests() -> None:
    orchestrator = _orchestrator()

    async def scenario() -> None:
        with pytest.raises(InvalidInput):
            await orchestrator.submit("translate", {"text": "x"}, tenant_id=TENANT)
        with pytest.raises(InvalidInput):
            await orchestrator.submit("moderate", {}, tenant_id=TENANT)
        with pytest.raises(InvalidInput):
            await orchestrator.submit("moderate", {"text": "x"}, priority="urgent", tenant_id=TENANT)
        with pytest.raises(InvalidInput):
            await orchestrator.submit("moderate", {"text": "x"}, tenant_id="")

    asyncio.run(scenario())
    with pytest.raises(RequestNotFound):
        orchestrator.status("req-missing")


def test_wait_returns_current_state_without_raising() -> None:
    orchestrator = _orchestrator()

    async def scenario() -> tuple[RequestState, RequestState]:
        request_id = await orchestrator.submit("moderate", {"text": "x"}, tenant_id=TENANT)
        queued = await orchestrator.wait(request_id, 0.01)
        orchestrator.cancel(request_id)
        return queued, await orchestrator.wait(request_id, 1.0)

    assert asyncio.run(scenario()) == (RequestState.QUEUED, RequestState.CANCELLED)


def test_admin_operations() -> None:
    orchestrator = _orchestrator()

    async def scenario() -> None:
        await orchestrator.start()
        try:
            request_id = await orchestrator.submit("moderate", {"text": "x"}, tenant_id=TENANT)
            await orchestrator.await_result(request_id)
        finally:
            await orchestrator.stop()

    asyncio.run(scenario())
    assert orchestrator.set_budget(TENANT, 250.0)["limit_cents"] == 250.0
    assert orchestrator.get_budget(TENANT)["limit_cents"] == 250.0
    with pytest.raises(InvalidInput):
        orchestrator.set_budget(TENANT, -5.0)
    assert orchestrator.invalidate_cache("moderate:*") == 1
    assert orchestrator.cache_stats()["size"] == 0
    assert [health.provider_id for health in orchestrator.get_provider_health()] == ["stub"]
    stats = orchestrator.stats()
    assert stats["tracked_requests"] == 1
    assert stats["queue"]["depth"] == 0  # type: ignore[index]


def test_ingest_and_search_through_embed_requests() -> None:
    provider = StubProvider(embedding_dim=DIM)
    orchestrator = _orchestrator(provider=provider, with_vectors=True)

    async def scenario() -> list[str]:
        await orchestrator.start()
        try:
            report = await orchestrator.ingest_content(
                TENANT,
                [
                    IngestItem(text="payment service outage", source_id="m1"),
                    IngestItem(text="team offsite agenda", source_id="m2"),
                    IngestItem(text="payment service outage", source_id="m3"),
                ],
            )
            assert report.generated == 2
            assert report.deduplicated == 1
            assert orchestrator.vectors is not None
            await orchestrator.vectors.flush()
            again = await orchestrator.ingest_content(
                TENANT, [IngestItem(text="team offsite agenda", source_id="m4")]
            )
            assert again.generated == 0
            hits = await orchestrator.search(TENANT, query_text="payment service outage", k=1)
            return [hit.source_id for hit in hits]
        finally:
            await orchestrator.stop()

    assert asyncio.run(scenario()) == ["m1"]
    assert provider.calls == 2


def test_search_requires_vector_pipeline_and_query() -> None:
    orchestrator = _orchestrator()

    async def scenario() -> None:
        with pytest.raises(InvalidInput):
            await orchestrator.search(TENANT, query_text="x")

    asyncio.run(scenario())
    with_vectors = _orchestrator(with_vectors=True)

    async def missing_query() -> None:
        with pytest.raises(InvalidInput):
            await with_vectors.search(TENANT, query_text="   ")

    asyncio.run(missing_query())


def test_budget_alert_is_sent_as_webhook() -> None:
    events: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        events.append(request.read().decode())
        return httpx.Response(200)

    dispatcher = WebhookDispatcher(
        endpoints=[WebhookEndpoint(url="https://hooks.example.test/aic")],
        transport=httpx.MockTransport(handler),
    )
    orchestrator = _orchestrator(
        cost=ProviderCost(per_call_cents=85.0),
        cost_tracker=CostTracker(default_limit_cents=100.0),
        dispatcher=dispatcher,
    )

    async def scenario() -> None:
        await orchestrator.start()
        try:
            request_id = await orchestrator.submit("moderate", {"text": "x"}, tenant_id=TENANT)
            await orchestrator.await_result(request_id)
        finally:
            await orchestrator.stop()

    asyncio.run(scenario())
    assert len(events) == 1
    assert '"event_type":"budget_warning"' in events[0]


class _FailingBudgetStore(InMemoryBudgetStore):
    def save_budget(self, budget: Budget) -> None:
        raise BudgetBackendError("Redis write failed")


class _ReadOnlyCacheBackend:
    def get(self, fingerprint: str) -> CacheEntry | None:
        return None

    def put(self, entry: CacheEntry) -> None:
        raise sqlite3.OperationalError("attempt to write a readonly database")

    def delete(self, fingerprint: str) -> bool:
        return False

    def keys(self) -> list[tuple[str, object]]:
        return []

    def prune_expired(self, now: float) -> int:
        return 0

    def __len__(self) -> int:
        return 0


def test_failed_spend_commit_fails_the_flight_without_caching_or_losing_workers() -> None:
    tracker = CostTracker(store=_FailingBudgetStore())
    orchestrator = _orchestrator(
        cost=ProviderCost(per_call_cents=1.0), cost_tracker=tracker, worker_count=1
    )

    async def scenario() -> None:
        await orchestrator.start()
        try:
            leader = await orchestrator.submit("moderate", {"text": "x"}, tenant_id=TENANT)
            follower = await orchestrator.submit("moderate", {"text": "x"}, tenant_id=TENANT)
            for request_id in (leader, follower):
                with pytest.raises(PermanentFailure):
                    await orchestrator.await_result(request_id, timeout_s=5.0)
            assert orchestrator.running is True
            assert orchestrator.cache_stats()["size"] == 0
            assert orchestrator.cache_stats()["in_flight"] == 0
            assert tracker.reserved_cents(TENANT) == 0.0

            again = await orchestrator.submit("moderate", {"text": "y"}, tenant_id=TENANT)
            with pytest.raises(PermanentFailure):
                await orchestrator.await_result(again, timeout_s=5.0)
        finally:
            await orchestrator.stop()

    asyncio.run(scenario())


def test_cache_write_failure_still_delivers_result_and_records_spend() -> None:
    tracker = CostTracker()
    orchestrator = _orchestrator(
        cost=ProviderCost(per_call_cents=2.0),
        cost_tracker=tracker,
        cache=ResponseCache(backend=_ReadOnlyCacheBackend()),
    )

    async def scenario() -> object:
        await orchestrator.start()
        try:
            request_id = await orchestrator.submit("sentiment", {"text": "great"}, tenant_id=TENANT)
            return await orchestrator.await_result(request_id, timeout_s=5.0)
        finally:
            await orchestrator.stop()

    result = asyncio.run(scenario())
    assert result.output["sentiment"] == "positive"
    assert tracker.get_budget(TENANT).spent_cents == 2.0


def test_request_still_queued_at_its_deadline_fails_and_returns_admission() -> None:
    provider = StubProvider(embedding_dim=DIM, delay_s=0.5)
    limiter = TokenBucketRateLimiter(
        default_policy=BucketPolicy(capacity=2, refill_per_second=0.0)
    )
    tracker = CostTracker()
    orchestrator = _orchestrator(
        provider=provider,
        cost=ProviderCost(per_call_cents=5.0),
        cost_tracker=tracker,
        rate_limiter=limiter,
        worker_count=1,
    )

    async def scenario() -> None:
        await orchestrator.start()
        try:
            busy = await orchestrator.submit("moderate", {"text": "busy"}, tenant_id=TENANT)
            await asyncio.sleep(0.05)
            late = await orchestrator.submit(
                "moderate", {"text": "late"}, tenant_id=TENANT, timeout_s=0.1
            )
            follower = await orchestrator.submit("moderate", {"text": "late"}, tenant_id=TENANT)

            loop = asyncio.get_running_loop()
            started = loop.time()
            with pytest.raises(PermanentFailure) as exc_info:
                await orchestrator.await_result(late, timeout_s=2.0)
            assert loop.time() - started < 0.4
            assert "deadline" in exc_info.value.message
            with pytest.raises(PermanentFailure):
                await orchestrator.await_result(follower, timeout_s=2.0)

            assert orchestrator.status(late)["status"] == "failed"
            assert len(orchestrator.queue) == 0
            assert tracker.reserved_cents(TENANT) == 5.0
            assert provider.calls == 1
            # The expired request's rate token was refunded.
            await orchestrator.submit("moderate", {"text": "after"}, tenant_id=TENANT)
            await orchestrator.await_result(busy, timeout_s=2.0)
        finally:
            await orchestrator.stop()

    asyncio.run(scenario())


def test_follower_past_its_own_deadline_is_detached_from_the_leader() -> None:
    provider = StubProvider(embedding_dim=DIM, delay_s=0.3)
    orchestrator = _orchestrator(provider=provider)

    async def scenario() -> None:
        await orchestrator.start()
        try:
            leader = await orchestrator.submit("sentiment", {"text": "nice"}, tenant_id=TENANT)
            follower = await orchestrator.submit(
                "sentiment", {"text": "nice"}, tenant_id=TENANT, timeout_s=0.05
            )
            with pytest.raises(PermanentFailure):
                await orchestrator.await_result(follower, timeout_s=2.0)
            result = await orchestrator.await_result(leader, timeout_s=2.0)
            assert result.output["sentiment"] == "positive"
        finally:
            await orchestrator.stop()

    asyncio.run(scenario())
    assert provider.calls == 1
