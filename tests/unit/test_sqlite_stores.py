from pathlib import Path

from aicore.budget.tracker import Budget, CostTracker
from aicore.cache.response_cache import ResponseCache
from aicore.core.types import Operation
from aicore.limits.rate_limiter import RateBucket
from aicore.providers.circuit_breaker import BreakerState, ProviderHealth
from aicore.storage.sqlite import (
    SQLiteBucketStore,
    SQLiteBudgetStore,
    SQLiteCacheBackend,
    SQLiteEmbeddingStore,
    SQLiteProviderHealthStore,
)
from aicore.vectors.store import EmbeddingRecord


def test_budget_store_round_trip(tmp_path: Path) -> None:
    store = SQLiteBudgetStore(path=tmp_path / "state.db")
    budget = Budget(
        tenant_id="tenant-a",
        period="2026-03",
        limit_cents=500.0,
        spent_cents=12.5,
        alert_thresholds=(0.5, 1.0),
        last_alerted_threshold=0.5,
        daily_spent_cents={"2026-03-01": 12.5},
    )
    store.save_budget(budget)
    store.save_budget(budget)

    assert store.load_budget("tenant-a", "2026-03") == budget
    assert store.load_budget("tenant-a", "2026-04") is None


def test_budget_survives_tracker_restart(tmp_path: Path) -> None:
    path = tmp_path / "state.db"
    CostTracker(store=SQLiteBudgetStore(path=path), default_limit_cents=100.0).record(
        "tenant-a", 42.0
    )
    restarted = CostTracker(store=SQLiteBudgetStore(path=path), default_limit_cents=100.0)
    assert restarted.get_budget("tenant-a").spent_cents == 42.0


def test_cache_backend_with_response_cache(tmp_path: Path) -> None:
    backend = SQLiteCacheBackend(path=tmp_path / "state.db")
    cache = ResponseCache(backend=backend, clock=lambda: 1_000.0)
    cache.put("fp-1", Operation.MODERATE, {"flagged": False}, "stub", ttl_s=60.0)
    cache.put("fp-2", Operation.SUMMARIZE, {"summary": "x"}, "stub", ttl_s=60.0)

    entry = cache.get("fp-1")
    assert entry is not None
    assert entry.result == {"flagged": False}
    assert entry.hit_count == 1
    assert len(backend) == 2
    assert sorted(backend.keys()) == [("fp-1", Operation.MODERATE), ("fp-2", Operation.SUMMARIZE)]
    assert cache.invalidate("moderate:*") == 1
    assert backend.prune_expired(now=2_000.0) == 1
    assert len(backend) == 0


def test_bucket_store_round_trip(tmp_path: Path) -> None:
    store = SQLiteBucketStore(path=tmp_path / "state.db")
    store.save_bucket(RateBucket(key="tenant-a:embed", capacity=10, tokens=3.5, last_refill_at=7.0))
    bucket = store.load_bucket("tenant-a:embed")
    assert bucket == RateBucket(key="tenant-a:embed", capacity=10, tokens=3.5, last_refill_at=7.0)
    assert store.load_bucket("missing") is None


def test_provider_health_store_round_trip(tmp_path: Path) -> None:
    store = SQLiteProviderHealthStore(path=tmp_path / "state.db")
    health = ProviderHealth(
        provider_id="primary",
        state=BreakerState.OPEN,
        consecutive_failures=5,
        opened_at=10.0,
        last_failure_at=10.0,
    )
    store.save(health)
    store.save(health)
    assert store.load_all() == [health]


def test_embedding_store_is_write_once(tmp_path: Path) -> None:
    store = SQLiteEmbeddingStore(path=tmp_path / "state.db")
    record = EmbeddingRecord(
        content_hash="h1",
        vector=(0.6, 0.8),
        source_id="m1",
        created_at=5.0,
        metadata={"channel_id": "ops"},
    )
    duplicate = EmbeddingRecord(
        content_hash="h1", vector=(1.0, 0.0), source_id="m2", created_at=6.0
    )

    assert store.put_many([record]) == [record]
    assert store.put_many([duplicate]) == []
    assert store.get("h1") == record
    assert store.existing(["h1", "h2"]) == {"h1"}
    assert store.count() == 1
    assert store.all_records() == [record]
    assert store.delete("h1") is True
    assert store.delete("h1") is False
