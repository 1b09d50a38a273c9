"""Token-bucket admission control.

Buckets are keyed by ``tenant:operation`` for request admission and by
``provider:<name>:<operation>`` for provider-side limits.  Refill is lazy:
tokens are recomputed from elapsed time whenever a key is checked, so there
is no ticking thread.  Buckets left idle for ``idle_evict_s`` that have
refilled to capacity are dropped, since a fresh bucket is indistinguishable
from a full one.

Each key has its own lock (``KeyedLocks``); unrelated tenants never contend.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from time import time
from typing import Protocol

from aicore.core.errors import RateLimited
from aicore.core.locks import KeyedLocks
from aicore.metrics import inc_counter

logger = logging.getLogger("aicore.ratelimit")

PLAN_TIER_MULTIPLIERS: dict[str, float] = {
    "guest": 0.5,
    "member": 1.0,
    "premium": 2.0,
    "enterprise": 5.0,
    "admin": 10.0,
    "internal": 100.0,
}


@dataclass(frozen=True)
class BucketPolicy:
    capacity: float
    refill_per_second: float

    def scaled(self, multiplier: float) -> "BucketPolicy":
        return BucketPolicy(
            capacity=self.capacity * multiplier,
            refill_per_second=self.refill_per_second * multiplier,
        )


@dataclass
class RateBucket:
    key: str
    capacity: float
    tokens: float
    last_refill_at: float
    refill_per_second: float = 0.0

    def refill(self, now: float, refill_per_second: float) -> None:
        elapsed = max(now - self.last_refill_at, 0.0)
        self.tokens = min(self.capacity, self.tokens + elapsed * refill_per_second)
        self.last_refill_at = now
        self.refill_per_second = refill_per_second

    def full_by(self, now: float) -> bool:
        elapsed = max(now - self.last_refill_at, 0.0)
        return self.tokens + elapsed * self.refill_per_second >= self.capacity


class BucketStore(Protocol):
    def load_bucket(self, key: str) -> RateBucket | None:
        """Return the persisted bucket for *key*, if any."""

    def save_bucket(self, bucket: RateBucket) -> None:
        """Persist bucket state after a mutation."""


class TokenBucketRateLimiter:
    """Per-key token buckets with plan-tier scaling.

    Parameters
    ----------
    default_policy : BucketPolicy
        Policy for operations without an explicit entry.
    operation_policies : dict, optional
        Per-operation base policies, before tier scaling.
    tenant_tiers : dict, optional
        Maps tenant id to plan tier name (see ``PLAN_TIER_MULTIPLIERS``).
    store : BucketStore, optional
        Durable bucket state; written on every mutation.
    idle_evict_s : float
        Idle time after which a refilled bucket is dropped from memory.
    """

    def __init__(
        self,
        default_policy: BucketPolicy | None = None,
        operation_policies: dict[str, BucketPolicy] | None = None,
        tenant_tiers: dict[str, str] | None = None,
        store: BucketStore | None = None,
        idle_evict_s: float = 600.0,
        clock: Callable[[], float] = time,
    ) -> None:
        self._default_policy = default_policy or BucketPolicy(capacity=60.0, refill_per_second=1.0)
        self._operation_policies = dict(operation_policies) if operation_policies else {}
        self._tenant_tiers = dict(tenant_tiers) if tenant_tiers else {}
        self._store = store
        self._clock = clock
        self._buckets: dict[str, RateBucket] = {}
        self._locks = KeyedLocks()
        self._idle_evict_s = idle_evict_s
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._buckets)

    @staticmethod
    def admission_key(tenant_id: str, operation: str) -> str:
        return f"{tenant_id}:{operation}"

    @staticmethod
    def provider_key(provider: str, operation: str) -> str:
        return f"provider:{provider}:{operation}"

    def tier_for(self, tenant_id: str) -> str:
        return self._tenant_tiers.get(tenant_id, "member")

    def policy_for(self, tenant_id: str, operation: str) -> BucketPolicy:
        base = self._operation_policies.get(operation, self._default_policy)
        multiplier = PLAN_TIER_MULTIPLIERS.get(self.tier_for(tenant_id), 1.0)
        return base.scaled(multiplier)

    def try_acquire(self, key: str, cost: float = 1.0, policy: BucketPolicy | None = None) -> bool:
        allowed, _ = self._take(key, cost, policy or self._default_policy)
        return allowed

    def acquire(self, key: str, cost: float = 1.0, policy: BucketPolicy | None = None) -> None:
        """Take *cost* tokens or raise ``RateLimited`` with a retry-after hint."""
        allowed, retry_after = self._take(key, cost, policy or self._default_policy)
        if not allowed:
            inc_counter("aic_rate_limited_total", {"scope": key.split(":", 1)[0]})
            logger.info(
                "rate_limited",
                extra={"bucket": key, "retry_after_s": round(retry_after, 3)},
            )
            raise RateLimited(key=key, retry_after_s=retry_after)

    def acquire_for(self, tenant_id: str, operation: str, cost: float = 1.0) -> None:
        self.acquire(
            self.admission_key(tenant_id, operation),
            cost=cost,
            policy=self.policy_for(tenant_id, operation),
        )

    def refund(self, key: str, cost: float = 1.0) -> None:
        """Return tokens taken for work that was never executed."""
        with self._locks.hold(key):
            bucket = self._buckets.get(key)
            if bucket is None:
                return
            bucket.tokens = min(bucket.capacity, bucket.tokens + cost)
            self._persist(bucket)

    def snapshot(self, key: str) -> RateBucket | None:
        bucket = self._buckets.get(key)
        if bucket is None:
            return None
        return RateBucket(
            key=bucket.key,
            capacity=bucket.capacity,
            tokens=bucket.tokens,
            last_refill_at=bucket.last_refill_at,
            refill_per_second=bucket.refill_per_second,
        )

    def evict_idle(self, now: float | None = None) -> int:
        """Drop buckets idle for at least ``idle_evict_s`` that are back at capacity."""
        now = self._clock() if now is None else now
        self._last_sweep = now
        evicted = 0
        for key in list(self._buckets):
            with self._locks.hold(key):
                bucket = self._buckets.get(key)
                if bucket is None or now - bucket.last_refill_at < self._idle_evict_s:
                    continue
                if bucket.full_by(now):
                    del self._buckets[key]
                    evicted += 1
        if evicted:
            logger.debug("rate_buckets_evicted", extra={"evicted": evicted})
        return evicted

    def _take(self, key: str, cost: float, policy: BucketPolicy) -> tuple[bool, float]:
        if cost > policy.capacity:
            return False, float("inf")
        outcome = self._take_locked(key, cost, policy)
        if self._clock() - self._last_sweep >= self._idle_evict_s:
            self.evict_idle()
        return outcome

    def _take_locked(self, key: str, cost: float, policy: BucketPolicy) -> tuple[bool, float]:
        with self._locks.hold(key):
            now = self._clock()
            bucket = self._load(key, policy, now)
            bucket.refill(now, policy.refill_per_second)
            if bucket.tokens >= cost:
                bucket.tokens -= cost
                self._persist(bucket)
                return True, 0.0
            self._persist(bucket)
            deficit = cost - bucket.tokens
            if policy.refill_per_second <= 0:
                return False, float("inf")
            return False, deficit / policy.refill_per_second

    def _load(self, key: str, policy: BucketPolicy, now: float) -> RateBucket:
        bucket = self._buckets.get(key)
        if bucket is None and self._store is not None:
            bucket = self._store.load_bucket(key)
        if bucket is None:
            bucket = RateBucket(
                key=key, capacity=policy.capacity, tokens=policy.capacity, last_refill_at=now
            )
        if bucket.capacity != policy.capacity:
            bucket.capacity = policy.capacity
            bucket.tokens = min(bucket.tokens, policy.capacity)
        self._buckets[key] = bucket
        return bucket

    def _persist(self, bucket: RateBucket) -> None:
        if self._store is not None:
            self._store.save_bucket(bucket)
