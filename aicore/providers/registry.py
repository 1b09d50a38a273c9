"""Provider registry and breaker-aware fallback routing."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from math import ceil
from time import perf_counter, time

from aicore.core.errors import (
    AllProvidersUnavailable,
    AppError,
    InvalidInput,
    PolicyRejected,
    ProviderUnavailable,
    RequestTimeout,
)
from aicore.core.types import Operation
from aicore.limits.rate_limiter import BucketPolicy, TokenBucketRateLimiter
from aicore.metrics import inc_counter
from aicore.providers.base import (
    Provider,
    ProviderCall,
    ProviderCapabilities,
    ProviderError,
    ProviderResult,
)
from aicore.providers.circuit_breaker import (
    BreakerConfig,
    BreakerState,
    CircuitBreaker,
    ProviderHealth,
    TransitionCallback,
)

logger = logging.getLogger("aicore.providers")


@dataclass(frozen=True)
class ProviderCost:
    """Cost of one call in cents: a flat fee plus a per-1k-token rate."""

    per_call_cents: float = 0.0
    per_1k_tokens_cents: float = 0.0

    def cents_for(self, tokens: int) -> float:
        return round(self.per_call_cents + self.per_1k_tokens_cents * tokens / 1000.0, 6)


@dataclass
class ProviderEntry:
    """A registered provider with its cost metadata and priority."""

    name: str
    provider: Provider
    cost: ProviderCost = field(default_factory=ProviderCost)
    capabilities: ProviderCapabilities = field(default_factory=ProviderCapabilities)
    priority: int = 0
    enabled: bool = True
    timeout_s: float | None = None
    rate_policy: BucketPolicy | None = None


class ProviderRegistry:
    """Registry of providers ordered by priority (lower first)."""

    def __init__(self) -> None:
        self._providers: dict[str, ProviderEntry] = {}

    def register(self, entry: ProviderEntry) -> None:
        self._providers[entry.name] = entry
        logger.info(
            "provider_registered",
            extra={"provider": entry.name, "priority": entry.priority},
        )

    def get(self, name: str) -> ProviderEntry | None:
        return self._providers.get(name)

    def names(self) -> list[str]:
        return [entry.name for entry in self.list_providers(include_disabled=True)]

    def list_providers(self, include_disabled: bool = False) -> list[ProviderEntry]:
        return sorted(
            [e for e in self._providers.values() if include_disabled or e.enabled],
            key=lambda e: (e.priority, e.name),
        )

    def eligible_chain(self, operation: Operation, model: str) -> list[ProviderEntry]:
        return [
            entry
            for entry in self.list_providers()
            if entry.capabilities.supports(operation) and entry.capabilities.supports_model(model)
        ]

    def estimate_cents(self, operation: Operation, model: str, tokens: int) -> float:
        """Estimate with the first provider that would be tried."""
        chain = self.eligible_chain(operation, model)
        if not chain:
            return 0.0
        return chain[0].cost.cents_for(tokens)


@dataclass
class ProviderRoutingResult:
    """Result of a routing attempt including fallback history."""

    provider_name: str
    result: ProviderResult
    cost_cents: float
    fallback_chain: list[str]
    attempts: int


class ProviderRouter:
    """Tries providers in priority order behind per-provider circuit breakers.

    Providers whose breaker is open, or whose provider-side rate bucket is
    empty, are skipped.  Every call carries a timeout and a timeout counts as
    a breaker failure.  Retryable provider errors fall through to the next
    provider; non-retryable ones surface as ``InvalidInput`` or
    ``PolicyRejected``.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        breaker_config: BreakerConfig | None = None,
        rate_limiter: TokenBucketRateLimiter | None = None,
        default_timeout_s: float = 20.0,
        on_transition: TransitionCallback | None = None,
        initial_health: list[ProviderHealth] | None = None,
        clock: Callable[[], float] = time,
    ) -> None:
        self._registry = registry
        self._breaker_config = breaker_config or BreakerConfig()
        self._rate_limiter = rate_limiter
        self._default_timeout_s = default_timeout_s
        self._on_transition = on_transition
        self._clock = clock
        self._initial = {health.provider_id: health for health in initial_health or []}
        self._breakers: dict[str, CircuitBreaker] = {}

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    def breaker_for(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                provider_id=name,
                config=self._breaker_config,
                clock=self._clock,
                on_transition=self._on_transition,
                initial=self._initial.pop(name, None),
            )
            self._breakers[name] = breaker
        return breaker

    def health(self) -> list[ProviderHealth]:
        return [self.breaker_for(name).snapshot() for name in self._registry.names()]

    async def route(
        self, call: ProviderCall, timeout_s: float | None = None
    ) -> ProviderRoutingResult:
        chain = self._registry.eligible_chain(call.operation, call.model)
        if not chain:
            raise AllProvidersUnavailable(call.operation.value)

        attempts: list[str] = []
        skipped: list[str] = []
        last_error: AppError | None = None

        for entry in chain:
            breaker = self.breaker_for(entry.name)
            if not breaker.allow_request():
                skipped.append(entry.name)
                inc_counter("aic_provider_short_circuits_total", {"provider": entry.name})
                continue
            if not self._admit(entry, call.operation):
                breaker.release_trial()
                skipped.append(entry.name)
                continue

            attempts.append(entry.name)
            budget = entry.timeout_s or self._default_timeout_s
            if timeout_s is not None:
                budget = min(budget, timeout_s)
            started = perf_counter()
            try:
                result = await asyncio.wait_for(entry.provider.call(call), timeout=max(budget, 0.001))
            except TimeoutError:
                breaker.record_failure()
                last_error = RequestTimeout(
                    f"Provider {entry.name} timed out after {budget:.2f}s", provider=entry.name
                )
                self._log_fallback(entry.name, call, last_error, len(chain) - len(attempts))
                continue
            except ProviderError as exc:
                if not exc.retryable:
                    # The provider answered; the request itself is at fault.
                    breaker.record_success()
                    inc_counter(
                        "aic_provider_calls_total",
                        {"provider": entry.name, "outcome": "rejected"},
                    )
                    raise self._terminal_error(entry.name, exc) from exc
                breaker.record_failure()
                last_error = ProviderUnavailable(
                    f"Provider {entry.name} failed: {exc.message}", provider=entry.name
                )
                self._log_fallback(entry.name, call, last_error, len(chain) - len(attempts))
                continue
            except asyncio.CancelledError:
                breaker.release_trial()
                raise
            except Exception as exc:
                breaker.record_failure()
                logger.warning(
                    "provider_call_crashed",
                    exc_info=True,
                    extra={"provider": entry.name, "operation": call.operation.value},
                )
                last_error = ProviderUnavailable(
                    f"Provider {entry.name} failed: {type(exc).__name__}: {exc}",
                    provider=entry.name,
                )
                self._log_fallback(entry.name, call, last_error, len(chain) - len(attempts))
                continue

            breaker.record_success()
            latency_s = perf_counter() - started
            cost_cents = entry.cost.cents_for(result.total_tokens)
            inc_counter("aic_provider_calls_total", {"provider": entry.name, "outcome": "ok"})
            if len(attempts) > 1:
                inc_counter(
                    "aic_provider_fallbacks_total",
                    {"provider": entry.name},
                    float(len(attempts) - 1),
                )
            logger.info(
                "provider_routed",
                extra={
                    "provider": entry.name,
                    "operation": call.operation.value,
                    "attempt": len(attempts),
                    "latency_ms": round(latency_s * 1000, 3),
                    "cost_cents": cost_cents,
                },
            )
            return ProviderRoutingResult(
                provider_name=entry.name,
                result=result,
                cost_cents=cost_cents,
                fallback_chain=attempts,
                attempts=len(attempts),
            )

        if last_error is None:
            raise AllProvidersUnavailable(call.operation.value, skipped=skipped)
        raise last_error

    def _admit(self, entry: ProviderEntry, operation: Operation) -> bool:
        if self._rate_limiter is None or entry.rate_policy is None:
            return True
        key = TokenBucketRateLimiter.provider_key(entry.name, operation.value)
        admitted = self._rate_limiter.try_acquire(key, policy=entry.rate_policy)
        if not admitted:
            inc_counter("aic_provider_rate_limited_total", {"provider": entry.name})
        return admitted

    def _log_fallback(
        self, provider: str, call: ProviderCall, error: AppError, remaining: int
    ) -> None:
        inc_counter("aic_provider_calls_total", {"provider": provider, "outcome": error.code})
        logger.warning(
            "provider_fallback",
            extra={
                "provider": provider,
                "operation": call.operation.value,
                "error_code": error.code,
                "remaining": remaining,
            },
        )

    @staticmethod
    def _terminal_error(provider: str, exc: ProviderError) -> AppError:
        if exc.error_type == "policy" or exc.status_code in {403, 451}:
            return PolicyRejected(exc.message, provider=provider)
        return InvalidInput(f"Provider {provider} rejected the request: {exc.message}")

    def is_open(self, name: str) -> bool:
        return self.breaker_for(name).state == BreakerState.OPEN


def estimate_tokens(payload: object) -> int:
    """Rough token estimate: four characters per token."""
    return max(ceil(_text_length(payload) / 4), 1)


def _text_length(value: object) -> int:
    if isinstance(value, str):
        return len(value)
    if isinstance(value, dict):
        return sum(_text_length(item) for item in value.values())
    if isinstance(value, list | tuple):
        return sum(_text_length(item) for item in value)
    return 0
