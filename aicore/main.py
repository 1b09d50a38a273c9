import json as json_mod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from aicore.api.routes import router
from aicore.budget.tracker import (
    BudgetMode,
    BudgetStore,
    CostTracker,
    InMemoryBudgetStore,
    RedisBudgetStore,
)
from aicore.cache.fingerprint import Fingerprinter
from aicore.cache.response_cache import CacheBackend, InMemoryCacheBackend, ResponseCache
from aicore.config.settings import Settings, get_settings
from aicore.core.errors import (
    AppError,
    app_error_response,
    error_response_for,
    request_id_from_request,
)
from aicore.core.logging import configure_logging
from aicore.core.types import Operation
from aicore.limits.rate_limiter import BucketPolicy, BucketStore, TokenBucketRateLimiter
from aicore.metrics import metrics_router
from aicore.middleware.auth import AuthMiddleware
from aicore.middleware.request_id import RequestIDMiddleware
from aicore.providers.base import Provider, ProviderCapabilities
from aicore.providers.circuit_breaker import BreakerConfig, ProviderHealth
from aicore.providers.http_openai import HTTPOpenAIProvider
from aicore.providers.registry import ProviderCost, ProviderEntry, ProviderRegistry, ProviderRouter
from aicore.providers.stub import StubProvider
from aicore.queue.priority_queue import PriorityWorkQueue
from aicore.queue.worker_pool import RetryPolicy
from aicore.services.orchestrator import Orchestrator, circuit_alert_handler
from aicore.storage.sqlite import (
    SQLiteBucketStore,
    SQLiteBudgetStore,
    SQLiteCacheBackend,
    SQLiteEmbeddingStore,
    SQLiteProviderHealthStore,
)
from aicore.vectors.index import LSHIndex
from aicore.vectors.pipeline import VectorPipeline
from aicore.vectors.store import EmbeddingStore, InMemoryEmbeddingStore, PgvectorEmbeddingStore
from aicore.webhooks.dispatcher import WebhookDispatcher, parse_endpoints


def _parse_operations(raw: object) -> frozenset[Operation]:
    if not isinstance(raw, list) or not raw:
        return frozenset(Operation)
    return frozenset(Operation(str(item).strip().lower()) for item in raw)


def _build_provider_registry(settings: Settings) -> ProviderRegistry:
    registry = ProviderRegistry()
    provider_limits = settings.provider_rate_limit_map

    def rate_policy(name: str) -> BucketPolicy | None:
        limit = provider_limits.get(name.lower())
        if limit is None:
            return None
        return BucketPolicy(capacity=limit[0], refill_per_second=limit[1])

    if settings.stub_provider_enabled:
        registry.register(
            ProviderEntry(
                name="stub",
                provider=StubProvider(embedding_dim=settings.vector_dim),
                cost=ProviderCost(per_call_cents=0.01, per_1k_tokens_cents=0.1),
                priority=100,
                rate_policy=rate_policy("stub"),
            )
        )

    if settings.provider_config:
        for entry in json_mod.loads(settings.provider_config):
            provider_type = str(entry.get("type", "openai_compatible")).strip().lower()
            provider: Provider
            if provider_type in {"openai_compatible", "openai"}:
                provider = HTTPOpenAIProvider(
                    base_url=entry["base_url"],
                    api_key=entry["api_key"],
                    timeout_s=entry.get("timeout_s", settings.provider_timeout_s),
                )
            elif provider_type == "stub":
                provider = StubProvider(embedding_dim=settings.vector_dim)
            else:
                raise RuntimeError(
                    f"Unsupported provider type in AIC_PROVIDER_CONFIG: {provider_type}"
                )
            cost_cfg = entry.get("cost", {})
            registry.register(
                ProviderEntry(
                    name=entry["name"],
                    provider=provider,
                    cost=ProviderCost(
                        per_call_cents=float(cost_cfg.get("per_call_cents", 0.0)),
                        per_1k_tokens_cents=float(cost_cfg.get("per_1k_tokens_cents", 0.0)),
                    ),
                    capabilities=ProviderCapabilities(
                        operations=_parse_operations(entry.get("operations")),
                        model_prefixes=tuple(
                            str(item) for item in entry.get("model_prefixes", [])
                        ),
                    ),
                    priority=entry.get("priority", 50),
                    enabled=entry.get("enabled", True),
                    timeout_s=entry.get("timeout_s"),
                    rate_policy=rate_policy(entry["name"]),
                )
            )

    return registry


def _build_cost_tracker(settings: Settings) -> CostTracker:
    store: BudgetStore
    backend = settings.budget_backend_normalized
    if backend == "redis":
        if not settings.budget_redis_url:
            raise RuntimeError("AIC_BUDGET_REDIS_URL is required when budget_backend=redis")
        store = RedisBudgetStore(
            redis_url=settings.budget_redis_url, key_prefix=settings.budget_redis_prefix
        )
    elif backend == "sqlite":
        store = SQLiteBudgetStore(path=settings.state_sqlite_path)
    elif backend == "memory":
        store = InMemoryBudgetStore()
    else:
        raise RuntimeError(f"Unsupported AIC_BUDGET_BACKEND value: {backend}")
    try:
        mode = BudgetMode(settings.budget_mode_normalized)
    except ValueError as exc:
        raise RuntimeError(f"Unsupported AIC_BUDGET_MODE value: {settings.budget_mode}") from exc
    return CostTracker(
        store=store,
        default_limit_cents=settings.budget_default_limit_cents,
        tenant_limits=settings.budget_tenant_limit_map,
        alert_thresholds=settings.budget_alert_threshold_list or (0.8, 1.0),
        mode=mode,
    )


def _build_vector_store(settings: Settings) -> EmbeddingStore:
    backend = settings.vector_backend_normalized
    if backend == "memory":
        return InMemoryEmbeddingStore()
    if backend == "sqlite":
        return SQLiteEmbeddingStore(path=settings.state_sqlite_path)
    if backend == "postgres":
        if not settings.vector_postgres_dsn:
            raise RuntimeError("AIC_VECTOR_POSTGRES_DSN is required when vector_backend=postgres")
        store = PgvectorEmbeddingStore(
            dsn=settings.vector_postgres_dsn,
            table=settings.vector_postgres_table,
            embedding_dim=settings.vector_dim,
        )
        store.ensure_schema()
        return store
    raise RuntimeError(f"Unsupported AIC_VECTOR_BACKEND value: {backend}")


def build_orchestrator(settings: Settings) -> Orchestrator:
    durable = settings.state_backend_normalized
    if durable not in {"memory", "sqlite"}:
        raise RuntimeError(f"Unsupported AIC_STATE_BACKEND value: {durable}")
    use_sqlite = durable == "sqlite"

    dispatcher = (
        WebhookDispatcher(
            endpoints=parse_endpoints(settings.webhook_endpoints),
            timeout_s=settings.webhook_timeout_s,
            max_retries=settings.webhook_max_retries,
            backoff_base_s=settings.webhook_backoff_base_s,
            backoff_max_s=settings.webhook_backoff_max_s,
        )
        if settings.webhook_enabled
        else None
    )

    cache_backend: CacheBackend = (
        SQLiteCacheBackend(path=settings.state_sqlite_path)
        if use_sqlite
        else InMemoryCacheBackend(max_entries=settings.cache_max_entries)
    )
    bucket_store: BucketStore | None = (
        SQLiteBucketStore(path=settings.state_sqlite_path) if use_sqlite else None
    )
    health_store = SQLiteProviderHealthStore(path=settings.state_sqlite_path) if use_sqlite else None
    initial_health: list[ProviderHealth] = health_store.load_all() if health_store else []

    rate_limiter = TokenBucketRateLimiter(
        default_policy=BucketPolicy(
            capacity=settings.rate_default_capacity,
            refill_per_second=settings.rate_default_refill_per_s,
        ),
        operation_policies={
            name: BucketPolicy(capacity=capacity, refill_per_second=refill)
            for name, (capacity, refill) in settings.rate_operation_limit_map.items()
        },
        tenant_tiers=settings.rate_tenant_tier_map,
        store=bucket_store,
    )
    router = ProviderRouter(
        registry=_build_provider_registry(settings),
        breaker_config=BreakerConfig(
            failure_threshold=settings.breaker_failure_threshold,
            failure_window_s=settings.breaker_failure_window_s,
            cooldown_s=settings.breaker_cooldown_s,
            success_threshold=settings.breaker_success_threshold,
        ),
        rate_limiter=rate_limiter,
        default_timeout_s=settings.provider_timeout_s,
        on_transition=circuit_alert_handler(
            dispatcher, persist=health_store.save if health_store else None
        ),
        initial_health=initial_health,
    )
    fingerprinter = Fingerprinter.with_case_insensitive(settings.case_insensitive_operation_set)
    default_models = settings.default_model_map
    vectors = VectorPipeline(
        store=_build_vector_store(settings),
        index=LSHIndex(
            dim=settings.vector_dim,
            tables=settings.vector_lsh_tables,
            bits=settings.vector_lsh_bits,
        ),
        fingerprinter=fingerprinter,
        model=default_models.get(Operation.EMBED, "default"),
        batch_size=settings.vector_batch_size,
        flush_interval_s=settings.vector_flush_interval_s,
    )
    return Orchestrator(
        router=router,
        fingerprinter=fingerprinter,
        cache=ResponseCache(
            backend=cache_backend,
            ttl_by_operation=settings.cache_ttl_map,
            sweep_interval_s=settings.cache_sweep_interval_s,
        ),
        rate_limiter=rate_limiter,
        cost_tracker=_build_cost_tracker(settings),
        queue=PriorityWorkQueue(
            max_size=settings.queue_max_size,
            starvation_interval=settings.starvation_interval,
        ),
        vectors=vectors,
        dispatcher=dispatcher,
        default_models=default_models,
        worker_count=settings.worker_count,
        reserved_background_workers=settings.reserved_background_workers,
        retry_policy=RetryPolicy(
            max_attempts=settings.max_attempts,
            backoff_base_s=settings.backoff_base_s,
            backoff_max_s=settings.backoff_max_s,
        ),
        request_timeout_s=settings.request_timeout_s,
        provider_timeout_s=settings.provider_timeout_s,
    )


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)
    orchestrator = build_orchestrator(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await orchestrator.start()
        try:
            yield
        finally:
            await orchestrator.stop()

    app = FastAPI(title="AI Mediation Core", version="0.1.0", lifespan=lifespan)

    app.add_middleware(AuthMiddleware)
    app.add_middleware(RequestIDMiddleware)

    app.state.orchestrator = orchestrator

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        return error_response_for(exc, request_id_from_request(request))

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        request_id = request_id_from_request(request)
        return app_error_response(
            422, "request_validation_failed", "validation", str(exc), request_id
        )

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, _: Exception) -> JSONResponse:
        request_id = request_id_from_request(request)
        return app_error_response(500, "internal_error", "internal", "Internal server error", request_id)

    app.include_router(router)
    if settings.metrics_enabled:
        app.include_router(metrics_router)
    return app


app = create_app()
