from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from aicore.core.types import Operation


def _parse_pairs(raw: str) -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    for item in raw.split(","):
        item = item.strip()
        if ":" not in item:
            continue
        key, value = item.split(":", 1)
        key = key.strip()
        if not key:
            continue
        pairs.append((key, value.strip()))
    return pairs


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="AIC_", case_sensitive=False)

    api_keys: str = Field(default="dev-key", description="Comma separated API keys")
    admin_api_keys: str = Field(default="admin-key", description="Keys allowed on /v1/admin")
    log_level: str = "INFO"
    metrics_enabled: bool = True

    # Providers
    provider_config: str = ""
    stub_provider_enabled: bool = True
    provider_timeout_s: float = 20.0
    default_models: str = (
        "summarize:gpt-4o-mini,sentiment:gpt-4o-mini,moderate:omni-moderation-latest,"
        "digest:gpt-4o-mini,embed:text-embedding-3-small"
    )

    # Circuit breaker
    breaker_failure_threshold: int = 5
    breaker_failure_window_s: float = 60.0
    breaker_cooldown_s: float = 30.0
    breaker_success_threshold: int = 2

    # Queue / worker pool
    worker_count: int = 8
    reserved_background_workers: int = 1
    starvation_interval: int = 20
    queue_max_size: int = 10_000
    max_attempts: int = 4
    backoff_base_s: float = 0.25
    backoff_max_s: float = 8.0
    request_timeout_s: float = 120.0

    # Response cache (seconds)
    cache_max_entries: int = 50_000
    cache_ttl_summarize_s: float = 86_400.0
    cache_ttl_digest_s: float = 3_600.0
    cache_ttl_sentiment_s: float = 900.0
    cache_ttl_moderate_s: float = 3_600.0
    cache_ttl_embed_s: float = 2_592_000.0
    cache_sweep_interval_s: float = 300.0
    fingerprint_case_insensitive_operations: str = "sentiment"

    # Admission rate limits
    rate_default_capacity: float = 60.0
    rate_default_refill_per_s: float = 1.0
    rate_operation_limits: str = Field(
        default="embed:600:10,digest:10:0.05",
        description="operation:capacity:refill_per_s entries",
    )
    rate_tenant_tiers: str = ""
    provider_rate_limits: str = Field(
        default="", description="provider:capacity:refill_per_s entries"
    )

    # Budget
    budget_default_limit_cents: float = 10_000.0
    budget_tenant_limits: str = ""
    budget_mode: str = "hard_deny"
    budget_alert_thresholds: str = "0.8,1.0"
    budget_backend: str = "memory"
    budget_redis_url: str | None = None
    budget_redis_prefix: str = "aic:budget"

    # Durable state
    state_backend: str = "memory"
    state_sqlite_path: Path = Path("artifacts/state/aicore.db")

    # Vector store
    vector_dim: int = 64
    vector_backend: str = "memory"
    vector_batch_size: int = 500
    vector_flush_interval_s: float = 0.25
    vector_postgres_dsn: str | None = None
    vector_postgres_table: str = "embedding_records"
    vector_lsh_tables: int = 6
    vector_lsh_bits: int = 10

    # Webhook notifications
    webhook_enabled: bool = False
    webhook_endpoints: str = ""
    webhook_timeout_s: float = 5.0
    webhook_max_retries: int = 1
    webhook_backoff_base_s: float = 0.2
    webhook_backoff_max_s: float = 2.0

    @property
    def api_key_set(self) -> set[str]:
        return {item.strip() for item in self.api_keys.split(",") if item.strip()}

    @property
    def admin_api_key_set(self) -> set[str]:
        return {item.strip() for item in self.admin_api_keys.split(",") if item.strip()}

    @property
    def default_model_map(self) -> dict[Operation, str]:
        result: dict[Operation, str] = {}
        for key, value in _parse_pairs(self.default_models):
            try:
                result[Operation(key.lower())] = value
            except ValueError:
                continue
        return result

    @property
    def cache_ttl_map(self) -> dict[Operation, float]:
        return {
            Operation.SUMMARIZE: self.cache_ttl_summarize_s,
            Operation.DIGEST: self.cache_ttl_digest_s,
            Operation.SENTIMENT: self.cache_ttl_sentiment_s,
            Operation.MODERATE: self.cache_ttl_moderate_s,
            Operation.EMBED: self.cache_ttl_embed_s,
        }

    @property
    def case_insensitive_operation_set(self) -> set[Operation]:
        result: set[Operation] = set()
        for item in self.fingerprint_case_insensitive_operations.split(","):
            try:
                result.add(Operation(item.strip().lower()))
            except ValueError:
                continue
        return result

    @property
    def rate_operation_limit_map(self) -> dict[str, tuple[float, float]]:
        return _parse_limits(self.rate_operation_limits)

    @property
    def provider_rate_limit_map(self) -> dict[str, tuple[float, float]]:
        return _parse_limits(self.provider_rate_limits)

    @property
    def rate_tenant_tier_map(self) -> dict[str, str]:
        return {key: value.lower() for key, value in _parse_pairs(self.rate_tenant_tiers) if value}

    @property
    def budget_tenant_limit_map(self) -> dict[str, float]:
        """Parse ``tenant:cents,tenant:cents`` into a dict."""
        result: dict[str, float] = {}
        for tenant, raw in _parse_pairs(self.budget_tenant_limits):
            try:
                limit = float(raw)
            except ValueError:
                continue
            if limit < 0:
                continue
            result[tenant] = limit
        return result

    @property
    def budget_alert_threshold_list(self) -> tuple[float, ...]:
        values: list[float] = []
        for item in self.budget_alert_thresholds.split(","):
            try:
                value = float(item.strip())
            except ValueError:
                continue
            if value > 0:
                values.append(value)
        return tuple(sorted(set(values)))

    @property
    def budget_mode_normalized(self) -> str:
        return self.budget_mode.strip().lower()

    @property
    def budget_backend_normalized(self) -> str:
        return self.budget_backend.strip().lower()

    @property
    def state_backend_normalized(self) -> str:
        return self.state_backend.strip().lower()

    @property
    def vector_backend_normalized(self) -> str:
        return self.vector_backend.strip().lower()


def _parse_limits(raw: str) -> dict[str, tuple[float, float]]:
    """Parse ``name:capacity:refill`` entries. Invalid entries are skipped."""
    result: dict[str, tuple[float, float]] = {}
    for item in raw.split(","):
        parts = [part.strip() for part in item.split(":")]
        if len(parts) != 3 or not parts[0]:
            continue
        try:
            capacity = float(parts[1])
            refill = float(parts[2])
        except ValueError:
            continue
        if capacity <= 0 or refill < 0:
            continue
        result[parts[0].lower()] = (capacity, refill)
    return result


@lru_cache
def get_settings() -> Settings:
    return Settings()


def clear_settings_cache() -> None:
    get_settings.cache_clear()
