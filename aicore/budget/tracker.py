"""Per-tenant monthly spend ledger with budget enforcement.

Every provider call that is not served from cache records its actual cost
here before the result is handed back to the caller.  Admission uses
reservations: a request reserves its estimated cost up front, and the
reservation is replaced by the actual cost on ``commit`` or dropped on
``release``.  Under ``hard_deny`` a reservation that would push
``spent + reserved`` above the limit is refused, so the ledger can only
overrun by the difference between estimated and actual cost of calls that
were already in flight.

Writes are single-writer per ``tenant:period`` key (``KeyedLocks``).

Budget alerts fire once per threshold per period; the highest threshold
already signalled is stored on the budget as ``last_alerted_threshold``.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol
from uuid import uuid4

from aicore.core.errors import BudgetExceeded
from aicore.core.locks import KeyedLocks
from aicore.core.types import Priority
from aicore.metrics import inc_counter

try:  # pragma: no cover - optional dependency at runtime
    import redis  # type: ignore[import-not-found,import-untyped]
except Exception:  # pragma: no cover - optional dependency at runtime
    redis = None

logger = logging.getLogger("aicore.budget")


class BudgetBackendError(Exception):
    """Raised when the budget backend is unavailable or misconfigured."""


class BudgetMode(str, Enum):
    HARD_DENY = "hard_deny"
    BACKGROUND_ONLY = "background_only"


@dataclass(frozen=True)
class Budget:
    tenant_id: str
    period: str
    limit_cents: float
    spent_cents: float = 0.0
    alert_thresholds: tuple[float, ...] = (0.8, 1.0)
    last_alerted_threshold: float = 0.0
    daily_spent_cents: dict[str, float] = field(default_factory=dict)

    def utilization(self) -> float:
        if self.limit_cents <= 0:
            return 1.0 if self.spent_cents > 0 else 0.0
        return self.spent_cents / self.limit_cents

    def as_dict(self, reserved_cents: float = 0.0) -> dict[str, object]:
        return {
            "tenant_id": self.tenant_id,
            "period": self.period,
            "limit_cents": self.limit_cents,
            "spent_cents": round(self.spent_cents, 4),
            "reserved_cents": round(reserved_cents, 4),
            "remaining_cents": round(
                max(0.0, self.limit_cents - self.spent_cents - reserved_cents), 4
            ),
            "alert_thresholds": list(self.alert_thresholds),
            "last_alerted_threshold": self.last_alerted_threshold,
            "daily_spent_cents": dict(sorted(self.daily_spent_cents.items())),
            "utilization_pct": round(self.utilization() * 100, 2),
        }


@dataclass(frozen=True)
class BudgetCheck:
    ok: bool
    remaining_cents: float


@dataclass(frozen=True)
class BudgetAlert:
    tenant_id: str
    period: str
    threshold: float
    spent_cents: float
    limit_cents: float

    @property
    def exceeded(self) -> bool:
        return self.threshold >= 1.0


@dataclass(frozen=True)
class Reservation:
    id: str
    tenant_id: str
    period: str
    cents: float


class BudgetStore(Protocol):
    def load_budget(self, tenant_id: str, period: str) -> Budget | None:
        """Return the persisted budget for a tenant-period."""

    def save_budget(self, budget: Budget) -> None:
        """Persist a budget after a mutation."""


class InMemoryBudgetStore:
    def __init__(self) -> None:
        self._budgets: dict[tuple[str, str], Budget] = {}

    def load_budget(self, tenant_id: str, period: str) -> Budget | None:
        return self._budgets.get((tenant_id, period))

    def save_budget(self, budget: Budget) -> None:
        self._budgets[(budget.tenant_id, budget.period)] = budget


class RedisBudgetStore:
    """Redis hash per tenant-period for multi-replica visibility of spend."""

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "aic:budget",
        ttl_seconds: int = 60 * 60 * 24 * 120,
    ) -> None:
        if redis is None:  # pragma: no cover - runtime dependency gate
            raise BudgetBackendError(
                "Redis budget backend selected but redis package is not installed"
            )
        self._key_prefix = key_prefix
        self._ttl_seconds = ttl_seconds
        try:
            self._client: Any = redis.Redis.from_url(redis_url, decode_responses=True)
            self._client.ping()
        except Exception as exc:  # pragma: no cover - runtime guard
            raise BudgetBackendError(f"Failed to initialize Redis budget backend: {exc}") from exc

    def _key(self, tenant_id: str, period: str) -> str:
        return f"{self._key_prefix}:{tenant_id}:{period}"

    def load_budget(self, tenant_id: str, period: str) -> Budget | None:
        try:
            raw: dict[str, str] = self._client.hgetall(self._key(tenant_id, period))
        except Exception as exc:
            raise BudgetBackendError(f"Redis read failed: {exc}") from exc
        if not raw:
            return None
        daily = {
            name.removeprefix("day:"): float(value)
            for name, value in raw.items()
            if name.startswith("day:")
        }
        thresholds = tuple(
            float(item) for item in raw.get("alert_thresholds", "").split(",") if item
        )
        return Budget(
            tenant_id=tenant_id,
            period=period,
            limit_cents=float(raw.get("limit_cents", 0.0)),
            spent_cents=float(raw.get("spent_cents", 0.0)),
            alert_thresholds=thresholds or (0.8, 1.0),
            last_alerted_threshold=float(raw.get("last_alerted_threshold", 0.0)),
            daily_spent_cents=daily,
        )

    def save_budget(self, budget: Budget) -> None:
        key = self._key(budget.tenant_id, budget.period)
        mapping: dict[str, str] = {
            "limit_cents": repr(budget.limit_cents),
            "spent_cents": repr(budget.spent_cents),
            "alert_thresholds": ",".join(repr(item) for item in budget.alert_thresholds),
            "last_alerted_threshold": repr(budget.last_alerted_threshold),
        }
        for day, cents in budget.daily_spent_cents.items():
            mapping[f"day:{day}"] = repr(cents)
        try:
            pipe = self._client.pipeline()
            pipe.hset(key, mapping=mapping)
            pipe.expire(key, self._ttl_seconds)
            pipe.execute()
        except Exception as exc:
            raise BudgetBackendError(f"Redis write failed: {exc}") from exc


class CostTracker:
    """Running spend ledger per tenant and month.

    Parameters
    ----------
    store : BudgetStore
        Where budgets are persisted.
    default_limit_cents : float
        Monthly limit for tenants without an explicit one.
    tenant_limits : dict, optional
        Per-tenant monthly limits from configuration.
    alert_thresholds : tuple of float
        Utilization fractions that trigger an alert once per period.
    mode : BudgetMode
        What to do once a budget is exhausted.
    on_alert : callable, optional
        Receives each ``BudgetAlert``.
    """

    def __init__(
        self,
        store: BudgetStore | None = None,
        default_limit_cents: float = 10_000.0,
        tenant_limits: dict[str, float] | None = None,
        alert_thresholds: tuple[float, ...] = (0.8, 1.0),
        mode: BudgetMode = BudgetMode.HARD_DENY,
        on_alert: Callable[[BudgetAlert], None] | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._store: BudgetStore = store or InMemoryBudgetStore()
        self._default_limit_cents = default_limit_cents
        self._tenant_limits = dict(tenant_limits) if tenant_limits else {}
        self._alert_thresholds = tuple(sorted(alert_thresholds))
        self._mode = mode
        self._on_alert = on_alert
        self._now = now
        self._locks = KeyedLocks()
        self._reserved: dict[str, dict[str, float]] = {}

    @property
    def mode(self) -> BudgetMode:
        return self._mode

    def set_alert_handler(self, handler: Callable[[BudgetAlert], None] | None) -> None:
        self._on_alert = handler

    def current_period(self) -> str:
        return self._now().strftime("%Y-%m")

    def limit_for(self, tenant_id: str) -> float:
        return self._tenant_limits.get(tenant_id, self._default_limit_cents)

    def get_budget(self, tenant_id: str) -> Budget:
        period = self.current_period()
        with self._locks.hold(self._key(tenant_id, period)):
            return self._load(tenant_id, period)

    def reserved_cents(self, tenant_id: str) -> float:
        key = self._key(tenant_id, self.current_period())
        return sum(self._reserved.get(key, {}).values())

    def set_budget(self, tenant_id: str, limit_cents: float) -> Budget:
        if limit_cents < 0:
            raise ValueError("limit_cents must be >= 0")
        period = self.current_period()
        self._tenant_limits[tenant_id] = limit_cents
        with self._locks.hold(self._key(tenant_id, period)):
            budget = replace(self._load(tenant_id, period), limit_cents=limit_cents)
            # Lowering utilization below an alerted threshold re-arms it.
            crossed = max(
                (t for t in budget.alert_thresholds if t <= budget.utilization()),
                default=0.0,
            )
            budget = replace(
                budget,
                last_alerted_threshold=min(budget.last_alerted_threshold, crossed),
            )
            self._store.save_budget(budget)
        logger.info(
            "budget_updated",
            extra={"tenant_id": tenant_id, "cost_cents": limit_cents},
        )
        return budget

    def check_budget(self, tenant_id: str) -> BudgetCheck:
        period = self.current_period()
        key = self._key(tenant_id, period)
        with self._locks.hold(key):
            budget = self._load(tenant_id, period)
            committed = budget.spent_cents + sum(self._reserved.get(key, {}).values())
        remaining = max(0.0, budget.limit_cents - committed)
        return BudgetCheck(ok=committed < budget.limit_cents, remaining_cents=round(remaining, 4))

    def reserve(
        self,
        tenant_id: str,
        estimated_cents: float,
        priority: Priority = Priority.NORMAL,
    ) -> Reservation:
        """Reserve estimated spend or raise ``BudgetExceeded``."""
        period = self.current_period()
        key = self._key(tenant_id, period)
        estimate = max(estimated_cents, 0.0)
        with self._locks.hold(key):
            budget = self._load(tenant_id, period)
            reserved = sum(self._reserved.get(key, {}).values())
            projected = budget.spent_cents + reserved + estimate
            if projected > budget.limit_cents and not self._allows_overrun(priority):
                inc_counter("aic_budget_denied_total", {"mode": self._mode.value})
                logger.warning(
                    "budget_denied",
                    extra={
                        "tenant_id": tenant_id,
                        "priority": priority.name.lower(),
                        "cost_cents": estimate,
                    },
                )
                raise BudgetExceeded(
                    tenant_id=tenant_id,
                    spent_cents=budget.spent_cents,
                    limit_cents=budget.limit_cents,
                    period=period,
                )
            reservation = Reservation(
                id=uuid4().hex, tenant_id=tenant_id, period=period, cents=estimate
            )
            self._reserved.setdefault(key, {})[reservation.id] = estimate
            return reservation

    def release(self, reservation: Reservation) -> None:
        key = self._key(reservation.tenant_id, reservation.period)
        with self._locks.hold(key):
            self._drop_reservation(key, reservation.id)

    def commit(self, reservation: Reservation, actual_cents: float) -> Budget:
        """Replace a reservation with the actual cost of the call."""
        key = self._key(reservation.tenant_id, reservation.period)
        with self._locks.hold(key):
            self._drop_reservation(key, reservation.id)
            budget, alerts = self._apply(reservation.tenant_id, reservation.period, actual_cents)
        self._emit(alerts)
        return budget

    def record(self, tenant_id: str, cost_cents: float) -> Budget:
        """Record spend that was not reserved (background pipeline calls)."""
        period = self.current_period()
        with self._locks.hold(self._key(tenant_id, period)):
            budget, alerts = self._apply(tenant_id, period, cost_cents)
        self._emit(alerts)
        return budget

    def _allows_overrun(self, priority: Priority) -> bool:
        return self._mode == BudgetMode.BACKGROUND_ONLY and priority >= Priority.LOW

    def _apply(
        self, tenant_id: str, period: str, cost_cents: float
    ) -> tuple[Budget, list[BudgetAlert]]:
        budget = self._load(tenant_id, period)
        cost = max(cost_cents, 0.0)
        day = self._now().strftime("%Y-%m-%d")
        daily = dict(budget.daily_spent_cents)
        daily[day] = daily.get(day, 0.0) + cost
        budget = replace(budget, spent_cents=budget.spent_cents + cost, daily_spent_cents=daily)

        alerts: list[BudgetAlert] = []
        utilization = budget.utilization()
        for threshold in budget.alert_thresholds:
            if threshold <= budget.last_alerted_threshold or utilization < threshold:
                continue
            alerts.append(
                BudgetAlert(
                    tenant_id=tenant_id,
                    period=period,
                    threshold=threshold,
                    spent_cents=budget.spent_cents,
                    limit_cents=budget.limit_cents,
                )
            )
        if alerts:
            budget = replace(budget, last_alerted_threshold=alerts[-1].threshold)
        self._store.save_budget(budget)
        inc_counter("aic_spend_cents_total", {"tenant_id": tenant_id}, cost)
        return budget, alerts

    def _emit(self, alerts: list[BudgetAlert]) -> None:
        for alert in alerts:
            logger.warning(
                "budget_alert",
                extra={
                    "tenant_id": alert.tenant_id,
                    "cost_cents": alert.spent_cents,
                    "threshold": alert.threshold,
                },
            )
            if self._on_alert is not None:
                self._on_alert(alert)

    def _load(self, tenant_id: str, period: str) -> Budget:
        budget = self._store.load_budget(tenant_id, period)
        if budget is None:
            budget = Budget(
                tenant_id=tenant_id,
                period=period,
                limit_cents=self.limit_for(tenant_id),
                alert_thresholds=self._alert_thresholds,
            )
        return budget

    def _drop_reservation(self, key: str, reservation_id: str) -> None:
        pending = self._reserved.get(key)
        if pending is None:
            return
        pending.pop(reservation_id, None)
        if not pending:
            self._reserved.pop(key, None)

    @staticmethod
    def _key(tenant_id: str, period: str) -> str:
        return f"{tenant_id}:{period}"
