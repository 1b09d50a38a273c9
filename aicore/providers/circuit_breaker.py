"""Per-provider circuit breaker.

States:
  CLOSED:    calls flow; consecutive failures inside ``failure_window_s``
             are counted and ``failure_threshold`` of them open the circuit.
  OPEN:      calls short-circuit until ``cooldown_s`` has elapsed.
  HALF_OPEN: one trial call at a time.  ``success_threshold`` consecutive
             successes close the circuit; any failure reopens it.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from time import time

logger = logging.getLogger("aicore.breaker")


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class ProviderHealth:
    provider_id: str
    state: BreakerState
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    opened_at: float | None = None
    last_failure_at: float | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "provider_id": self.provider_id,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "opened_at": self.opened_at,
            "last_failure_at": self.last_failure_at,
        }


@dataclass(frozen=True)
class BreakerConfig:
    failure_threshold: int = 5
    failure_window_s: float = 60.0
    cooldown_s: float = 30.0
    success_threshold: int = 2


TransitionCallback = Callable[[ProviderHealth, BreakerState], None]


class CircuitBreaker:
    def __init__(
        self,
        provider_id: str,
        config: BreakerConfig | None = None,
        clock: Callable[[], float] = time,
        on_transition: TransitionCallback | None = None,
        initial: ProviderHealth | None = None,
    ) -> None:
        self.provider_id = provider_id
        self._config = config or BreakerConfig()
        self._clock = clock
        self._on_transition = on_transition
        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._successes = 0
        self._first_failure_at: float | None = None
        self._last_failure_at: float | None = None
        self._opened_at: float | None = None
        self._trial_in_flight = False
        if initial is not None:
            self._state = initial.state
            self._failures = initial.consecutive_failures
            self._successes = initial.consecutive_successes
            self._opened_at = initial.opened_at
            self._last_failure_at = initial.last_failure_at

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._state

    def allow_request(self) -> bool:
        """Return whether a call may go out now; claims the half-open trial slot."""
        with self._lock:
            if self._state == BreakerState.CLOSED:
                return True
            if self._state == BreakerState.OPEN:
                opened_at = self._opened_at if self._opened_at is not None else 0.0
                if self._clock() - opened_at < self._config.cooldown_s:
                    return False
                self._transition(BreakerState.HALF_OPEN)
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._first_failure_at = None
            if self._state == BreakerState.HALF_OPEN:
                self._trial_in_flight = False
                self._successes += 1
                if self._successes >= self._config.success_threshold:
                    self._transition(BreakerState.CLOSED)
                else:
                    self._notify(self._state)

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self._last_failure_at = now
            if self._state == BreakerState.HALF_OPEN:
                self._trial_in_flight = False
                self._failures += 1
                self._transition(BreakerState.OPEN)
                return
            if self._state == BreakerState.OPEN:
                return
            if (
                self._first_failure_at is None
                or now - self._first_failure_at > self._config.failure_window_s
            ):
                self._first_failure_at = now
                self._failures = 0
            self._failures += 1
            if self._failures >= self._config.failure_threshold:
                self._transition(BreakerState.OPEN)
            else:
                self._notify(self._state)

    def release_trial(self) -> None:
        """Give back a half-open slot claimed by a call that never reached the provider."""
        with self._lock:
            self._trial_in_flight = False

    def snapshot(self) -> ProviderHealth:
        with self._lock:
            return self._health()

    def _health(self) -> ProviderHealth:
        return ProviderHealth(
            provider_id=self.provider_id,
            state=self._state,
            consecutive_failures=self._failures,
            consecutive_successes=self._successes,
            opened_at=self._opened_at,
            last_failure_at=self._last_failure_at,
        )

    def _transition(self, new_state: BreakerState) -> None:
        old_state = self._state
        self._state = new_state
        if new_state == BreakerState.OPEN:
            self._opened_at = self._clock()
            self._successes = 0
        elif new_state == BreakerState.HALF_OPEN:
            self._successes = 0
            self._trial_in_flight = False
        elif new_state == BreakerState.CLOSED:
            self._opened_at = None
            self._failures = 0
            self._successes = 0
            self._first_failure_at = None
        logger.info(
            "circuit_transition",
            extra={
                "provider": self.provider_id,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )
        self._notify(old_state)

    def _notify(self, old_state: BreakerState) -> None:
        if self._on_transition is not None:
            self._on_transition(self._health(), old_state)
