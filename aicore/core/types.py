from dataclasses import dataclass, field
from enum import Enum, IntEnum
from time import monotonic
from typing import Any


class Operation(str, Enum):
    SUMMARIZE = "summarize"
    SENTIMENT = "sentiment"
    EMBED = "embed"
    MODERATE = "moderate"
    DIGEST = "digest"


class Priority(IntEnum):
    """Admission tiers. Lower value is served first."""

    CRITICAL = 0
    HIGH = 1
    NORMAL = 2
    LOW = 3
    BACKGROUND = 4

    @classmethod
    def parse(cls, value: "str | int | Priority") -> "Priority":
        if isinstance(value, Priority):
            return value
        if isinstance(value, int):
            return cls(value)
        return cls[value.strip().upper()]


class RequestState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class AIRequest:
    id: str
    operation: Operation
    tenant_id: str
    user_id: str
    priority: Priority
    payload: dict[str, Any]
    params: dict[str, Any]
    fingerprint: str
    submitted_at: float
    deadline: float

    def remaining_s(self, now: float | None = None) -> float:
        current = monotonic() if now is None else now
        return self.deadline - current


@dataclass(frozen=True)
class AttemptRecord:
    attempt: int
    provider: str | None
    error_code: str
    message: str
    retryable: bool

    def as_dict(self) -> dict[str, object]:
        return {
            "attempt": self.attempt,
            "provider": self.provider,
            "error_code": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
        }


@dataclass
class QueueItem:
    request: AIRequest
    priority: Priority
    enqueued_at: float
    attempts: int = 0
    not_before: float = 0.0
    history: list[AttemptRecord] = field(default_factory=list)

    @property
    def request_id(self) -> str:
        return self.request.id

    def ready(self, now: float) -> bool:
        return self.not_before <= now


@dataclass(frozen=True)
class AIResult:
    request_id: str
    operation: Operation
    fingerprint: str
    output: dict[str, Any]
    provider: str
    cached: bool
    cost_cents: float = 0.0
    attempts: int = 0

    def as_dict(self) -> dict[str, object]:
        return {
            "request_id": self.request_id,
            "operation": self.operation.value,
            "fingerprint": self.fingerprint,
            "output": self.output,
            "provider": self.provider,
            "cached": self.cached,
            "cost_cents": self.cost_cents,
            "attempts": self.attempts,
        }
