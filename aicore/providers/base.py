from dataclasses import dataclass, field
from typing import Any, Protocol

from aicore.core.types import Operation

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class ProviderError(Exception):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        error_type: str = "provider",
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.error_type = error_type

    @property
    def retryable(self) -> bool:
        return self.status_code in RETRYABLE_STATUS_CODES


@dataclass(frozen=True)
class ProviderCapabilities:
    operations: frozenset[Operation] = frozenset(Operation)
    model_prefixes: tuple[str, ...] = ()

    def supports(self, operation: Operation) -> bool:
        return operation in self.operations

    def supports_model(self, model: str) -> bool:
        if not self.model_prefixes:
            return True
        return any(model.startswith(prefix) for prefix in self.model_prefixes)


@dataclass(frozen=True)
class ProviderCall:
    operation: Operation
    model: str
    payload: dict[str, Any]
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderResult:
    output: dict[str, Any]
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class Provider(Protocol):
    async def call(self, request: ProviderCall) -> ProviderResult:
        """Execute one operation against the upstream service."""
