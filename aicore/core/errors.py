from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from fastapi import Request
from fastapi.responses import JSONResponse

from aicore.core.types import AttemptRecord

MAX_RETRY_AFTER_S = 3_600.0


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    type: str
    request_id: str
    details: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "type": self.type,
            "request_id": self.request_id,
        }
        if self.details:
            error["details"] = self.details
        return {"error": error}


class AppError(Exception):
    retryable = False

    def __init__(self, status_code: int, code: str, error_type: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.error_type = error_type
        self.message = message

    def details(self) -> dict[str, Any]:
        return {}


class RateLimited(AppError):
    def __init__(self, key: str, retry_after_s: float):
        super().__init__(429, "rate_limited", "rate_limit", f"Rate limit exceeded for {key}")
        self.key = key
        self.retry_after_s = min(max(retry_after_s, 0.0), MAX_RETRY_AFTER_S)

    def details(self) -> dict[str, Any]:
        return {"retry_after_s": round(self.retry_after_s, 3)}


class BudgetExceeded(AppError):
    def __init__(self, tenant_id: str, spent_cents: float, limit_cents: float, period: str):
        super().__init__(
            402,
            "budget_exceeded",
            "budget",
            f"Budget exceeded for tenant {tenant_id}: "
            f"{spent_cents:.2f}/{limit_cents:.2f} cents in {period}",
        )
        self.tenant_id = tenant_id
        self.spent_cents = spent_cents
        self.limit_cents = limit_cents
        self.period = period

    def details(self) -> dict[str, Any]:
        return {
            "spent_cents": self.spent_cents,
            "limit_cents": self.limit_cents,
            "period": self.period,
        }


class ProviderUnavailable(AppError):
    retryable = True

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(503, "provider_unavailable", "provider", message)
        self.provider = provider


class AllProvidersUnavailable(AppError):
    def __init__(self, operation: str, skipped: list[str] | None = None):
        super().__init__(
            503,
            "all_providers_unavailable",
            "provider",
            f"No provider available for {operation}",
        )
        self.skipped = list(skipped or [])

    def details(self) -> dict[str, Any]:
        return {"skipped": self.skipped}


class InvalidInput(AppError):
    def __init__(self, message: str):
        super().__init__(422, "invalid_input", "validation", message)


class PolicyRejected(AppError):
    def __init__(self, message: str, provider: str | None = None):
        super().__init__(422, "policy_rejected", "policy", message)
        self.provider = provider


class RequestTimeout(AppError):
    retryable = True

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(504, "timeout", "timeout", message)
        self.provider = provider


class PermanentFailure(AppError):
    def __init__(self, message: str, history: list[AttemptRecord]):
        super().__init__(502, "permanent_failure", "provider", message)
        self.history = list(history)

    def details(self) -> dict[str, Any]:
        return {"attempts": [record.as_dict() for record in self.history]}


class RequestCancelled(AppError):
    def __init__(self, request_id: str):
        super().__init__(409, "request_cancelled", "request", f"Request {request_id} was cancelled")


class RequestNotFound(AppError):
    def __init__(self, request_id: str):
        super().__init__(404, "request_not_found", "request", f"Unknown request {request_id}")


class QueueFull(AppError):
    def __init__(self, depth: int):
        super().__init__(503, "queue_full", "capacity", f"Work queue is full ({depth} items)")


def request_id_from_request(request: Request) -> str:
    state_id = getattr(request.state, "request_id", None)
    header_id = request.headers.get("x-request-id")
    return state_id or header_id or str(uuid4())


def app_error_response(
    status_code: int,
    code: str,
    error_type: str,
    message: str,
    request_id: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    envelope = ErrorEnvelope(
        code=code, message=message, type=error_type, request_id=request_id, details=details
    )
    response = JSONResponse(status_code=status_code, content=envelope.as_dict())
    response.headers["x-request-id"] = request_id
    return response


def error_response_for(exc: AppError, request_id: str) -> JSONResponse:
    response = app_error_response(
        exc.status_code,
        exc.code,
        exc.error_type,
        exc.message,
        request_id,
        details=exc.details() or None,
    )
    if isinstance(exc, RateLimited):
        response.headers["retry-after"] = str(max(1, round(exc.retry_after_s)))
    return response
