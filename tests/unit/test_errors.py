import json

from aicore.core.errors import (
    AllProvidersUnavailable,
    BudgetExceeded,
    PermanentFailure,
    RateLimited,
    error_response_for,
)
from aicore.core.types import AttemptRecord


def test_rate_limited_response_carries_retry_after() -> None:
    response = error_response_for(RateLimited("tenant-a:embed", retry_after_s=2.4), "req-1")
    assert response.status_code == 429
    assert response.headers["retry-after"] == "2"
    assert response.headers["x-request-id"] == "req-1"
    body = json.loads(response.body)
    assert body["error"]["code"] == "rate_limited"
    assert body["error"]["details"] == {"retry_after_s": 2.4}


def test_unbounded_retry_after_is_capped() -> None:
    error = RateLimited("tenant-a:digest", retry_after_s=float("inf"))
    response = error_response_for(error, "req-1")
    assert response.headers["retry-after"] == "3600"


def test_budget_exceeded_envelope() -> None:
    response = error_response_for(BudgetExceeded("tenant-a", 60.0, 100.0, "2026-03"), "req-2")
    body = json.loads(response.body)
    assert response.status_code == 402
    assert body["error"]["type"] == "budget"
    assert body["error"]["details"]["limit_cents"] == 100.0


def test_permanent_failure_lists_attempts() -> None:
    history = [
        AttemptRecord(attempt=1, provider="stub", error_code="timeout", message="t", retryable=True)
    ]
    body = json.loads(error_response_for(PermanentFailure("gave up", history), "req-3").body)
    assert body["error"]["details"]["attempts"][0]["error_code"] == "timeout"


def test_errors_without_details_omit_the_key() -> None:
    body = json.loads(error_response_for(AllProvidersUnavailable("embed"), "req-4").body)
    assert "details" not in body["error"]
    assert body["error"]["code"] == "all_providers_unavailable"
