"""Webhook delivery for operational alerts.

Budget threshold crossings, newly opened provider circuits and requests
that failed for good are POSTed as a JSON envelope to every subscribed
endpoint:

    {
        "event_id": "evt-...",
        "event_type": "budget_warning",
        "timestamp": "2026-02-19T12:00:00+00:00",
        "service_version": "0.1.0",
        "payload": { ... }
    }

``X-AIC-Signature`` carries ``sha256=<hmac>`` of the body keyed by the
endpoint secret.  ``notify`` schedules delivery as a background task so
alerting never delays the request path; ``drain`` waits for those tasks.
"""

import asyncio
import hashlib
import hmac
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from time import perf_counter
from typing import Any
from uuid import uuid4

import httpx

logger = logging.getLogger("aicore.webhooks")

SERVICE_VERSION = "0.1.0"
RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class WebhookEventType(Enum):
    BUDGET_WARNING = "budget_warning"
    BUDGET_EXCEEDED = "budget_exceeded"
    CIRCUIT_OPENED = "circuit_opened"
    REQUEST_FAILED = "request_failed"


@dataclass(frozen=True)
class WebhookEndpoint:
    url: str
    secret: str = ""
    event_types: frozenset[WebhookEventType] = field(
        default_factory=lambda: frozenset(WebhookEventType)
    )
    enabled: bool = True

    def subscribed(self, event_type: WebhookEventType) -> bool:
        return self.enabled and event_type in self.event_types


@dataclass
class WebhookDeliveryResult:
    endpoint_url: str
    event_type: str
    status_code: int | None = None
    success: bool = False
    error: str | None = None
    duration_ms: float = 0.0
    attempt_count: int = 1
    idempotency_key: str = ""


class WebhookDispatcher:
    """
    Parameters
    ----------
    endpoints : list of WebhookEndpoint
        Delivery targets with their subscriptions.
    max_retries : int
        Extra attempts after the first for 429/5xx answers and transport errors.
    backoff_base_s, backoff_max_s : float
        Exponential backoff between attempts.
    transport : httpx.AsyncBaseTransport, optional
        Injected in tests.
    """

    def __init__(
        self,
        endpoints: list[WebhookEndpoint] | None = None,
        timeout_s: float = 5.0,
        max_retries: int = 1,
        backoff_base_s: float = 0.2,
        backoff_max_s: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
        log_size: int = 500,
    ) -> None:
        self._endpoints = list(endpoints or [])
        self._timeout_s = timeout_s
        self._max_retries = max(max_retries, 0)
        self._backoff_base_s = max(backoff_base_s, 0.0)
        self._backoff_max_s = max(backoff_max_s, self._backoff_base_s)
        self._transport = transport
        self._deliveries: deque[WebhookDeliveryResult] = deque(maxlen=log_size)
        self._pending: set[asyncio.Task[list[WebhookDeliveryResult]]] = set()

    def should_fire(self, event_type: WebhookEventType) -> bool:
        return any(endpoint.subscribed(event_type) for endpoint in self._endpoints)

    def notify(self, event_type: WebhookEventType, payload: dict[str, Any]) -> None:
        """Schedule delivery on the running loop; no-op without subscribers or a loop."""
        if not self.should_fire(event_type):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("webhook_dropped_no_loop", extra={"error_code": event_type.value})
            return
        task = loop.create_task(self.dispatch(event_type, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def dispatch(
        self, event_type: WebhookEventType, payload: dict[str, Any]
    ) -> list[WebhookDeliveryResult]:
        """Deliver one event to every subscribed endpoint concurrently."""
        targets = [endpoint for endpoint in self._endpoints if endpoint.subscribed(event_type)]
        if not targets:
            return []
        body = build_envelope(event_type, payload)
        async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
            results = await asyncio.gather(
                *(self._deliver(client, endpoint, body, event_type.value) for endpoint in targets)
            )
        self._deliveries.extend(results)
        return list(results)

    def recent_deliveries(self, limit: int = 20) -> list[WebhookDeliveryResult]:
        """Newest first."""
        return list(reversed(self._deliveries))[:limit]

    async def _deliver(
        self,
        client: httpx.AsyncClient,
        endpoint: WebhookEndpoint,
        body: str,
        event_type: str,
    ) -> WebhookDeliveryResult:
        result = WebhookDeliveryResult(
            endpoint_url=endpoint.url,
            event_type=event_type,
            idempotency_key=hashlib.sha256(f"{endpoint.url}:{body}".encode()).hexdigest(),
        )
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"aicore/{SERVICE_VERSION}",
            "X-AIC-Idempotency-Key": result.idempotency_key,
        }
        if endpoint.secret:
            headers["X-AIC-Signature"] = f"sha256={sign_body(endpoint.secret, body)}"

        for attempt in range(1, self._max_retries + 2):
            result.attempt_count = attempt
            started = perf_counter()
            retryable = True
            try:
                response = await client.post(endpoint.url, content=body, headers=headers)
            except httpx.HTTPError as exc:
                result.status_code = None
                result.error = f"attempt {attempt}: {type(exc).__name__}: {exc}"
            else:
                result.status_code = response.status_code
                result.success = response.is_success
                result.error = None if result.success else f"HTTP {response.status_code}"
                retryable = response.status_code in RETRYABLE_STATUS
            result.duration_ms = round((perf_counter() - started) * 1000, 3)
            if result.success or not retryable or attempt > self._max_retries:
                break
            await asyncio.sleep(self._backoff(attempt))

        if not result.success:
            logger.warning(
                "webhook_undelivered",
                extra={
                    "provider": endpoint.url,
                    "attempt": result.attempt_count,
                    "error_code": result.status_code or result.error,
                },
            )
        return result

    def _backoff(self, attempt: int) -> float:
        return min(self._backoff_base_s * (2 ** (attempt - 1)), self._backoff_max_s)


def build_envelope(event_type: WebhookEventType, payload: dict[str, Any]) -> str:
    envelope = {
        "event_id": f"evt-{uuid4().hex}",
        "event_type": event_type.value,
        "timestamp": datetime.now(UTC).isoformat(),
        "service_version": SERVICE_VERSION,
        "payload": payload,
    }
    return json.dumps(envelope, separators=(",", ":"), ensure_ascii=True)


def sign_body(secret: str, body: str) -> str:
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def parse_endpoints(raw: str) -> list[WebhookEndpoint]:
    """Parse a JSON list of ``{"url", "secret", "event_types", "enabled"}`` objects."""
    if not raw.strip():
        return []
    parsed = json.loads(raw)
    if not isinstance(parsed, list):
        raise ValueError("webhook endpoints must be a JSON list")
    endpoints: list[WebhookEndpoint] = []
    for item in parsed:
        if not isinstance(item, dict) or not item.get("url"):
            raise ValueError("each webhook endpoint needs a url")
        raw_types = item.get("event_types")
        event_types = (
            frozenset(WebhookEventType(value) for value in raw_types)
            if isinstance(raw_types, list) and raw_types
            else frozenset(WebhookEventType)
        )
        endpoints.append(
            WebhookEndpoint(
                url=str(item["url"]),
                secret=str(item.get("secret", "")),
                event_types=event_types,
                enabled=bool(item.get("enabled", True)),
            )
        )
    return endpoints
