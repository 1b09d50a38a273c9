import logging
import re
from time import perf_counter
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("aicore.http")

_ACCEPTED_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Propagates ``x-request-id`` and writes one access log line per request.

    Incoming ids that are too long or carry unexpected characters are
    replaced with a generated one.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        incoming = request.headers.get("x-request-id", "")
        request_id = incoming if _ACCEPTED_ID.match(incoming) else f"http-{uuid4().hex}"
        request.state.request_id = request_id
        started = perf_counter()
        response = await call_next(request)
        response.headers["x-request-id"] = request_id
        logger.info(
            "http_request",
            extra={
                "request_id": request_id,
                "tenant_id": getattr(request.state, "tenant_id", None),
                "latency_ms": round((perf_counter() - started) * 1000, 3),
                "error_code": response.status_code if response.status_code >= 400 else None,
            },
        )
        return response
