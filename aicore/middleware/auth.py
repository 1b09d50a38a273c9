from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from aicore.config.settings import get_settings
from aicore.core.errors import app_error_response, request_id_from_request

REQUIRED_HEADERS = ("x-aic-tenant-id", "x-aic-user-id")
BYPASS_PATHS = {"/healthz", "/readyz", "/metrics", "/openapi.json", "/docs", "/docs/oauth2-redirect"}
ADMIN_PREFIX = "/v1/admin/"


def _bearer_token(request: Request) -> str | None:
    scheme, _, credentials = request.headers.get("authorization", "").partition(" ")
    if scheme != "Bearer" or not credentials.strip():
        return None
    return credentials.strip()


class AuthMiddleware(BaseHTTPMiddleware):
    """Bearer key check plus tenant identity headers.

    Admin routes need an admin key and fall back to an ``admin`` identity
    when the tenant headers are absent. Admin keys are also valid on
    tenant routes.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in BYPASS_PATHS:
            return await call_next(request)

        rejection = self._reject(request, path)
        if rejection is not None:
            return rejection

        default_identity = "admin" if path.startswith(ADMIN_PREFIX) else None
        request.state.tenant_id = request.headers.get("x-aic-tenant-id", default_identity)
        request.state.user_id = request.headers.get("x-aic-user-id", default_identity)
        return await call_next(request)

    @staticmethod
    def _reject(request: Request, path: str) -> Response | None:
        request_id = request_id_from_request(request)
        settings = get_settings()

        token = _bearer_token(request)
        if token is None:
            return app_error_response(
                401, "auth_missing", "auth", "Missing bearer token", request_id
            )

        admin = token in settings.admin_api_key_set
        if path.startswith(ADMIN_PREFIX):
            if admin:
                return None
            return app_error_response(
                403, "auth_forbidden", "auth", "Admin API key required", request_id
            )
        if not admin and token not in settings.api_key_set:
            return app_error_response(401, "auth_invalid", "auth", "Invalid API key", request_id)

        absent = [name for name in REQUIRED_HEADERS if not request.headers.get(name)]
        if absent:
            return app_error_response(
                422,
                "missing_required_headers",
                "validation",
                "Missing required headers: " + ", ".join(absent),
                request_id,
            )
        return None
