"""Access logging for the tenantry API.

One record per request on the ``tenantry_api.access`` logger, carrying the
caller's tenant context so a single tenant's onboarding or billing traffic
can be pulled out of the aggregate stream.  Paths are also reported as
their route template (``/api/v1/tenants/{slug}/database``) so per-tenant
URLs group together.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("tenantry_api.access")

# Header names whose values must be masked in log output.
_SENSITIVE_HEADERS: frozenset[str] = frozenset({"authorization", "cookie", "stripe-signature", "x-api-key"})
_MASK: str = "***"

_CORRELATION_HEADER: str = "X-Correlation-ID"
_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

# Liveness and readiness checks; successful ones are logged at DEBUG.
_QUIET_PATHS: frozenset[str] = frozenset({"/api/v1/health", "/ready"})


def _safe_headers(request: Request) -> dict[str, str]:
    """Return a copy of the request headers with sensitive values masked."""
    return {key: _MASK if key.lower() in _SENSITIVE_HEADERS else value for key, value in request.headers.items()}


def _correlation_id(request: Request) -> str:
    """Reuse the caller's correlation id when it is a plain token, else mint one."""
    supplied = request.headers.get(_CORRELATION_HEADER, "")
    if _CORRELATION_ID_RE.match(supplied):
        return supplied
    return str(uuid.uuid4())


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def _tenant_context(request: Request) -> dict[str, Any]:
    """Identity fields the auth middleware stored on ``request.state``."""
    state = request.state
    return {
        "tenant_id": getattr(state, "tenant_id", None) or "anonymous",
        "tenant_slug": getattr(state, "tenant_slug", None),
        "user_id": getattr(state, "user_id", None),
        "role": getattr(state, "role", None),
    }


def _level_for(path: str, status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    if path in _QUIET_PATHS:
        return logging.DEBUG
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with its outcome and the caller's tenant context.

    The ``X-Correlation-ID`` header is honoured when it is a short token of
    safe characters; anything else is replaced with a UUID-4 so header
    values cannot forge log lines.  The id is stored on
    ``request.state.correlation_id`` and echoed on the response.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = _correlation_id(request)
        request.state.correlation_id = correlation_id

        start = time.monotonic()
        response: Response | None = None
        try:
            response = await call_next(request)
            response.headers[_CORRELATION_HEADER] = correlation_id
            return response
        finally:
            status_code = response.status_code if response is not None else 500
            path = request.url.path
            record: dict[str, Any] = {
                "method": request.method,
                "path": path,
                "route": _route_template(request),
                "status_code": status_code,
                "duration_ms": round((time.monotonic() - start) * 1000, 2),
                "client": request.client.host if request.client else None,
                "correlation_id": correlation_id,
                **_tenant_context(request),
                "headers": _safe_headers(request),
            }
            logger.log(_level_for(path, status_code), "request completed", extra={"request": record})
