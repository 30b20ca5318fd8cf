"""Authentication middleware that validates session tokens.

Extracts ``Authorization: Bearer <token>`` from every request, validates it
as a *session* token via :class:`~tenantry_api.security.TokenManager`, and
populates ``request.state`` with ``user_id``, ``email``, ``tenant_id``,
``tenant_slug`` and ``role``.  Tenant-scoped tokens minted by the Auth Bridge
are meant for the data plane and are rejected here.

Endpoints listed in ``_PUBLIC_PATHS`` bypass authentication.
"""

from __future__ import annotations

import logging
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from tenantry_api.config import load_api_settings
from tenantry_api.dependencies import build_token_manager
from tenantry_api.security import TokenKind, TokenManager

logger = logging.getLogger(__name__)

# Paths that do not require authentication.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/ready",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
        "/api/v1/auth/signup",
        "/api/v1/auth/signin",
        "/api/v1/auth/verify-otp",
        "/api/v1/auth/resend-otp",
        "/api/v1/billing/webhooks",
    }
)

# Prefixes that skip auth (static docs assets).
_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/docs",
    "/redoc",
)


def _is_public_path(path: str) -> bool:
    """Return ``True`` if the path should bypass authentication."""
    if path in _PUBLIC_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail, "code": "unauthorized"})


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces Bearer session authentication.

    On each request the middleware:

    1. Checks whether the path is public and skips auth.
    2. Extracts the ``Authorization: Bearer <token>`` header.
    3. Validates the token as a session token.
    4. Stores the identity claims on ``request.state``.
    5. Returns a 401 JSON response on failure.
    """

    def __init__(self, app: Any, token_manager: TokenManager | None = None) -> None:
        super().__init__(app)
        self._token_manager = token_manager or build_token_manager(load_api_settings())
        logger.info("AuthenticationMiddleware initialised")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path

        if request.method == "OPTIONS" or _is_public_path(path):
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            return _error(401, "Missing Authorization header")

        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return _error(401, "Authorization header must use Bearer scheme")

        try:
            claims = self._token_manager.validate_token(parts[1], kind=TokenKind.SESSION)
        except PermissionError as exc:
            logger.info("Rejected session token on %s: %s", path, exc)
            if "expired" in str(exc).lower():
                return _error(401, "Session has expired")
            return _error(401, "Invalid session token")

        request.state.user_id = claims.sub
        request.state.email = claims.email
        request.state.tenant_id = claims.tenant_id
        request.state.tenant_slug = claims.tenant_slug
        request.state.role = claims.role

        return await call_next(request)
