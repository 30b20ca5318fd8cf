"""Middleware components for the Tenantry API."""

from __future__ import annotations

from tenantry_api.middleware.auth import AuthenticationMiddleware
from tenantry_api.middleware.logging import RequestLoggingMiddleware

__all__ = [
    "AuthenticationMiddleware",
    "RequestLoggingMiddleware",
]
