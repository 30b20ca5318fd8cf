"""API router modules for the Tenantry control plane."""

from __future__ import annotations

from tenantry_api.routers import (
    auth,
    billing,
    health,
    onboarding,
    provisioning,
    tenants,
)

__all__ = [
    "auth",
    "billing",
    "health",
    "onboarding",
    "provisioning",
    "tenants",
]
