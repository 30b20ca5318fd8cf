"""Health-check and readiness probe endpoints.

``/health`` (liveness) lives under the versioned prefix
(``/api/v1/health``) and always answers 200.  ``/ready`` is registered at
the application root and answers 503 while the control-plane database is
unreachable.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from tenantry_api import __version__
from tenantry_api.dependencies import SessionDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(session: SessionDep) -> dict[str, Any]:
    """Return service health with a database connectivity check."""
    result: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "db": "ok",
    }
    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("DB health check failed: %s", type(exc).__name__)
        result["db"] = "degraded"
    return result


# ---------------------------------------------------------------------------
# Readiness probe (outside API versioning)
# ---------------------------------------------------------------------------

readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness_probe(session: SessionDep, request: Request) -> JSONResponse:
    """Readiness probe: database connectivity gates traffic.

    The ``provisioning`` check reports how many provisioning runs are in
    flight; it never makes the instance unready.
    """
    checks: dict[str, Any] = {"db": "ok"}
    overall = "ready"

    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("Readiness: DB check failed: %s", type(exc).__name__)
        checks["db"] = "unavailable"
        overall = "not_ready"

    provisioning = getattr(request.app.state, "provisioning", None)
    if provisioning is not None:
        checks["provisioning_pending"] = provisioning.pending

    return JSONResponse(
        status_code=200 if overall == "ready" else 503,
        content={"status": overall, "version": __version__, "checks": checks},
    )
