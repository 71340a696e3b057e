"""Health-check and readiness probe endpoints.

``/health`` (liveness) lives under the versioned prefix
(``/api/v1/health``); ``/ready`` is registered at the application root so
load-balancers can gate traffic independently of the API version.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from storypress_api import __version__
from storypress_api.dependencies import EmailTransportDep, LuluClientDep, SessionDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(session: SessionDep) -> dict[str, Any]:
    """Return service health.

    Always HTTP 200 so load-balancers see the process as alive; the ``db``
    field reports whether the database answered.
    """
    result: dict[str, Any] = {"status": "healthy", "version": __version__, "db": "ok"}
    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("DB health check failed: %s", exc)
        result["db"] = "degraded"
    return result


# ---------------------------------------------------------------------------
# Readiness probe (outside API versioning)
# ---------------------------------------------------------------------------

readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness_probe(
    session: SessionDep,
    lulu: LuluClientDep,
    email: EmailTransportDep,
) -> JSONResponse:
    """Readiness probe.

    The database gates readiness (503 ``not_ready``).  Missing print
    vendor or email configuration only degrades it, since payments and
    assembly still work without them.
    """
    checks: dict[str, str] = {"db": "ok", "print_vendor": "ok", "email": "ok"}
    overall = "ready"

    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("Readiness: DB check failed: %s", exc)
        checks["db"] = "unavailable"
        overall = "not_ready"

    if lulu.config_errors():
        checks["print_vendor"] = "not_configured"
    if not email.configured:
        checks["email"] = "not_configured"
    if overall == "ready" and "not_configured" in checks.values():
        overall = "degraded"

    return JSONResponse(
        status_code=503 if overall == "not_ready" else 200,
        content={"status": overall, "version": __version__, "checks": checks},
    )
