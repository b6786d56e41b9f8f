"""Health and readiness endpoints.

/health (liveness) answers 200 whenever the process can respond; the
body says whether dependencies are degraded. /ready (readiness) answers
503 when a configured database is unreachable, so the load balancer
stops routing here without the orchestrator restarting the container.
"""

from __future__ import annotations

from fastapi import APIRouter, Response, status

from app.db import engine as db

router = APIRouter(tags=["health"])


async def _database_check() -> str:
    if db.engine is None:
        return "not_configured"
    return "ok" if await db.ping_database() else "degraded"


@router.get("/health")
async def health() -> dict:
    checks = {"database": await _database_check()}
    overall = "degraded" if "degraded" in checks.values() else "ok"
    return {"status": overall, "checks": checks}


@router.get("/ready")
async def ready() -> Response:
    if await _database_check() == "degraded":
        return Response(status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
    return Response(status_code=status.HTTP_200_OK)
