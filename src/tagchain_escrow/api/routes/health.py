"""Liveness and dependency check.

The database and Redis are checked. The ledger is only reported (enabled or
disabled): a ledger outage delays proofs but the service keeps committing
transitions, so it must not fail the health check.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from sqlalchemy import text

from tagchain_escrow.infrastructure.redis_client import get_redis
from tagchain_escrow.logging_config import get_logger
from tagchain_escrow.schemas.escrow import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)

HEALTHY = "healthy"


async def _database_status(request: Request) -> str:
    try:
        async with request.app.state.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("health.database_unreachable", error=str(exc))
        return f"unhealthy: {exc}"
    return HEALTHY


async def _redis_status() -> str:
    try:
        await get_redis().ping()
    except Exception as exc:
        logger.warning("health.redis_unreachable", error=str(exc))
        return f"unhealthy: {exc}"
    return HEALTHY


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health_check(request: Request) -> HealthResponse:
    database = await _database_status(request)
    redis = await _redis_status()
    ledger_enabled = request.app.state.orchestrator.config.ledger_enabled

    return HealthResponse(
        status="ok" if database == redis == HEALTHY else "degraded",
        version=request.app.version,
        database=database,
        redis=redis,
        ledger="enabled" if ledger_enabled else "disabled",
    )
