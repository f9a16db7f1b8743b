"""FastAPI application for the Tag Chain escrow bridge.

The lifespan is the composition root: it builds the consensus client and
the services exactly once and hangs them on app.state, where the route
dependencies pick them up.

Startup order: logging, database, Redis (optional), consensus client,
services. With the ledger enabled, missing operator credentials abort
startup instead of failing every request later.

Run with:
    uv run uvicorn tagchain_escrow.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from tagchain_escrow.config import get_settings
from tagchain_escrow.infrastructure.consensus import build_consensus_client
from tagchain_escrow.infrastructure.database import close_db, get_session_factory, init_db
from tagchain_escrow.infrastructure.redis_client import (
    RedisClaimLock,
    close_redis,
    get_redis,
    init_redis,
)
from tagchain_escrow.logging_config import get_logger, setup_logging
from tagchain_escrow.services import (
    ContractService,
    EscrowOrchestrator,
    OrchestratorConfig,
    ReconciliationService,
    StatusProjection,
)

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from tagchain_escrow.config import Settings

VERSION = "0.1.0"

logger = get_logger(__name__)


async def _connect_redis(settings: Settings) -> RedisClaimLock | None:
    """Redis backs idempotency keys and reconciliation claims; both degrade without it."""
    try:
        await init_redis()
    except Exception as exc:
        logger.warning("app.redis_unavailable", error=str(exc))
        return None
    return RedisClaimLock(
        get_redis(),
        ttl_seconds=settings.redis_reconcile_claim_ttl_seconds,
        owner=f"api-{uuid.uuid4()}",
    )


def _wire_services(app: FastAPI, settings: Settings, lock: RedisClaimLock | None) -> None:
    session_factory = get_session_factory()
    config = OrchestratorConfig.from_settings(settings)
    client = app.state.consensus_client

    app.state.session_factory = session_factory
    app.state.orchestrator = EscrowOrchestrator(
        session_factory,
        client,
        config,
        contract_service=ContractService.from_settings(settings),
    )
    app.state.projection = StatusProjection(session_factory)
    app.state.reconciler = ReconciliationService(session_factory, client, config, lock=lock)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    setup_logging(log_level=settings.app_log_level, json_logs=not settings.is_development)
    logger.info(
        "app.starting",
        env=settings.app_env,
        ledger_enabled=settings.feature_onchain,
        consensus_backend=settings.consensus_backend,
        network=settings.hedera_network,
    )

    await init_db()
    lock = await _connect_redis(settings)

    app.state.consensus_client = build_consensus_client(settings)
    if settings.feature_onchain:
        await app.state.consensus_client.open()
    _wire_services(app, settings, lock)
    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    try:
        yield
    finally:
        logger.info("app.shutting_down")
        await app.state.consensus_client.close()
        await close_db()
        await close_redis()
        logger.info("app.stopped")


def create_app() -> FastAPI:
    """Build the application: middleware, then the health, escrow and reconciliation routers."""
    from tagchain_escrow.api.middleware import setup_middleware
    from tagchain_escrow.api.routes.escrow import router as escrow_router
    from tagchain_escrow.api.routes.health import router as health_router
    from tagchain_escrow.api.routes.reconciliation import router as reconciliation_router

    settings = get_settings()
    app = FastAPI(
        title="Tag Chain Escrow Bridge",
        description=(
            "Escrow lifecycle for livestock trades. Every committed transition "
            "is logged and proven on a consensus ledger topic."
        ),
        version=VERSION,
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url=None,
    )
    setup_middleware(app)
    for router in (health_router, escrow_router, reconciliation_router):
        app.include_router(router)
    return app


app = create_app()
