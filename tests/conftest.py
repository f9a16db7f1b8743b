"""Shared test fixtures for the Tag Chain escrow test suite.

Provides:
    - A SQLite database (file-backed, one pooled connection) per test
    - The simulated consensus ledger
    - Wired orchestrator, projection and reconciliation services
    - Async test support via pytest-asyncio
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from tagchain_escrow.infrastructure.consensus.simulated import SimulatedConsensusClient
from tagchain_escrow.infrastructure.database.engine import build_session_factory
from tagchain_escrow.infrastructure.database.orm_models import Base
from tagchain_escrow.services.escrow_orchestrator import EscrowOrchestrator, OrchestratorConfig
from tagchain_escrow.services.reconciliation import ReconciliationService
from tagchain_escrow.services.status_projection import StatusProjection

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

ESCROW_TOPIC = "0.0.5001"
VERIFICATION_TOPIC = "0.0.5002"


def make_sqlite_engine(path: Path) -> AsyncEngine:
    """SQLite engine with a single pooled connection.

    Concurrent sessions queue for the connection, which mirrors row-level
    serialization without SQLite's "database is locked" errors.
    """
    return create_async_engine(
        f"sqlite+aiosqlite:///{path}",
        poolclass=AsyncAdaptedQueuePool,
        pool_size=1,
        max_overflow=0,
    )


# ---------------------------------------------------------------------------
# Database Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    engine = make_sqlite_engine(tmp_path / "escrow.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(db_engine)


# ---------------------------------------------------------------------------
# Service Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def ledger() -> SimulatedConsensusClient:
    return SimulatedConsensusClient()


@pytest.fixture
def orchestrator_config() -> OrchestratorConfig:
    return OrchestratorConfig(
        ledger_enabled=True,
        escrow_topic=ESCROW_TOPIC,
        verification_topic=VERIFICATION_TOPIC,
        submit_timeout_seconds=5.0,
        reconcile_min_age_seconds=0.0,
    )


@pytest.fixture
def orchestrator(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: SimulatedConsensusClient,
    orchestrator_config: OrchestratorConfig,
) -> EscrowOrchestrator:
    return EscrowOrchestrator(session_factory, ledger, orchestrator_config)


@pytest.fixture
def projection(session_factory: async_sessionmaker[AsyncSession]) -> StatusProjection:
    return StatusProjection(session_factory)


@pytest.fixture
def reconciler(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: SimulatedConsensusClient,
    orchestrator_config: OrchestratorConfig,
) -> ReconciliationService:
    return ReconciliationService(session_factory, ledger, orchestrator_config)


# ---------------------------------------------------------------------------
# Domain Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sample_escrow_data() -> dict:
    """Return valid create_escrow arguments."""
    return {
        "transaction_id": "T1",
        "buyer_id": "B",
        "seller_id": "S",
        "amount": Decimal("100"),
        "currency": "USD",
    }


@pytest_asyncio.fixture
async def funded_escrow(orchestrator: EscrowOrchestrator, sample_escrow_data: dict) -> str:
    """Create and fund T1, returning its id."""
    await orchestrator.create_escrow(**sample_escrow_data)
    await orchestrator.fund_escrow("T1", "transfer", Decimal("100"))
    return "T1"
