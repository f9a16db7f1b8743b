#!/usr/bin/env python3
"""End-to-end simulation of the Tag Chain escrow bridge.

Simulates four scenarios with a buyer, a seller and an in-process ledger:

    Scenario 1: Happy Path
        - Buyer creates an escrow, funds it by transfer
        - Seller's release is proven on the ledger -> terminal_and_proven

    Scenario 2: Skipped Funding
        - Buyer creates an escrow
        - Release is attempted straight away -> PreconditionFailed, still pending

    Scenario 3: Ledger Outage + Reconciliation
        - Funding commits while the ledger is unreachable -> funded, unconfirmed
        - The reconciliation job runs once the ledger is back -> proof attached

    Scenario 4: Concurrent Release
        - Two releases race on one funded escrow -> exactly one wins

Usage:
    # Option A: With Docker (PostgreSQL):
    docker compose up -d
    uv run python simulation.py

    # Option B: Without Docker (SQLite file in a temp directory):
    uv run python simulation.py --sqlite

    # Run a specific scenario:
    uv run python simulation.py --sqlite --scenario 3
"""

from __future__ import annotations

import argparse
import asyncio
import tempfile
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from tagchain_escrow.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from tagchain_escrow.domain.exceptions import PreconditionFailed, TransportError  # noqa: E402
from tagchain_escrow.infrastructure.consensus import SimulatedConsensusClient  # noqa: E402
from tagchain_escrow.services import (  # noqa: E402
    ContractService,
    EscrowOrchestrator,
    OrchestratorConfig,
    ReconciliationService,
    StatusProjection,
)

ESCROW_TOPIC = "0.0.5001"
VERIFICATION_TOPIC = "0.0.5002"

# Module-level state
_sqlite_engine = None
_sqlite_dir: tempfile.TemporaryDirectory | None = None
_session_factory = None


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------
async def init_database(use_sqlite: bool = False):
    """Initialize database engine and create tables."""
    global _sqlite_engine, _sqlite_dir, _session_factory

    if use_sqlite:
        from sqlalchemy.ext.asyncio import create_async_engine
        from sqlalchemy.pool import AsyncAdaptedQueuePool

        from tagchain_escrow.infrastructure.database.engine import build_session_factory
        from tagchain_escrow.infrastructure.database.orm_models import Base

        _sqlite_dir = tempfile.TemporaryDirectory()
        db_path = Path(_sqlite_dir.name) / "simulation.db"
        # One pooled connection: SQLite allows a single writer, and racing
        # transitions queue for it instead of failing with "database is locked".
        _sqlite_engine = create_async_engine(
            f"sqlite+aiosqlite:///{db_path}",
            echo=False,
            poolclass=AsyncAdaptedQueuePool,
            pool_size=1,
            max_overflow=0,
        )
        _session_factory = build_session_factory(_sqlite_engine)
        async with _sqlite_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.sqlite_initialized", path=str(db_path))
    else:
        from tagchain_escrow.infrastructure.database.engine import (
            get_session_factory,
            init_db,
        )

        await init_db()
        _session_factory = get_session_factory()


async def shutdown_database():
    """Close database connections."""
    global _sqlite_engine, _sqlite_dir, _session_factory

    if _sqlite_engine is not None:
        await _sqlite_engine.dispose()
        _sqlite_engine = None
        if _sqlite_dir is not None:
            _sqlite_dir.cleanup()
            _sqlite_dir = None
    else:
        from tagchain_escrow.infrastructure.database.engine import close_db

        await close_db()
    _session_factory = None


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------
@dataclass
class Marketplace:
    """The services a marketplace backend would build in its lifespan."""

    ledger: SimulatedConsensusClient
    orchestrator: EscrowOrchestrator
    projection: StatusProjection
    reconciler: ReconciliationService


def build_marketplace() -> Marketplace:
    ledger = SimulatedConsensusClient(latency_seconds=0.01)
    config = OrchestratorConfig(
        ledger_enabled=True,
        escrow_topic=ESCROW_TOPIC,
        verification_topic=VERIFICATION_TOPIC,
        submit_timeout_seconds=5.0,
    )
    return Marketplace(
        ledger=ledger,
        orchestrator=EscrowOrchestrator(
            _session_factory,
            ledger,
            config,
            contract_service=ContractService(enabled=True, simulate=True),
        ),
        projection=StatusProjection(_session_factory),
        reconciler=ReconciliationService(_session_factory, ledger, config),
    )


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


def print_outcome(outcome: Any) -> None:
    """Pretty-print an orchestrator outcome."""
    icon = "✅" if outcome.consensus_confirmed else "⏳"
    print(f"  Status: {outcome.status.value}")
    print(f"  {icon} Ledger proof: {outcome.consensus_proof_id or 'pending'}")
    if outcome.consensus_error:
        print(f"  Ledger error: {outcome.consensus_error.value}")
    if outcome.contract.contract_proof_id:
        print(f"  Contract TX: {outcome.contract.contract_proof_id[:20]}...")


async def print_logs(market: Marketplace, transaction_id: str) -> None:
    """Print every logged attempt for a transaction."""
    entries = await market.projection.get_history(transaction_id)
    print("\n  📜 Escrow log:")
    for i, entry in enumerate(entries, 1):
        old = entry.old_status or "-"
        proof = entry.consensus_proof_id or "unproven"
        print(f"    {i}. [{entry.event_type}] {old} → {entry.new_status} ({proof})")
    print()


# ===========================================================================
# Scenario 1: Happy Path
# ===========================================================================
async def scenario_1_happy_path() -> None:
    """Create, fund, release; every step proven."""
    banner("SCENARIO 1: Happy Path (create, fund, release)")
    market = build_marketplace()

    section("Step 1: Buyer creates escrow")
    print_outcome(await market.orchestrator.create_escrow("T1", "B", "S", Decimal("100"), "USD"))

    section("Step 2: Buyer funds by transfer")
    print_outcome(await market.orchestrator.fund_escrow("T1", "transfer", Decimal("100")))

    section("Step 3: Inspector verifies the animals")
    print_outcome(await market.orchestrator.verify_escrow("T1", "INSPECTOR-7", "tags match"))

    section("Step 4: Seller releases")
    print_outcome(await market.orchestrator.release_escrow("T1", "S"))

    view = await market.projection.get_status("T1")
    print(f"\n  🛡️  Confirmation: {view.confirmation.value}")
    await print_logs(market, "T1")


# ===========================================================================
# Scenario 2: Skipped Funding
# ===========================================================================
async def scenario_2_skipped_funding() -> None:
    """Release straight after create is refused."""
    banner("SCENARIO 2: Skipped Funding (release before fund)")
    market = build_marketplace()

    section("Step 1: Buyer creates escrow")
    await market.orchestrator.create_escrow("T2", "B", "S", Decimal("250"), "USD")

    section("Step 2: Seller tries to release unfunded escrow")
    try:
        await market.orchestrator.release_escrow("T2", "S")
        raise AssertionError("release of an unfunded escrow must fail")
    except PreconditionFailed as exc:
        print(f"  ❌ Refused: {exc.message}")

    view = await market.projection.get_status("T2")
    assert view.status.value == "pending", f"Expected pending, got {view.status.value}"
    print(f"  ✅ Status still {view.status.value}")


# ===========================================================================
# Scenario 3: Ledger Outage + Reconciliation
# ===========================================================================
async def scenario_3_ledger_outage() -> None:
    """Funding commits during an outage; reconciliation proves it later."""
    banner("SCENARIO 3: Ledger Outage (commit now, prove later)")
    market = build_marketplace()

    section("Step 1: Buyer creates escrow")
    await market.orchestrator.create_escrow("T3", "B", "S", Decimal("75.50"), "USD")

    section("Step 2: Buyer funds while the ledger is unreachable")
    market.ledger.fail_next(TransportError("connection refused"))
    outcome = await market.orchestrator.fund_escrow("T3", "mint", Decimal("75.50"))
    print_outcome(outcome)
    assert outcome.status.value == "funded" and not outcome.consensus_confirmed

    section("Step 3: Ledger is back, reconciliation runs")
    report = await market.reconciler.run_once()
    print(f"  Reconciliation: {report.to_dict()}")

    view = await market.projection.get_status("T3")
    print(f"  ✅ Proof attached: {view.consensus_proof_id}")
    await print_logs(market, "T3")


# ===========================================================================
# Scenario 4: Concurrent Release
# ===========================================================================
async def scenario_4_concurrent_release() -> None:
    """Two releases race; the compare-and-swap lets exactly one through."""
    banner("SCENARIO 4: Concurrent Release (exactly one winner)")
    market = build_marketplace()

    await market.orchestrator.create_escrow("T4", "B", "S", Decimal("40"), "USD")
    await market.orchestrator.fund_escrow("T4", "transfer", Decimal("40"))

    section("Two releases at once")
    results = await asyncio.gather(
        market.orchestrator.release_escrow("T4", "S"),
        market.orchestrator.release_escrow("T4", "S"),
        return_exceptions=True,
    )
    wins = [r for r in results if not isinstance(r, BaseException)]
    refusals = [r for r in results if isinstance(r, PreconditionFailed)]
    print(f"  Succeeded: {len(wins)}, refused: {len(refusals)}")
    assert len(wins) == 1 and len(refusals) == 1
    await print_logs(market, "T4")


# ===========================================================================
# Main
# ===========================================================================
SCENARIOS = {
    1: scenario_1_happy_path,
    2: scenario_2_skipped_funding,
    3: scenario_3_ledger_outage,
    4: scenario_4_concurrent_release,
}


async def run_all(use_sqlite: bool = False) -> None:
    """Run all scenarios sequentially."""
    await init_database(use_sqlite=use_sqlite)

    try:
        print("\n" + "🐄" * 35)
        print("  TAG CHAIN ESCROW BRIDGE SIMULATION")
        db_type = "SQLite (temp file)" if use_sqlite else "PostgreSQL"
        print(f"  Database: {db_type}")
        print("  Ledger: simulated")
        print("🐄" * 35 + "\n")

        for scenario in SCENARIOS.values():
            await scenario()

        print("\n" + "=" * 70)
        print("  ✅ ALL SCENARIOS COMPLETED SUCCESSFULLY")
        print("=" * 70 + "\n")

    finally:
        await shutdown_database()


async def run_scenario(num: int, use_sqlite: bool = False) -> None:
    """Run a specific scenario."""
    await init_database(use_sqlite=use_sqlite)

    try:
        if num not in SCENARIOS:
            print(f"Unknown scenario {num}. Available: {', '.join(map(str, SCENARIOS))}")
            return
        await SCENARIOS[num]()
    finally:
        await shutdown_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Tag Chain Escrow Bridge Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1-4). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use a temporary SQLite file instead of PostgreSQL (no Docker needed).",
    )
    args = parser.parse_args()

    if args.scenario == 0:
        asyncio.run(run_all(use_sqlite=args.sqlite))
    else:
        asyncio.run(run_scenario(args.scenario, use_sqlite=args.sqlite))
