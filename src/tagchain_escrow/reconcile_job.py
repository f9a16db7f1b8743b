"""Reconciliation job entry point.

Retries ledger proofs for committed transitions whose log entries still have
no consensus proof. Safe to run from several hosts at once when Redis is
reachable: each log entry is claimed before it is resubmitted.

Usage:
    # One pass over the oldest 50 unproven entries
    uv run tagchain-reconcile

    # Keep running, one pass per minute
    uv run tagchain-reconcile --loop --interval 60
"""

from __future__ import annotations

import argparse
import asyncio
import socket

from tagchain_escrow.config import get_settings
from tagchain_escrow.logging_config import get_logger, setup_logging


async def run(limit: int, loop: bool, interval: float) -> int:
    """Run one or more reconciliation passes. Returns the number of failed entries."""
    from tagchain_escrow.infrastructure.consensus import build_consensus_client
    from tagchain_escrow.infrastructure.database.engine import close_db, get_session_factory
    from tagchain_escrow.infrastructure.redis_client import (
        RedisClaimLock,
        close_redis,
        get_redis,
        init_redis,
    )
    from tagchain_escrow.services import OrchestratorConfig, ReconciliationService

    settings = get_settings()
    logger = get_logger("tagchain_escrow.reconcile_job")

    lock = None
    try:
        await init_redis()
        lock = RedisClaimLock(
            get_redis(),
            ttl_seconds=settings.redis_reconcile_claim_ttl_seconds,
            owner=f"reconcile-{socket.gethostname()}",
        )
    except Exception as exc:
        logger.warning("reconciliation.redis_unavailable", error=str(exc))

    client = build_consensus_client(settings)
    config = OrchestratorConfig.from_settings(settings)
    service = ReconciliationService(get_session_factory(), client, config, lock=lock)

    failed = 0
    try:
        if config.ledger_enabled:
            await client.open()
        while True:
            report = await service.run_once(limit=limit)
            failed = report.failed
            if not loop:
                break
            await asyncio.sleep(interval)
    finally:
        await client.close()
        await close_db()
        await close_redis()
    return failed


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Tag Chain consensus proof reconciliation")
    parser.add_argument(
        "--limit",
        type=int,
        default=settings.reconcile_batch_size,
        help="Maximum log entries per pass.",
    )
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep running, one pass every --interval seconds.",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.reconcile_interval_seconds,
        help="Seconds between passes when --loop is set.",
    )
    args = parser.parse_args()

    setup_logging(log_level=settings.app_log_level, json_logs=not settings.is_development)
    failed = asyncio.run(run(args.limit, args.loop, args.interval))
    raise SystemExit(1 if failed else 0)


if __name__ == "__main__":
    main()
