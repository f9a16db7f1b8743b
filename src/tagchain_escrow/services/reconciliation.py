"""Reconciliation Service: retries proof attachment for unproven log entries.

Keyed off "transition committed but consensus_proof_id is null". For each
such log entry the stored message payload is resubmitted verbatim, and the
resulting proof is attached to the entry and, if the transaction is still in
the status that entry produced, to the transaction.

Idempotent per entry: an entry that already carries a proof is never
resubmitted and its proof is never overwritten. When several job instances
run, pass a claim lock so two of them never resubmit the same entry (the
ledger does not deduplicate).

Only entries older than the submit deadline plus a margin are picked up, so
the request that committed an entry has finished its own attempt first.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from tagchain_escrow.domain.enums import EscrowEventType, EscrowStatus
from tagchain_escrow.domain.exceptions import (
    ConsensusError,
    MessageValidationError,
    RejectedError,
    StorageError,
)
from tagchain_escrow.infrastructure.database.repositories import (
    EscrowLogRepository,
    EscrowRepository,
)
from tagchain_escrow.logging_config import get_logger
from tagchain_escrow.schemas.consensus_messages import decode_message

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from tagchain_escrow.domain.consensus_protocol import ConsensusClient
    from tagchain_escrow.infrastructure.redis_client import RedisClaimLock
    from tagchain_escrow.services.escrow_orchestrator import OrchestratorConfig

logger = get_logger(__name__)


class ReconcileResult(enum.StrEnum):
    PROVEN = "proven"
    ALREADY_PROVEN = "already_proven"
    FAILED = "failed"
    SKIPPED = "skipped"


_SETTLED = frozenset({ReconcileResult.PROVEN, ReconcileResult.ALREADY_PROVEN})


@dataclass(frozen=True)
class ReconcileOutcome:
    log_entry_id: uuid.UUID
    result: ReconcileResult
    proof_id: str | None = None
    error: str | None = None


@dataclass
class ReconciliationReport:
    examined: int = 0
    proven: int = 0
    failed: int = 0
    skipped: int = 0

    def record(self, outcome: ReconcileOutcome) -> None:
        self.examined += 1
        if outcome.result == ReconcileResult.PROVEN:
            self.proven += 1
        elif outcome.result == ReconcileResult.FAILED:
            self.failed += 1
        else:
            self.skipped += 1

    def to_dict(self) -> dict[str, int]:
        return {
            "examined": self.examined,
            "proven": self.proven,
            "failed": self.failed,
            "skipped": self.skipped,
        }


class ReconciliationService:
    """Out-of-band retry of ledger proofs for committed transitions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        consensus_client: ConsensusClient,
        config: OrchestratorConfig,
        lock: RedisClaimLock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._client = consensus_client
        self._config = config
        self._lock = lock

    async def run_once(self, limit: int = 50) -> ReconciliationReport:
        """Process up to `limit` unproven entries, oldest first.

        Entries are handled one at a time so a transaction's events reach the
        topic in the order they were committed. Once one of a transaction's
        entries stays unproven, its later entries wait for the next run.
        Entries younger than the reconcile window are left to the request
        that is still submitting them.
        """
        report = ReconciliationReport()
        if not self._config.ledger_enabled:
            logger.info("reconciliation.skipped", reason="ledger disabled")
            return report

        cutoff = datetime.now(UTC) - timedelta(seconds=self._config.reconcile_after_seconds)
        try:
            async with self._session_factory() as session:
                entries = await EscrowLogRepository(session).list_unproven(
                    limit, committed_before=cutoff
                )
                pending = [(entry.id, entry.transaction_id) for entry in entries]
        except SQLAlchemyError as err:
            raise StorageError(f"Failed to list unproven log entries: {err}") from err

        blocked: set[str] = set()
        for log_id, transaction_id in pending:
            if transaction_id in blocked:
                outcome = ReconcileOutcome(
                    log_id, ReconcileResult.SKIPPED, error="earlier entry unproven"
                )
            else:
                outcome = await self.reconcile_entry(log_id)
            if outcome.result not in _SETTLED:
                blocked.add(transaction_id)
            report.record(outcome)

        logger.info("reconciliation.run_complete", **report.to_dict())
        return report

    async def reconcile_entry(self, log_id: uuid.UUID) -> ReconcileOutcome:
        """Resubmit one entry's stored message and attach the proof."""
        if not self._config.ledger_enabled:
            return ReconcileOutcome(log_id, ReconcileResult.SKIPPED, error="ledger disabled")

        claim_key = str(log_id)
        if self._lock is not None and not await self._lock.acquire(claim_key):
            logger.debug("reconciliation.claimed_elsewhere", log_entry_id=claim_key)
            return ReconcileOutcome(log_id, ReconcileResult.SKIPPED, error="claimed elsewhere")
        try:
            return await self._reconcile(log_id)
        finally:
            if self._lock is not None:
                await self._lock.release(claim_key)

    async def _reconcile(self, log_id: uuid.UUID) -> ReconcileOutcome:
        log = logger.bind(log_entry_id=str(log_id))

        try:
            async with self._session_factory() as session:
                entry = await EscrowLogRepository(session).get_by_id(log_id)
        except SQLAlchemyError as err:
            log.error("reconciliation.storage_failed", stage="load", error=str(err))
            return ReconcileOutcome(log_id, ReconcileResult.FAILED, error=str(err))
        if entry is None:
            return ReconcileOutcome(log_id, ReconcileResult.SKIPPED, error="not found")
        if entry.consensus_proof_id is not None:
            return ReconcileOutcome(
                log_id, ReconcileResult.ALREADY_PROVEN, proof_id=entry.consensus_proof_id
            )

        try:
            message = decode_message(entry.message_payload)
        except MessageValidationError as err:
            log.error("reconciliation.undecodable_payload", error=err.message)
            return ReconcileOutcome(log_id, ReconcileResult.FAILED, error=err.message)

        event_type = EscrowEventType(entry.event_type)
        topic_id = entry.topic_reference or self._config.topic_for(event_type)
        try:
            receipt = await asyncio.wait_for(
                self._client.submit(topic_id, message),
                timeout=self._config.submit_timeout_seconds,
            )
        except TimeoutError:
            log.warning("reconciliation.submit_timeout")
            return ReconcileOutcome(log_id, ReconcileResult.FAILED, error="timeout")
        except RejectedError as err:
            log.error("reconciliation.submit_rejected", status=err.status, error=err.message)
            return ReconcileOutcome(log_id, ReconcileResult.FAILED, error=err.message)
        except ConsensusError as err:
            log.warning("reconciliation.submit_failed", error=err.message)
            return ReconcileOutcome(log_id, ReconcileResult.FAILED, error=err.message)
        except Exception as err:
            log.exception("reconciliation.submit_failed", error=str(err))
            return ReconcileOutcome(log_id, ReconcileResult.FAILED, error=str(err))

        try:
            async with self._session_factory() as session, session.begin():
                attached = await EscrowLogRepository(session).attach_consensus_proof(
                    log_id, receipt.proof_id
                )
                if attached and event_type != EscrowEventType.VERIFY:
                    await EscrowRepository(session).attach_consensus_proof(
                        entry.transaction_id, EscrowStatus(entry.new_status), receipt.proof_id
                    )
        except SQLAlchemyError as err:
            log.error(
                "reconciliation.storage_failed",
                stage="attach",
                proof_id=receipt.proof_id,
                error=str(err),
            )
            return ReconcileOutcome(
                log_id, ReconcileResult.FAILED, proof_id=receipt.proof_id, error=str(err)
            )

        if not attached:
            log.warning("reconciliation.proof_raced", proof_id=receipt.proof_id)
            return ReconcileOutcome(log_id, ReconcileResult.ALREADY_PROVEN)

        log.info(
            "reconciliation.proven",
            transaction_id=entry.transaction_id,
            event_type=entry.event_type,
            proof_id=receipt.proof_id,
        )
        return ReconcileOutcome(log_id, ReconcileResult.PROVEN, proof_id=receipt.proof_id)
