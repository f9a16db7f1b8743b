"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).

Status changes go through `EscrowRepository.compare_and_set_status`, a single
conditional UPDATE. It is the only concurrency boundary between racing
callers: the loser sees zero affected rows.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_, select, update

from tagchain_escrow.infrastructure.database.orm_models import (
    EscrowLogEntry,
    EscrowTransaction,
)

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from tagchain_escrow.domain.enums import EscrowStatus


class EscrowRepository:
    """Data access for escrow transactions."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, transaction: EscrowTransaction) -> EscrowTransaction:
        """Insert a new escrow transaction."""
        self._session.add(transaction)
        await self._session.flush()
        return transaction

    async def get_by_id(self, transaction_id: str) -> EscrowTransaction | None:
        """Fetch a transaction by its id."""
        result = await self._session.execute(
            select(EscrowTransaction).where(EscrowTransaction.id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def get_status(self, transaction_id: str) -> str | None:
        """Read the stored status straight from the database (bypasses the identity map)."""
        return await self._session.scalar(
            select(EscrowTransaction.status).where(EscrowTransaction.id == transaction_id)
        )

    async def list_for_party(
        self,
        party_id: str,
        status: EscrowStatus | None = None,
    ) -> list[EscrowTransaction]:
        """Fetch all transactions where the party is buyer or seller, newest first."""
        stmt = select(EscrowTransaction).where(
            or_(
                EscrowTransaction.buyer_id == party_id,
                EscrowTransaction.seller_id == party_id,
            )
        )
        if status is not None:
            stmt = stmt.where(EscrowTransaction.status == status.value)
        result = await self._session.execute(
            stmt.order_by(EscrowTransaction.created_at.desc())
        )
        return list(result.scalars().all())

    async def compare_and_set_status(
        self,
        transaction_id: str,
        expected: EscrowStatus,
        new_status: EscrowStatus,
        **fields: Any,
    ) -> bool:
        """Move `expected` -> `new_status` only if the row is still in `expected`.

        Clears the consensus proof in the same statement, since a proof always
        belongs to the status it was produced for. Returns False when another
        writer got there first.
        """
        result = await self._session.execute(
            update(EscrowTransaction)
            .where(
                EscrowTransaction.id == transaction_id,
                EscrowTransaction.status == expected.value,
            )
            .values(
                status=new_status.value,
                consensus_proof_id=None,
                updated_at=datetime.now(UTC),
                **fields,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def attach_consensus_proof(
        self,
        transaction_id: str,
        status: EscrowStatus,
        proof_id: str,
    ) -> bool:
        """Attach a proof if the row is still in the status the proof belongs to."""
        result = await self._session.execute(
            update(EscrowTransaction)
            .where(
                EscrowTransaction.id == transaction_id,
                EscrowTransaction.status == status.value,
                EscrowTransaction.consensus_proof_id.is_(None),
            )
            .values(consensus_proof_id=proof_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def attach_contract_proof(self, transaction_id: str, proof_id: str) -> None:
        """Record the latest successful contract call id."""
        await self._session.execute(
            update(EscrowTransaction)
            .where(EscrowTransaction.id == transaction_id)
            .values(contract_proof_id=proof_id)
            .execution_options(synchronize_session=False)
        )


class EscrowLogRepository:
    """Data access for the escrow attempt log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(
        self,
        transaction_id: str,
        event_type: str,
        old_status: EscrowStatus | None,
        new_status: EscrowStatus,
        message_payload: dict,
        topic_reference: str | None = None,
        actor: str = "SYSTEM",
    ) -> EscrowLogEntry:
        """Append a log entry for a committed attempt."""
        entry = EscrowLogEntry(
            transaction_id=transaction_id,
            event_type=event_type,
            old_status=old_status.value if old_status else None,
            new_status=new_status.value,
            actor=actor,
            topic_reference=topic_reference,
            message_payload=message_payload,
        )
        self._session.add(entry)
        await self._session.flush()
        return entry

    async def get_by_id(self, log_id: uuid.UUID) -> EscrowLogEntry | None:
        result = await self._session.execute(
            select(EscrowLogEntry).where(EscrowLogEntry.id == log_id)
        )
        return result.scalar_one_or_none()

    async def get_by_transaction(self, transaction_id: str) -> list[EscrowLogEntry]:
        """Fetch all entries for a transaction in chronological order."""
        result = await self._session.execute(
            select(EscrowLogEntry)
            .where(EscrowLogEntry.transaction_id == transaction_id)
            .order_by(EscrowLogEntry.created_at.asc())
        )
        return list(result.scalars().all())

    async def attach_consensus_proof(self, log_id: uuid.UUID, proof_id: str) -> bool:
        """Backfill the proof id. Never overwrites an existing proof."""
        result = await self._session.execute(
            update(EscrowLogEntry)
            .where(
                EscrowLogEntry.id == log_id,
                EscrowLogEntry.consensus_proof_id.is_(None),
            )
            .values(consensus_proof_id=proof_id, proven_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def attach_contract_proof(self, log_id: uuid.UUID, proof_id: str) -> None:
        await self._session.execute(
            update(EscrowLogEntry)
            .where(
                EscrowLogEntry.id == log_id,
                EscrowLogEntry.contract_proof_id.is_(None),
            )
            .values(contract_proof_id=proof_id)
            .execution_options(synchronize_session=False)
        )

    async def list_unproven(
        self, limit: int = 50, committed_before: datetime | None = None
    ) -> list[EscrowLogEntry]:
        """Entries still awaiting a consensus proof, oldest first.

        `committed_before` excludes entries written after that instant.
        """
        query = select(EscrowLogEntry).where(EscrowLogEntry.consensus_proof_id.is_(None))
        if committed_before is not None:
            query = query.where(EscrowLogEntry.created_at <= committed_before)
        result = await self._session.execute(
            query.order_by(EscrowLogEntry.created_at.asc()).limit(limit)
        )
        return list(result.scalars().all())
