"""Status Projection: read side for escrow status and ledger confirmation.

Reads only the record store. The ledger is never queried on the read path,
so a view can say "not proven yet" while a submission is still in flight.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

from tagchain_escrow.domain.enums import ConfirmationState, EscrowStatus
from tagchain_escrow.domain.exceptions import EscrowNotFoundError
from tagchain_escrow.infrastructure.database.repositories import (
    EscrowLogRepository,
    EscrowRepository,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from tagchain_escrow.infrastructure.database.orm_models import (
        EscrowLogEntry,
        EscrowTransaction,
    )


def confirmation_state(status: EscrowStatus, consensus_proof_id: str | None) -> ConfirmationState:
    if consensus_proof_id is None:
        return ConfirmationState.NOT_PROVEN
    if status.is_terminal:
        return ConfirmationState.TERMINAL_AND_PROVEN
    return ConfirmationState.PROVEN


@dataclass(frozen=True)
class EscrowStatusView:
    transaction_id: str
    status: EscrowStatus
    consensus_proof_id: str | None
    updated_at: datetime
    confirmation: ConfirmationState

    @property
    def consensus_confirmed(self) -> bool:
        return self.consensus_proof_id is not None

    @classmethod
    def from_record(cls, record: EscrowTransaction) -> EscrowStatusView:
        status = EscrowStatus(record.status)
        return cls(
            transaction_id=record.id,
            status=status,
            consensus_proof_id=record.consensus_proof_id,
            updated_at=record.updated_at,
            confirmation=confirmation_state(status, record.consensus_proof_id),
        )


class StatusProjection:
    """Read operations for UIs, other services and the reconciliation job."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_status(self, transaction_id: str) -> EscrowStatusView:
        async with self._session_factory() as session:
            record = await EscrowRepository(session).get_by_id(transaction_id)
        if record is None:
            raise EscrowNotFoundError(transaction_id)
        return EscrowStatusView.from_record(record)

    async def get_transaction(self, transaction_id: str) -> EscrowTransaction:
        async with self._session_factory() as session:
            record = await EscrowRepository(session).get_by_id(transaction_id)
        if record is None:
            raise EscrowNotFoundError(transaction_id)
        return record

    async def list_for_party(
        self, party_id: str, status: EscrowStatus | None = None
    ) -> list[EscrowTransaction]:
        async with self._session_factory() as session:
            return await EscrowRepository(session).list_for_party(party_id, status)

    async def get_history(self, transaction_id: str) -> list[EscrowLogEntry]:
        """All logged attempts for a transaction, oldest first."""
        async with self._session_factory() as session:
            if await EscrowRepository(session).get_status(transaction_id) is None:
                raise EscrowNotFoundError(transaction_id)
            return await EscrowLogRepository(session).get_by_transaction(transaction_id)

    async def list_unproven(self, limit: int = 50) -> list[EscrowLogEntry]:
        """Log entries still waiting for a consensus proof (reconciliation interface)."""
        async with self._session_factory() as session:
            return await EscrowLogRepository(session).list_unproven(limit)

    async def watch(
        self,
        transaction_id: str,
        interval: float = 1.0,
    ) -> AsyncIterator[EscrowStatusView]:
        """Yield the current view, then a new one whenever status or proof changes.

        Stops after yielding a terminal-and-proven view, since nothing can
        change after that.
        """
        last: tuple[EscrowStatus, str | None] | None = None
        while True:
            view = await self.get_status(transaction_id)
            key = (view.status, view.consensus_proof_id)
            if key != last:
                last = key
                yield view
                if view.confirmation == ConfirmationState.TERMINAL_AND_PROVEN:
                    return
            await asyncio.sleep(interval)
