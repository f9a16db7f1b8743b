"""Escrow Orchestrator: lifecycle transitions with consensus logging.

This is the application layer that coordinates between:
    - Domain state machine (transition guard)
    - Repositories (record + attempt log)
    - Consensus client (ledger proof)
    - Contract service (optional side channel)

Every operation runs the same steps:
    1. Read the record and guard the transition.
    2. Derive the consensus message for the event.
    3. Conditionally write the new status and append the log entry in ONE
       storage transaction, then commit.
    4. Optionally mirror the event on the escrow contract.
    5. Submit the message to the ledger, bounded by a deadline.
    6. Attach the proof to the log entry and (if still current) the record.

Ledger failures in step 5 never undo step 3. The caller gets the committed
status plus `consensus_confirmed=False`, and the unproven log entry is left
for the reconciliation job.

Both REST routes and the simulation script call into this service,
ensuring a single source of truth for all business rules.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from tagchain_escrow.domain.enums import (
    ConsensusFailure,
    EscrowEventType,
    EscrowStatus,
    FundingMethod,
)
from tagchain_escrow.domain.exceptions import (
    ConfigurationError,
    ConsensusTimeoutError,
    EscrowNotFoundError,
    InvalidEscrowDataError,
    MessageValidationError,
    PreconditionFailed,
    RejectedError,
    StorageError,
    TransportError,
)
from tagchain_escrow.domain.state_machine import guard_transition
from tagchain_escrow.infrastructure.database.orm_models import EscrowTransaction
from tagchain_escrow.infrastructure.database.repositories import (
    EscrowLogRepository,
    EscrowRepository,
)
from tagchain_escrow.logging_config import get_logger
from tagchain_escrow.schemas.consensus_messages import (
    build_message,
    message_to_dict,
    on_chain_user_id,
)
from tagchain_escrow.services.contract_service import SKIPPED, ContractCallResult

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from tagchain_escrow.config import Settings
    from tagchain_escrow.domain.consensus_protocol import ConsensusClient
    from tagchain_escrow.schemas.consensus_messages import ConsensusMessage
    from tagchain_escrow.services.contract_service import ContractService

logger = get_logger(__name__)

RECONCILE_MARGIN_SECONDS = 5.0

_EVENT_LOG_NAMES = {
    EscrowEventType.CREATE: "escrow.created",
    EscrowEventType.FUND: "escrow.funded",
    EscrowEventType.RELEASE: "escrow.released",
    EscrowEventType.DISPUTE: "escrow.disputed",
    EscrowEventType.CANCEL: "escrow.cancelled",
    EscrowEventType.VERIFY: "escrow.verified",
}


@dataclass(frozen=True)
class OrchestratorConfig:
    """Ledger behaviour, fixed at construction time.

    Attributes:
        ledger_enabled: When False nothing is submitted; every outcome reports
            consensus_error="disabled".
        escrow_topic: Topic for lifecycle events.
        verification_topic: Topic for provenance verification attestations.
        submit_timeout_seconds: Deadline for one ledger submission. Per-call
            timeouts may shorten it, never extend it.
        reconcile_min_age_seconds: Reconciliation leaves younger entries
            alone, since their original submission may still be in flight.
            None means the submit deadline plus RECONCILE_MARGIN_SECONDS.
    """

    ledger_enabled: bool
    escrow_topic: str
    verification_topic: str
    submit_timeout_seconds: float = 30.0
    reconcile_min_age_seconds: float | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> OrchestratorConfig:
        return cls(
            ledger_enabled=settings.feature_onchain,
            escrow_topic=settings.consensus_topic_escrow,
            verification_topic=settings.verification_topic,
            submit_timeout_seconds=settings.consensus_submit_timeout_seconds,
            reconcile_min_age_seconds=settings.reconcile_min_age_seconds,
        )

    @property
    def reconcile_after_seconds(self) -> float:
        if self.reconcile_min_age_seconds is not None:
            return self.reconcile_min_age_seconds
        return self.submit_timeout_seconds + RECONCILE_MARGIN_SECONDS

    def topic_for(self, event_type: EscrowEventType) -> str:
        if event_type == EscrowEventType.VERIFY:
            return self.verification_topic
        return self.escrow_topic


@dataclass(frozen=True)
class EscrowOutcome:
    """Result of a committed lifecycle operation."""

    transaction_id: str
    status: EscrowStatus
    consensus_proof_id: str | None
    consensus_confirmed: bool
    consensus_error: ConsensusFailure | None
    log_entry_id: uuid.UUID
    contract: ContractCallResult = SKIPPED

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "status": self.status.value,
            "consensus_proof_id": self.consensus_proof_id,
            "consensus_confirmed": self.consensus_confirmed,
            "consensus_error": self.consensus_error.value if self.consensus_error else None,
            "log_entry_id": str(self.log_entry_id),
            "contract": self.contract.to_dict(),
        }


@dataclass(frozen=True)
class _CommittedAttempt:
    record: EscrowTransaction
    status: EscrowStatus
    event_type: EscrowEventType
    message: ConsensusMessage
    topic_id: str
    log_entry_id: uuid.UUID


def _parse_amount(amount: Decimal | int | str) -> Decimal:
    try:
        value = Decimal(str(amount))
    except InvalidOperation as err:
        raise InvalidEscrowDataError(f"Invalid amount: {amount!r}") from err
    if not value.is_finite() or value <= 0:
        raise InvalidEscrowDataError(f"Amount must be positive, got {amount}")
    return value


def _derive_message(event_type: EscrowEventType, **fields: Any) -> ConsensusMessage:
    try:
        return build_message(event_type, **fields)
    except MessageValidationError as err:
        raise InvalidEscrowDataError(err.message) from err


class EscrowOrchestrator:
    """Drives escrow transactions through their lifecycle.

    Stateless between calls. The per-row compare-and-swap in
    EscrowRepository is the only concurrency boundary, and no database
    transaction is held open while waiting on the ledger.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        consensus_client: ConsensusClient,
        config: OrchestratorConfig,
        contract_service: ContractService | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._client = consensus_client
        self._config = config
        self._contracts = contract_service

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_escrow(
        self,
        transaction_id: str,
        buyer_id: str,
        seller_id: str,
        amount: Decimal | int | str,
        currency: str,
        *,
        timeout: float | None = None,
    ) -> EscrowOutcome:
        """Create a new escrow transaction in pending state."""
        value = _parse_amount(amount)
        currency = currency.strip().upper()
        if not 3 <= len(currency) <= 10:
            raise InvalidEscrowDataError(f"Invalid currency code: {currency!r}")
        if buyer_id == seller_id:
            raise InvalidEscrowDataError("Buyer and seller must be different parties")

        escrow_reference = f"escrow-{uuid.uuid4()}"
        message = _derive_message(
            EscrowEventType.CREATE,
            transaction_id=transaction_id,
            escrow_id=escrow_reference,
            buyer_on_chain_id=on_chain_user_id(buyer_id),
            seller_on_chain_id=on_chain_user_id(seller_id),
            amount=value,
            currency=currency,
        )
        topic_id = self._config.topic_for(EscrowEventType.CREATE)

        try:
            async with self._session_factory() as session, session.begin():
                repo = EscrowRepository(session)
                existing = await repo.get_by_id(transaction_id)
                if existing is not None:
                    raise PreconditionFailed(
                        transaction_id, existing.status, EscrowEventType.CREATE.value
                    )
                record = await repo.create(
                    EscrowTransaction(
                        id=transaction_id,
                        escrow_reference=escrow_reference,
                        buyer_id=buyer_id,
                        seller_id=seller_id,
                        amount=value,
                        currency=currency,
                        status=EscrowStatus.PENDING.value,
                    )
                )
                entry = await EscrowLogRepository(session).append(
                    transaction_id=transaction_id,
                    event_type=EscrowEventType.CREATE.value,
                    old_status=None,
                    new_status=EscrowStatus.PENDING,
                    message_payload=message_to_dict(message),
                    topic_reference=topic_id,
                    actor=buyer_id,
                )
        except IntegrityError as err:
            # Lost a race with a concurrent create for the same id.
            raise PreconditionFailed(
                transaction_id, None, EscrowEventType.CREATE.value
            ) from err
        except SQLAlchemyError as err:
            raise self._storage_error(transaction_id, EscrowEventType.CREATE, err) from err

        attempt = _CommittedAttempt(
            record=record,
            status=EscrowStatus.PENDING,
            event_type=EscrowEventType.CREATE,
            message=message,
            topic_id=topic_id,
            log_entry_id=entry.id,
        )
        logger.info(
            "escrow.created",
            transaction_id=transaction_id,
            amount=str(value),
            currency=currency,
        )
        return await self._after_commit(attempt, timeout)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def fund_escrow(
        self,
        transaction_id: str,
        funding_method: FundingMethod | str,
        amount: Decimal | int | str,
        *,
        timeout: float | None = None,
    ) -> EscrowOutcome:
        """Record buyer funding and transition pending -> funded."""
        try:
            method = FundingMethod(funding_method)
        except ValueError as err:
            raise InvalidEscrowDataError(f"Unknown funding method: {funding_method!r}") from err
        value = _parse_amount(amount)

        def check(record: EscrowTransaction) -> None:
            if value != record.amount:
                raise InvalidEscrowDataError(
                    f"Funding amount {value} does not match escrow amount {record.amount}"
                )

        return await self._transition(
            transaction_id,
            EscrowEventType.FUND,
            actor=None,
            message_fields=lambda r: {
                "amount": r.amount,
                "currency": r.currency,
                "funding_method": method,
            },
            record_fields={"funding_method": method.value},
            check=check,
            timeout=timeout,
        )

    async def release_escrow(
        self,
        transaction_id: str,
        released_by: str,
        *,
        timeout: float | None = None,
    ) -> EscrowOutcome:
        """Release held funds to the seller (funded -> released)."""
        return await self._transition(
            transaction_id,
            EscrowEventType.RELEASE,
            actor=released_by,
            message_fields=lambda r: {
                "seller_id": r.seller_id,
                "amount": r.amount,
                "currency": r.currency,
                "released_by": released_by,
            },
            record_fields={"released_by": released_by},
            timeout=timeout,
        )

    async def dispute_escrow(
        self,
        transaction_id: str,
        reason: str,
        raised_by: str | None = None,
        *,
        timeout: float | None = None,
    ) -> EscrowOutcome:
        """Freeze a funded trade pending dispute resolution (funded -> disputed)."""
        return await self._transition(
            transaction_id,
            EscrowEventType.DISPUTE,
            actor=raised_by,
            message_fields=lambda r: {"reason": reason, "raised_by_user_id": raised_by},
            record_fields={"dispute_reason": reason},
            timeout=timeout,
        )

    async def cancel_escrow(
        self,
        transaction_id: str,
        cancelled_by: str,
        reason: str | None = None,
        *,
        timeout: float | None = None,
    ) -> EscrowOutcome:
        """Cancel a trade that was never funded (pending -> cancelled)."""
        return await self._transition(
            transaction_id,
            EscrowEventType.CANCEL,
            actor=cancelled_by,
            message_fields=lambda r: {"cancelled_by": cancelled_by, "reason": reason},
            record_fields={},
            timeout=timeout,
        )

    async def verify_escrow(
        self,
        transaction_id: str,
        verifier_id: str,
        note: str | None = None,
        *,
        timeout: float | None = None,
    ) -> EscrowOutcome:
        """Log a provenance verification attestation for a trade.

        Does not change status. The proof is attached to the log entry only,
        since the record's proof belongs to its lifecycle status.
        """
        event_type = EscrowEventType.VERIFY
        topic_id = self._config.topic_for(event_type)
        try:
            async with self._session_factory() as session, session.begin():
                record = await self._get_record_or_raise(session, transaction_id)
                current = EscrowStatus(record.status)
                if current == EscrowStatus.CANCELLED:
                    raise PreconditionFailed(transaction_id, current.value, event_type.value)
                message = _derive_message(
                    event_type,
                    transaction_id=transaction_id,
                    verifier_id=verifier_id,
                    note=note,
                )
                entry = await EscrowLogRepository(session).append(
                    transaction_id=transaction_id,
                    event_type=event_type.value,
                    old_status=current,
                    new_status=current,
                    message_payload=message_to_dict(message),
                    topic_reference=topic_id,
                    actor=verifier_id,
                )
        except SQLAlchemyError as err:
            raise self._storage_error(transaction_id, event_type, err) from err

        attempt = _CommittedAttempt(
            record=record,
            status=current,
            event_type=event_type,
            message=message,
            topic_id=topic_id,
            log_entry_id=entry.id,
        )
        logger.info("escrow.verified", transaction_id=transaction_id, verifier=verifier_id)
        return await self._after_commit(attempt, timeout)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _transition(
        self,
        transaction_id: str,
        event_type: EscrowEventType,
        *,
        actor: str | None,
        message_fields: Callable[[EscrowTransaction], dict[str, Any]],
        record_fields: dict[str, Any],
        timeout: float | None,
        check: Callable[[EscrowTransaction], None] | None = None,
    ) -> EscrowOutcome:
        """Guard, derive, compare-and-swap and log one status transition."""
        topic_id = self._config.topic_for(event_type)
        try:
            async with self._session_factory() as session, session.begin():
                repo = EscrowRepository(session)
                record = await self._get_record_or_raise(session, transaction_id)
                transition = guard_transition(transaction_id, record.status, event_type)
                if check is not None:
                    check(record)

                message = _derive_message(
                    event_type, transaction_id=transaction_id, **message_fields(record)
                )

                swapped = await repo.compare_and_set_status(
                    transaction_id, transition.source, transition.target, **record_fields
                )
                if not swapped:
                    current = await repo.get_status(transaction_id)
                    raise PreconditionFailed(transaction_id, current, event_type.value)

                entry = await EscrowLogRepository(session).append(
                    transaction_id=transaction_id,
                    event_type=event_type.value,
                    old_status=transition.source,
                    new_status=transition.target,
                    message_payload=message_to_dict(message),
                    topic_reference=topic_id,
                    actor=actor or record.buyer_id,
                )
        except SQLAlchemyError as err:
            raise self._storage_error(transaction_id, event_type, err) from err

        attempt = _CommittedAttempt(
            record=record,
            status=transition.target,
            event_type=event_type,
            message=message,
            topic_id=topic_id,
            log_entry_id=entry.id,
        )
        logger.info(
            _EVENT_LOG_NAMES[event_type],
            transaction_id=transaction_id,
            old_status=transition.source.value,
            new_status=transition.target.value,
        )
        return await self._after_commit(attempt, timeout)

    @staticmethod
    async def _get_record_or_raise(
        session: AsyncSession, transaction_id: str
    ) -> EscrowTransaction:
        record = await EscrowRepository(session).get_by_id(transaction_id)
        if record is None:
            raise EscrowNotFoundError(transaction_id)
        return record

    @staticmethod
    def _storage_error(
        transaction_id: str, event_type: EscrowEventType, err: SQLAlchemyError
    ) -> StorageError:
        logger.error(
            "escrow.storage_failed",
            transaction_id=transaction_id,
            event_type=event_type.value,
            error=str(err),
        )
        return StorageError(f"Failed to persist {event_type.value} for {transaction_id}")

    async def _after_commit(
        self, attempt: _CommittedAttempt, timeout: float | None
    ) -> EscrowOutcome:
        """Steps after the storage commit. Nothing here may raise."""
        contract = await self._call_contract(attempt)

        proof_id: str | None = None
        failure: ConsensusFailure | None = None
        if not self._config.ledger_enabled:
            failure = ConsensusFailure.DISABLED
        else:
            proof_id, failure = await self._submit(attempt, timeout)

        if proof_id is not None:
            failure = await self._attach_proof(attempt, proof_id)

        return EscrowOutcome(
            transaction_id=attempt.record.id,
            status=attempt.status,
            consensus_proof_id=proof_id,
            consensus_confirmed=proof_id is not None and failure is None,
            consensus_error=failure,
            log_entry_id=attempt.log_entry_id,
            contract=contract,
        )

    async def _call_contract(self, attempt: _CommittedAttempt) -> ContractCallResult:
        if self._contracts is None or not self._contracts.applies_to(attempt.event_type):
            return SKIPPED

        result = await self._contracts.call(attempt.event_type, attempt.record)
        if result.contract_proof_id is None:
            return result
        try:
            async with self._session_factory() as session, session.begin():
                await EscrowRepository(session).attach_contract_proof(
                    attempt.record.id, result.contract_proof_id
                )
                await EscrowLogRepository(session).attach_contract_proof(
                    attempt.log_entry_id, result.contract_proof_id
                )
        except SQLAlchemyError as err:
            logger.warning(
                "contract.proof_not_recorded",
                transaction_id=attempt.record.id,
                contract_proof_id=result.contract_proof_id,
                error=str(err),
            )
        return result

    async def _submit(
        self, attempt: _CommittedAttempt, timeout: float | None
    ) -> tuple[str | None, ConsensusFailure | None]:
        deadline = self._config.submit_timeout_seconds
        if timeout is not None:
            deadline = min(timeout, deadline)
        log = logger.bind(
            transaction_id=attempt.record.id,
            event_type=attempt.event_type.value,
            topic_id=attempt.topic_id,
            log_entry_id=str(attempt.log_entry_id),
        )
        try:
            receipt = await asyncio.wait_for(
                self._client.submit(attempt.topic_id, attempt.message), timeout=deadline
            )
        except (TimeoutError, ConsensusTimeoutError) as err:
            log.warning("consensus.submit_timeout", deadline=deadline, error=str(err))
            return None, ConsensusFailure.TIMEOUT
        except TransportError as err:
            log.warning("consensus.submit_failed", error=err.message)
            return None, ConsensusFailure.TRANSPORT
        except RejectedError as err:
            log.error("consensus.submit_rejected", status=err.status, error=err.message)
            return None, ConsensusFailure.REJECTED
        except ConfigurationError as err:
            log.error("consensus.misconfigured", error=err.message)
            return None, ConsensusFailure.CONFIGURATION
        except Exception as err:
            # The status is already committed; an unexpected client error is
            # reported like any other transport failure.
            log.exception("consensus.submit_failed", error=str(err))
            return None, ConsensusFailure.TRANSPORT

        log.info("consensus.confirmed", proof_id=receipt.proof_id)
        return receipt.proof_id, None

    async def _attach_proof(
        self, attempt: _CommittedAttempt, proof_id: str
    ) -> ConsensusFailure | None:
        """Backfill the proof. The record only takes it while still in the proven status."""
        try:
            async with self._session_factory() as session, session.begin():
                await EscrowLogRepository(session).attach_consensus_proof(
                    attempt.log_entry_id, proof_id
                )
                if attempt.event_type == EscrowEventType.VERIFY:
                    return None
                attached = await EscrowRepository(session).attach_consensus_proof(
                    attempt.record.id, attempt.status, proof_id
                )
        except SQLAlchemyError as err:
            logger.error(
                "consensus.proof_not_attached",
                transaction_id=attempt.record.id,
                proof_id=proof_id,
                error=str(err),
            )
            return ConsensusFailure.ATTACH_FAILED

        if not attached:
            logger.info(
                "consensus.proof_superseded",
                transaction_id=attempt.record.id,
                status=attempt.status.value,
                proof_id=proof_id,
            )
        return None
