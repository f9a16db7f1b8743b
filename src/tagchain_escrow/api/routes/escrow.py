"""Escrow transaction REST API routes.

These endpoints provide the HTTP interface for the escrow lifecycle. Every
write goes through the EscrowOrchestrator, the simulation script calls the
same service layer, ensuring consistency.

Routes:
    POST   /api/v1/escrow                Create a new escrow transaction
    GET    /api/v1/escrow?party_id=      List a party's transactions
    GET    /api/v1/escrow/{id}           Get transaction details
    GET    /api/v1/escrow/{id}/status    Status + ledger confirmation state
    GET    /api/v1/escrow/{id}/logs      Logged lifecycle attempts
    POST   /api/v1/escrow/{id}/fund      Record buyer funding
    POST   /api/v1/escrow/{id}/release   Release funds to the seller
    POST   /api/v1/escrow/{id}/dispute   Raise a dispute
    POST   /api/v1/escrow/{id}/cancel    Cancel an unfunded trade
    POST   /api/v1/escrow/{id}/verify    Log a provenance verification
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from tagchain_escrow.api.deps import get_orchestrator, get_projection
from tagchain_escrow.domain.enums import EscrowStatus
from tagchain_escrow.domain.exceptions import DuplicateOperationError
from tagchain_escrow.domain.state_machine import EscrowStateMachine
from tagchain_escrow.infrastructure.redis_client import (
    claim_idempotency,
    is_redis_ready,
    release_idempotency,
)
from tagchain_escrow.logging_config import get_logger
from tagchain_escrow.schemas.escrow import (
    CancelEscrowRequest,
    CreateEscrowRequest,
    DisputeEscrowRequest,
    EscrowLogResponse,
    EscrowOutcomeResponse,
    EscrowResponse,
    EscrowStatusResponse,
    FundEscrowRequest,
    ReleaseEscrowRequest,
    VerifyEscrowRequest,
)
from tagchain_escrow.services.escrow_orchestrator import (  # noqa: TC001 - FastAPI resolves at runtime
    EscrowOrchestrator,
    EscrowOutcome,
)
from tagchain_escrow.services.status_projection import StatusProjection  # noqa: TC001

router = APIRouter(prefix="/api/v1/escrow", tags=["Escrow"])
logger = get_logger(__name__)


def _outcome_response(outcome: EscrowOutcome) -> EscrowOutcomeResponse:
    return EscrowOutcomeResponse.model_validate(outcome.to_dict())


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=EscrowOutcomeResponse,
    status_code=201,
    summary="Create a new escrow transaction",
)
async def create_escrow(
    request: CreateEscrowRequest,
    orchestrator: EscrowOrchestrator = Depends(get_orchestrator),
) -> EscrowOutcomeResponse:
    """Create a new escrow transaction in pending state."""
    key = request.idempotency_key
    if key is not None:
        if is_redis_ready():
            if not await claim_idempotency(key, request.transaction_id):
                raise DuplicateOperationError(key)
        else:
            logger.warning("idempotency.unavailable", idempotency_key=key)
            key = None

    try:
        outcome = await orchestrator.create_escrow(
            transaction_id=request.transaction_id,
            buyer_id=request.buyer_id,
            seller_id=request.seller_id,
            amount=request.amount,
            currency=request.currency,
            timeout=request.timeout_seconds,
        )
    except Exception:
        # Nothing was created, so the key may be reused.
        if key is not None:
            await release_idempotency(key)
        raise
    return _outcome_response(outcome)


# ---------------------------------------------------------------------------
# Lifecycle transitions
# ---------------------------------------------------------------------------


@router.post(
    "/{transaction_id}/fund",
    response_model=EscrowOutcomeResponse,
    summary="Record buyer funding",
)
async def fund_escrow(
    transaction_id: str,
    request: FundEscrowRequest,
    orchestrator: EscrowOrchestrator = Depends(get_orchestrator),
) -> EscrowOutcomeResponse:
    """Transitions pending -> funded. The amount must match the escrow amount."""
    outcome = await orchestrator.fund_escrow(
        transaction_id,
        funding_method=request.funding_method,
        amount=request.amount,
        timeout=request.timeout_seconds,
    )
    return _outcome_response(outcome)


@router.post(
    "/{transaction_id}/release",
    response_model=EscrowOutcomeResponse,
    summary="Release funds to the seller",
)
async def release_escrow(
    transaction_id: str,
    request: ReleaseEscrowRequest,
    orchestrator: EscrowOrchestrator = Depends(get_orchestrator),
) -> EscrowOutcomeResponse:
    """Transitions funded -> released."""
    outcome = await orchestrator.release_escrow(
        transaction_id,
        released_by=request.released_by,
        timeout=request.timeout_seconds,
    )
    return _outcome_response(outcome)


@router.post(
    "/{transaction_id}/dispute",
    response_model=EscrowOutcomeResponse,
    summary="Raise a dispute",
)
async def dispute_escrow(
    transaction_id: str,
    request: DisputeEscrowRequest,
    orchestrator: EscrowOrchestrator = Depends(get_orchestrator),
) -> EscrowOutcomeResponse:
    """Transitions funded -> disputed."""
    outcome = await orchestrator.dispute_escrow(
        transaction_id,
        reason=request.reason,
        raised_by=request.raised_by,
        timeout=request.timeout_seconds,
    )
    return _outcome_response(outcome)


@router.post(
    "/{transaction_id}/cancel",
    response_model=EscrowOutcomeResponse,
    summary="Cancel an unfunded trade",
)
async def cancel_escrow(
    transaction_id: str,
    request: CancelEscrowRequest,
    orchestrator: EscrowOrchestrator = Depends(get_orchestrator),
) -> EscrowOutcomeResponse:
    """Transitions pending -> cancelled."""
    outcome = await orchestrator.cancel_escrow(
        transaction_id,
        cancelled_by=request.cancelled_by,
        reason=request.reason,
        timeout=request.timeout_seconds,
    )
    return _outcome_response(outcome)


@router.post(
    "/{transaction_id}/verify",
    response_model=EscrowOutcomeResponse,
    summary="Log a provenance verification",
)
async def verify_escrow(
    transaction_id: str,
    request: VerifyEscrowRequest,
    orchestrator: EscrowOrchestrator = Depends(get_orchestrator),
) -> EscrowOutcomeResponse:
    """Record a verification attestation on the ledger. Status is unchanged."""
    outcome = await orchestrator.verify_escrow(
        transaction_id,
        verifier_id=request.verifier_id,
        note=request.note,
        timeout=request.timeout_seconds,
    )
    return _outcome_response(outcome)


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------


@router.get(
    "",
    response_model=list[EscrowResponse],
    summary="List a party's transactions",
)
async def list_escrows(
    party_id: str = Query(..., min_length=1, description="Buyer or seller id"),
    status: EscrowStatus | None = Query(default=None),
    projection: StatusProjection = Depends(get_projection),
) -> list[EscrowResponse]:
    records = await projection.list_for_party(party_id, status)
    return [EscrowResponse.model_validate(r) for r in records]


@router.get(
    "/{transaction_id}",
    response_model=EscrowResponse,
    summary="Get transaction details",
)
async def get_escrow(
    transaction_id: str,
    projection: StatusProjection = Depends(get_projection),
) -> EscrowResponse:
    record = await projection.get_transaction(transaction_id)
    return EscrowResponse.model_validate(record)


@router.get(
    "/{transaction_id}/status",
    response_model=EscrowStatusResponse,
    summary="Get status and ledger confirmation state",
)
async def get_status(
    transaction_id: str,
    projection: StatusProjection = Depends(get_projection),
) -> EscrowStatusResponse:
    """Return the stored status, its proof, and allowed next actions."""
    view = await projection.get_status(transaction_id)
    return EscrowStatusResponse(
        transaction_id=view.transaction_id,
        status=view.status,
        consensus_proof_id=view.consensus_proof_id,
        consensus_confirmed=view.consensus_confirmed,
        confirmation=view.confirmation,
        updated_at=view.updated_at,
        allowed_events=EscrowStateMachine(current_status=view.status.value).get_allowed_events(),
    )


@router.get(
    "/{transaction_id}/logs",
    response_model=list[EscrowLogResponse],
    summary="Get logged lifecycle attempts",
)
async def get_logs(
    transaction_id: str,
    projection: StatusProjection = Depends(get_projection),
) -> list[EscrowLogResponse]:
    """Return every logged attempt for a transaction, oldest first."""
    entries = await projection.get_history(transaction_id)
    return [EscrowLogResponse.model_validate(e) for e in entries]
