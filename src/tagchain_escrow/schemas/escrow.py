"""Pydantic schemas for the Escrow API.

These schemas define the request/response shapes for the REST API. They are
separate from the ORM models and from the consensus message variants to
maintain clean boundaries between the API, database and ledger layers.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - needed at runtime by pydantic
from datetime import datetime  # noqa: TC003 - needed at runtime by pydantic
from decimal import Decimal  # noqa: TC003 - needed at runtime by pydantic

from pydantic import BaseModel, ConfigDict, Field

from tagchain_escrow.domain.enums import (
    ConfirmationState,
    ConsensusFailure,
    ContractCallStatus,
    EscrowStatus,
    FundingMethod,
)

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class _LifecycleRequest(BaseModel):
    timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        le=120,
        description="Deadline for the ledger submission (defaults to server config)",
    )


class CreateEscrowRequest(_LifecycleRequest):
    """Request body for creating a new escrow transaction."""

    transaction_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Marketplace-assigned transaction id",
        examples=["T1"],
    )
    buyer_id: str = Field(..., min_length=1, max_length=64, examples=["B"])
    seller_id: str = Field(..., min_length=1, max_length=64, examples=["S"])
    amount: Decimal = Field(
        ...,
        gt=0,
        decimal_places=6,
        description="Escrow amount",
        examples=[100],
    )
    currency: str = Field(..., min_length=3, max_length=10, examples=["USD"])
    idempotency_key: str | None = Field(
        default=None,
        description="Optional idempotency key to prevent duplicate escrow creation",
    )


class FundEscrowRequest(_LifecycleRequest):
    """Request body for recording buyer funding."""

    funding_method: FundingMethod = Field(..., examples=["transfer"])
    amount: Decimal = Field(
        ...,
        gt=0,
        description="Must equal the escrow amount",
        examples=[100],
    )


class ReleaseEscrowRequest(_LifecycleRequest):
    released_by: str = Field(..., min_length=1, max_length=64)


class DisputeEscrowRequest(_LifecycleRequest):
    """Request body for raising a dispute against a funded trade."""

    reason: str = Field(
        ...,
        min_length=1,
        max_length=2000,
        description="Reason for the dispute",
    )
    raised_by: str | None = Field(default=None, max_length=64)


class CancelEscrowRequest(_LifecycleRequest):
    cancelled_by: str = Field(..., min_length=1, max_length=64)
    reason: str | None = Field(default=None, max_length=2000)


class VerifyEscrowRequest(_LifecycleRequest):
    """Request body for logging a provenance verification attestation."""

    verifier_id: str = Field(..., min_length=1, max_length=64)
    note: str | None = Field(default=None, max_length=2000)


class ReconciliationRunRequest(BaseModel):
    limit: int = Field(default=50, ge=1, le=500)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class ContractCallResponse(BaseModel):
    status: ContractCallStatus
    contract_proof_id: str | None = None
    error: str | None = None


class EscrowOutcomeResponse(BaseModel):
    """Result of a lifecycle operation.

    The business status is always definitive. `consensus_confirmed=false`
    means the transition committed but its ledger proof is still pending.
    """

    transaction_id: str
    status: EscrowStatus
    consensus_proof_id: str | None
    consensus_confirmed: bool
    consensus_error: ConsensusFailure | None
    log_entry_id: uuid.UUID
    contract: ContractCallResponse


class EscrowResponse(BaseModel):
    """Response schema for an escrow transaction."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    escrow_reference: str
    buyer_id: str
    seller_id: str
    amount: Decimal
    currency: str
    status: EscrowStatus
    consensus_proof_id: str | None
    contract_proof_id: str | None
    funding_method: str | None
    released_by: str | None
    dispute_reason: str | None
    created_at: datetime
    updated_at: datetime


class EscrowStatusResponse(BaseModel):
    """Lightweight status check response."""

    transaction_id: str
    status: EscrowStatus
    consensus_proof_id: str | None
    consensus_confirmed: bool
    confirmation: ConfirmationState
    updated_at: datetime
    allowed_events: list[str] = Field(
        description="State machine events that can fire from the current status"
    )


class EscrowLogResponse(BaseModel):
    """Response schema for one logged lifecycle attempt."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    transaction_id: str
    event_type: str
    old_status: str | None
    new_status: str
    actor: str
    topic_reference: str | None
    message_payload: dict
    consensus_proof_id: str | None
    contract_proof_id: str | None
    proven_at: datetime | None
    created_at: datetime


class ReconciliationReportResponse(BaseModel):
    examined: int
    proven: int
    failed: int
    skipped: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
    ledger: str = "unknown"
