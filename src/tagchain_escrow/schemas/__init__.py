"""Pydantic API schemas and consensus message variants."""

from tagchain_escrow.schemas.consensus_messages import (
    ConsensusMessage,
    EscrowCancelledMessage,
    EscrowCreatedMessage,
    EscrowDisputedMessage,
    EscrowFundedMessage,
    EscrowReleasedMessage,
    EscrowVerifiedMessage,
    build_message,
    decode_message,
    encode_message,
)
from tagchain_escrow.schemas.escrow import (
    CancelEscrowRequest,
    ContractCallResponse,
    CreateEscrowRequest,
    DisputeEscrowRequest,
    EscrowLogResponse,
    EscrowOutcomeResponse,
    EscrowResponse,
    EscrowStatusResponse,
    FundEscrowRequest,
    HealthResponse,
    ReconciliationReportResponse,
    ReconciliationRunRequest,
    ReleaseEscrowRequest,
    VerifyEscrowRequest,
)

__all__ = [
    "ConsensusMessage",
    "EscrowCancelledMessage",
    "EscrowCreatedMessage",
    "EscrowDisputedMessage",
    "EscrowFundedMessage",
    "EscrowReleasedMessage",
    "EscrowVerifiedMessage",
    "build_message",
    "decode_message",
    "encode_message",
    "CancelEscrowRequest",
    "ContractCallResponse",
    "CreateEscrowRequest",
    "DisputeEscrowRequest",
    "EscrowLogResponse",
    "EscrowOutcomeResponse",
    "EscrowResponse",
    "EscrowStatusResponse",
    "FundEscrowRequest",
    "HealthResponse",
    "ReconciliationReportResponse",
    "ReconciliationRunRequest",
    "ReleaseEscrowRequest",
    "VerifyEscrowRequest",
]
