"""Domain layer: pure business logic with zero framework dependencies."""

from tagchain_escrow.domain.consensus_protocol import (
    ConsensusClient,
    ConsensusReceipt,
)
from tagchain_escrow.domain.enums import (
    ConfirmationState,
    ConsensusFailure,
    ContractCallStatus,
    EscrowEventType,
    EscrowStatus,
    FundingMethod,
)
from tagchain_escrow.domain.exceptions import (
    ConfigurationError,
    ConsensusError,
    EscrowError,
    EscrowNotFoundError,
    PreconditionFailed,
    RejectedError,
    StorageError,
    TransportError,
)
from tagchain_escrow.domain.state_machine import (
    EscrowStateMachine,
    guard_transition,
    validate_transition,
)

__all__ = [
    "ConfirmationState",
    "ConsensusFailure",
    "ContractCallStatus",
    "EscrowEventType",
    "EscrowStatus",
    "FundingMethod",
    "ConfigurationError",
    "ConsensusError",
    "EscrowError",
    "EscrowNotFoundError",
    "PreconditionFailed",
    "RejectedError",
    "StorageError",
    "TransportError",
    "EscrowStateMachine",
    "guard_transition",
    "validate_transition",
    "ConsensusClient",
    "ConsensusReceipt",
]
