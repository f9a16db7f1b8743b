"""Domain enumerations for the Tag Chain escrow bridge.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class EscrowStatus(enum.StrEnum):
    """Lifecycle states of an escrow transaction.

    State transitions are enforced by the EscrowStateMachine guard.
    See domain/state_machine.py for the transition table.
    """

    PENDING = "pending"
    FUNDED = "funded"
    RELEASED = "released"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {EscrowStatus.RELEASED, EscrowStatus.DISPUTED, EscrowStatus.CANCELLED}
)


class EscrowEventType(enum.StrEnum):
    """Types of attempts recorded in the escrow_logs table.

    Every lifecycle attempt that commits MUST produce exactly one log entry,
    whether or not the ledger later confirms it.
    """

    CREATE = "create"
    FUND = "fund"
    RELEASE = "release"
    DISPUTE = "dispute"
    CANCEL = "cancel"
    VERIFY = "verify"


class FundingMethod(enum.StrEnum):
    """How the buyer put funds into escrow."""

    MINT = "mint"
    TRANSFER = "transfer"


class ConfirmationState(enum.StrEnum):
    """Three-valued ledger confirmation state shown to callers."""

    NOT_PROVEN = "not_proven"
    PROVEN = "proven"
    TERMINAL_AND_PROVEN = "terminal_and_proven"


class ConsensusFailure(enum.StrEnum):
    """Why a committed transition has no consensus proof yet."""

    DISABLED = "disabled"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    REJECTED = "rejected"
    CONFIGURATION = "configuration"
    ATTACH_FAILED = "attach_failed"


class ContractCallStatus(enum.StrEnum):
    """Outcome of the optional escrow contract side call."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
