"""Domain exceptions for the Tag Chain escrow bridge.

These exceptions are framework-agnostic and represent business rule violations
or collaborator failures. They are caught and translated to HTTP responses by
the API layer's middleware.

Propagation rules:
    - PreconditionFailed, EscrowNotFoundError, InvalidEscrowDataError and
      StorageError abort the request.
    - ConsensusError subclasses never abort a committed transition. The
      orchestrator downgrades them to a `consensus_error` on the outcome.
"""


class EscrowError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "ESCROW_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Lifecycle Errors ---


class PreconditionFailed(EscrowError):
    """Raised when the stored status does not match the operation's prior state.

    Example: release requires `funded`, but the transaction is `pending`.
    Also raised when a concurrent writer wins the compare-and-swap.
    """

    def __init__(
        self,
        transaction_id: str,
        current_status: str | None,
        attempted_event: str,
    ) -> None:
        super().__init__(
            message=(
                f"Cannot apply '{attempted_event}' to transaction {transaction_id} "
                f"in status {current_status or '(none)'}"
            ),
            code="PRECONDITION_FAILED",
        )
        self.transaction_id = transaction_id
        self.current_status = current_status
        self.attempted_event = attempted_event


class EscrowNotFoundError(EscrowError):
    """Raised when a transaction ID does not exist."""

    def __init__(self, transaction_id: str) -> None:
        super().__init__(
            message=f"Escrow transaction not found: {transaction_id}",
            code="ESCROW_NOT_FOUND",
        )
        self.transaction_id = transaction_id


class InvalidEscrowDataError(EscrowError):
    """Raised when business fields are invalid (e.g. funding amount mismatch)."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="INVALID_ESCROW_DATA")


class StorageError(EscrowError):
    """Raised when the status/log write fails. The ledger is never contacted."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="STORAGE_ERROR")


class MessageValidationError(EscrowError):
    """Raised when a consensus message cannot be built or decoded."""

    def __init__(self, message: str, errors: list | None = None) -> None:
        super().__init__(message=message, code="MESSAGE_VALIDATION_ERROR")
        self.errors = errors or []


# --- Consensus Ledger Errors ---


class ConsensusError(EscrowError):
    """Base exception for consensus ledger failures."""

    def __init__(self, message: str, code: str = "CONSENSUS_ERROR") -> None:
        super().__init__(message=message, code=code)


class ConfigurationError(ConsensusError):
    """Raised when operator identity or topic configuration is missing/invalid."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="CONSENSUS_CONFIGURATION_ERROR")


class TransportError(ConsensusError):
    """Raised on network or protocol failures talking to the consensus network."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="CONSENSUS_TRANSPORT_ERROR")


class ConsensusTimeoutError(TransportError):
    """Raised when the receipt does not arrive within the client's wait budget."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message)
        self.code = "CONSENSUS_TIMEOUT"


class RejectedError(ConsensusError):
    """Raised when the network explicitly refuses a message.

    Retrying the same message will not help (bad signature, unknown topic).
    """

    def __init__(self, message: str, status: str = "UNKNOWN") -> None:
        super().__init__(message=message, code="CONSENSUS_REJECTED")
        self.status = status


# --- Idempotency Errors ---


class DuplicateOperationError(EscrowError):
    """Raised when a duplicate idempotency key is detected."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            message=f"Duplicate operation detected for key: {idempotency_key}",
            code="DUPLICATE_OPERATION",
        )
