"""Consensus Client Protocol.

Defines the interface the orchestrator and the reconciliation job depend on.
This is a Protocol (structural subtyping) so the Hedera gateway client, the
in-process simulated ledger and test doubles can be swapped freely.

The domain layer has ZERO imports from httpx, cryptography, or any network code.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from tagchain_escrow.schemas.consensus_messages import ConsensusMessage


@dataclass(frozen=True)
class ConsensusReceipt:
    """Proof that a message was durably ordered on a topic.

    Attributes:
        proof_id: Ledger transaction id (e.g. "0.0.1234@1700000000.000000001").
        topic_id: The topic the message was ordered on.
        sequence_number: Position of the message in the topic, when reported.
        consensus_timestamp: Ledger consensus time, when reported.
    """

    proof_id: str
    topic_id: str
    sequence_number: int | None = None
    consensus_timestamp: str | None = None


@runtime_checkable
class ConsensusClient(Protocol):
    """Protocol that all consensus ledger clients must satisfy.

    Implementations:
        - infrastructure/consensus/client.py     (Hedera consensus gateway)
        - infrastructure/consensus/simulated.py  (in-process ledger)
    """

    async def open(self) -> None:
        """Establish the session and load the operator identity."""
        ...

    async def close(self) -> None:
        """Release the session. Safe to call more than once."""
        ...

    async def submit(self, topic_id: str, message: ConsensusMessage) -> ConsensusReceipt:
        """Submit a message and block until the network confirms its ordering.

        Raises:
            ConfigurationError: Operator identity is missing or invalid.
            TransportError: Network/protocol failure (including receipt timeout).
            RejectedError: The network refused the message.
        """
        ...
