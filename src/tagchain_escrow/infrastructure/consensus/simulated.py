"""In-process consensus ledger.

Used by the simulation script, local development (CONSENSUS_BACKEND=simulated)
and the test suite. Orders messages per topic and hands out proof ids shaped
like real ledger transaction ids. Failures can be injected to exercise the
degraded paths of the orchestrator and the reconciliation job.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tagchain_escrow.domain.consensus_protocol import ConsensusReceipt
from tagchain_escrow.logging_config import get_logger
from tagchain_escrow.schemas.consensus_messages import encode_message

if TYPE_CHECKING:
    from tagchain_escrow.schemas.consensus_messages import ConsensusMessage

logger = get_logger(__name__)


@dataclass
class SubmittedMessage:
    topic_id: str
    message: ConsensusMessage
    payload: bytes
    receipt: ConsensusReceipt


@dataclass
class SimulatedConsensusClient:
    """Simulated ledger that satisfies the ConsensusClient protocol."""

    operator_id: str = "0.0.1001"
    latency_seconds: float = 0.0
    submissions: list[SubmittedMessage] = field(default_factory=list)
    _failures: list[Exception] = field(default_factory=list)
    _sequences: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    _clock: itertools.count = field(default_factory=lambda: itertools.count(1))
    _open: bool = False

    async def open(self) -> None:
        self._open = True

    async def close(self) -> None:
        self._open = False

    def fail_next(self, *errors: Exception) -> None:
        """Queue errors to raise on the next submissions, in order."""
        self._failures.extend(errors)

    def messages_for(self, transaction_id: str) -> list[ConsensusMessage]:
        return [s.message for s in self.submissions if s.message.transaction_id == transaction_id]

    async def submit(self, topic_id: str, message: ConsensusMessage) -> ConsensusReceipt:
        self._open = True
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        else:
            await asyncio.sleep(0)

        if self._failures:
            error = self._failures.pop(0)
            logger.debug("consensus.simulated_failure", topic_id=topic_id, error=str(error))
            raise error

        self._sequences[topic_id] += 1
        tick = next(self._clock)
        receipt = ConsensusReceipt(
            proof_id=f"{self.operator_id}@1700000000.{tick:09d}",
            topic_id=topic_id,
            sequence_number=self._sequences[topic_id],
            consensus_timestamp=f"1700000000.{tick:09d}",
        )
        self.submissions.append(
            SubmittedMessage(
                topic_id=topic_id,
                message=message,
                payload=encode_message(message),
                receipt=receipt,
            )
        )
        logger.debug(
            "consensus.simulated_submit",
            topic_id=topic_id,
            proof_id=receipt.proof_id,
            message_type=message.type,
        )
        return receipt
