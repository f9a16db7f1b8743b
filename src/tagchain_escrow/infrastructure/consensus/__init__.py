"""Consensus ledger clients."""

from __future__ import annotations

from typing import TYPE_CHECKING

from tagchain_escrow.infrastructure.consensus.client import HederaConsensusClient
from tagchain_escrow.infrastructure.consensus.simulated import SimulatedConsensusClient

if TYPE_CHECKING:
    from tagchain_escrow.config import Settings
    from tagchain_escrow.domain.consensus_protocol import ConsensusClient


def build_consensus_client(settings: Settings) -> ConsensusClient:
    """Select the consensus backend named in settings."""
    if settings.consensus_backend == "simulated":
        return SimulatedConsensusClient(operator_id=settings.hedera_operator_id or "0.0.1001")
    return HederaConsensusClient.from_settings(settings)


__all__ = [
    "HederaConsensusClient",
    "SimulatedConsensusClient",
    "build_consensus_client",
]
