"""Application services: use case orchestration."""

from tagchain_escrow.services.contract_service import ContractCallResult, ContractService
from tagchain_escrow.services.escrow_orchestrator import (
    EscrowOrchestrator,
    EscrowOutcome,
    OrchestratorConfig,
)
from tagchain_escrow.services.reconciliation import (
    ReconcileOutcome,
    ReconcileResult,
    ReconciliationReport,
    ReconciliationService,
)
from tagchain_escrow.services.status_projection import EscrowStatusView, StatusProjection

__all__ = [
    "ContractCallResult",
    "ContractService",
    "EscrowOrchestrator",
    "EscrowOutcome",
    "OrchestratorConfig",
    "ReconcileOutcome",
    "ReconcileResult",
    "ReconciliationReport",
    "ReconciliationService",
    "EscrowStatusView",
    "StatusProjection",
]
