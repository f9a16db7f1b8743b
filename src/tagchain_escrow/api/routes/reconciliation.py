"""Reconciliation trigger.

Runs one reconciliation pass inside the API process. Deployments that run
the `tagchain-reconcile` job on a schedule do not need this endpoint.

Routes:
    POST   /api/v1/reconciliation/run  Retry proofs for unproven log entries
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from tagchain_escrow.api.deps import get_reconciler
from tagchain_escrow.logging_config import get_logger
from tagchain_escrow.schemas.escrow import (
    ReconciliationReportResponse,
    ReconciliationRunRequest,
)
from tagchain_escrow.services.reconciliation import ReconciliationService  # noqa: TC001

router = APIRouter(prefix="/api/v1/reconciliation", tags=["Reconciliation"])
logger = get_logger(__name__)


@router.post(
    "/run",
    response_model=ReconciliationReportResponse,
    summary="Run one reconciliation pass",
)
async def run_reconciliation(
    request: ReconciliationRunRequest,
    reconciler: ReconciliationService = Depends(get_reconciler),
) -> ReconciliationReportResponse:
    report = await reconciler.run_once(limit=request.limit)
    logger.info("reconciliation.triggered", **report.to_dict())
    return ReconciliationReportResponse(**report.to_dict())
