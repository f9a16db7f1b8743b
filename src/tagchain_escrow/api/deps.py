"""FastAPI dependency providers.

The services are built once in the application lifespan (the composition
root) and kept on `app.state`. Routes receive them through Depends(), and
tests can place their own instances on app.state without running the
lifespan.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request

if TYPE_CHECKING:
    from tagchain_escrow.services.escrow_orchestrator import EscrowOrchestrator
    from tagchain_escrow.services.reconciliation import ReconciliationService
    from tagchain_escrow.services.status_projection import StatusProjection


def get_orchestrator(request: Request) -> EscrowOrchestrator:
    return request.app.state.orchestrator


def get_projection(request: Request) -> StatusProjection:
    return request.app.state.projection


def get_reconciler(request: Request) -> ReconciliationService:
    return request.app.state.reconciler
