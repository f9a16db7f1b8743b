"""Contract Service: optional escrow smart-contract side channel.

The escrow contract is an opaque external collaborator. On create and release
the orchestrator asks this service to mirror the transition on-chain; the
outcome is reported back as a ContractCallResult and never fails the
transition that triggered it.

In simulation mode, generates fake contract transaction ids.
Otherwise, calls the contract through the consensus gateway's contract
endpoint (POST /api/v1/contracts/{contract_id}/call).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from tagchain_escrow.domain.enums import ContractCallStatus, EscrowEventType
from tagchain_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from tagchain_escrow.config import Settings
    from tagchain_escrow.infrastructure.database.orm_models import EscrowTransaction

logger = get_logger(__name__)

# Lifecycle events mirrored on the contract, and the contract function for each.
CONTRACT_FUNCTIONS: dict[EscrowEventType, str] = {
    EscrowEventType.CREATE: "createEscrow",
    EscrowEventType.RELEASE: "releaseEscrow",
}


@dataclass(frozen=True)
class ContractCallResult:
    status: ContractCallStatus
    contract_proof_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "contract_proof_id": self.contract_proof_id,
            "error": self.error,
        }


SKIPPED = ContractCallResult(status=ContractCallStatus.SKIPPED)


class ContractService:
    """Mirrors escrow creation and release on the escrow contract."""

    def __init__(
        self,
        enabled: bool = False,
        simulate: bool = True,
        contract_id: str = "",
        gateway_url: str = "",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the contract service.

        Args:
            enabled: Master switch. When off every call is reported as skipped.
            simulate: If True, generate fake contract tx ids instead of real calls.
        """
        self._enabled = enabled
        self._simulate = simulate
        self._contract_id = contract_id
        self._gateway_url = gateway_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> ContractService:
        return cls(
            enabled=settings.contract_enabled,
            simulate=settings.contract_simulate,
            contract_id=settings.escrow_contract_id,
            gateway_url=settings.consensus_gateway_url,
            timeout=settings.contract_call_timeout_seconds,
        )

    def applies_to(self, event_type: EscrowEventType) -> bool:
        return self._enabled and event_type in CONTRACT_FUNCTIONS

    async def call(
        self,
        event_type: EscrowEventType,
        transaction: EscrowTransaction,
    ) -> ContractCallResult:
        """Invoke the contract function for a lifecycle event. Never raises."""
        if not self.applies_to(event_type):
            return SKIPPED

        function = CONTRACT_FUNCTIONS[event_type]
        if self._simulate:
            proof_id = "0x" + uuid.uuid4().hex + uuid.uuid4().hex
            logger.info(
                "contract.call_simulated",
                function=function,
                transaction_id=transaction.id,
                contract_proof_id=proof_id,
            )
            return ContractCallResult(
                status=ContractCallStatus.SUCCEEDED, contract_proof_id=proof_id
            )

        if not self._contract_id or not self._gateway_url:
            logger.error("contract.not_configured", function=function)
            return ContractCallResult(
                status=ContractCallStatus.FAILED, error="contract not configured"
            )

        params = {
            "escrow_id": transaction.escrow_reference,
            "transaction_id": transaction.id,
            "buyer_id": transaction.buyer_id,
            "seller_id": transaction.seller_id,
            "amount": str(transaction.amount),
            "currency": transaction.currency,
        }
        try:
            async with httpx.AsyncClient(
                base_url=self._gateway_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    f"/api/v1/contracts/{self._contract_id}/call",
                    json={"function": function, "params": params},
                )
                response.raise_for_status()
                body = response.json()
                proof_id = body.get("transaction_id") if isinstance(body, dict) else None
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "contract.call_failed",
                function=function,
                transaction_id=transaction.id,
                error=str(exc),
            )
            return ContractCallResult(status=ContractCallStatus.FAILED, error=str(exc))

        if not proof_id:
            return ContractCallResult(
                status=ContractCallStatus.FAILED, error="no transaction id in response"
            )

        logger.info(
            "contract.call_succeeded",
            function=function,
            transaction_id=transaction.id,
            contract_proof_id=proof_id,
        )
        return ContractCallResult(
            status=ContractCallStatus.SUCCEEDED, contract_proof_id=proof_id
        )
