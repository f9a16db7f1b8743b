"""Hedera consensus gateway client.

Submits signed topic messages to a consensus gateway over HTTP and blocks
until the network reports a final receipt. The receipt wait is what gives
the returned proof id its meaning as a finality guarantee.

Lifecycle:
    client = HederaConsensusClient.from_settings(get_settings())
    await client.open()          # at startup (also done lazily on first submit)
    receipt = await client.submit(topic_id, message)
    await client.close()         # at shutdown

Gateway endpoints:
    POST /api/v1/topics/{topic_id}/messages           -> {"transaction_id": ...}
    GET  /api/v1/transactions/{transaction_id}/receipt -> {"status": ...}

No retries happen here. A blind retry of a side-effecting submission would
produce a duplicate message, and the ledger does not deduplicate.
"""

from __future__ import annotations

import asyncio
import base64
import json
import time
from typing import TYPE_CHECKING, Any

import httpx

from tagchain_escrow.domain.consensus_protocol import ConsensusReceipt
from tagchain_escrow.domain.exceptions import (
    ConfigurationError,
    ConsensusTimeoutError,
    RejectedError,
    TransportError,
)
from tagchain_escrow.infrastructure.consensus.signing import OperatorIdentity
from tagchain_escrow.logging_config import get_logger
from tagchain_escrow.schemas.consensus_messages import encode_message

if TYPE_CHECKING:
    from tagchain_escrow.config import Settings
    from tagchain_escrow.schemas.consensus_messages import ConsensusMessage

logger = get_logger(__name__)

RECEIPT_SUCCESS = "SUCCESS"
RECEIPT_PENDING = frozenset({"UNKNOWN", "PENDING", "RECEIPT_NOT_FOUND"})
# Statuses that signal a busy or overloaded network, not a refusal.
TRANSIENT_HTTP_STATUSES = frozenset({408, 425, 429})


class HederaConsensusClient:
    """One long-lived HTTP session to the consensus gateway per instance.

    Safe for concurrent use by many orchestrator calls within one event loop:
    the session is created once under a lock and httpx.AsyncClient handles
    concurrent requests.
    """

    def __init__(
        self,
        network: str,
        operator_id: str,
        operator_key: str,
        gateway_url: str,
        request_timeout: float = 10.0,
        receipt_poll_interval: float = 0.5,
        receipt_timeout: float = 25.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._network = network
        self._operator_id = operator_id
        self._operator_key = operator_key
        self._gateway_url = gateway_url.rstrip("/")
        self._request_timeout = request_timeout
        self._receipt_poll_interval = receipt_poll_interval
        self._receipt_timeout = receipt_timeout
        self._transport = transport

        self._identity: OperatorIdentity | None = None
        self._http: httpx.AsyncClient | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> HederaConsensusClient:
        """Build a client from server-side settings only."""
        return cls(
            network=settings.hedera_network,
            operator_id=settings.hedera_operator_id,
            operator_key=settings.hedera_operator_key,
            gateway_url=settings.consensus_gateway_url,
            request_timeout=settings.consensus_request_timeout_seconds,
            receipt_poll_interval=settings.consensus_receipt_poll_interval_seconds,
            receipt_timeout=settings.consensus_receipt_timeout_seconds,
        )

    @property
    def is_open(self) -> bool:
        return self._http is not None

    async def open(self) -> None:
        """Load the operator identity and create the HTTP session.

        Raises:
            ConfigurationError: If credentials or the gateway URL are missing.
        """
        async with self._lock:
            if self._http is not None:
                return
            if not self._gateway_url:
                raise ConfigurationError("Consensus gateway URL not configured")
            self._identity = OperatorIdentity.from_strings(
                self._operator_id, self._operator_key
            )
            self._http = httpx.AsyncClient(
                base_url=self._gateway_url,
                timeout=self._request_timeout,
                transport=self._transport,
                headers={"X-Hedera-Network": self._network},
            )
            logger.info(
                "consensus.session_opened",
                network=self._network,
                operator=self._identity.account_id,
            )

    async def close(self) -> None:
        async with self._lock:
            if self._http is not None:
                await self._http.aclose()
                logger.info("consensus.session_closed", network=self._network)
            self._http = None
            self._identity = None

    async def submit(self, topic_id: str, message: ConsensusMessage) -> ConsensusReceipt:
        """Sign and submit a message, then wait for its consensus receipt."""
        if not topic_id:
            raise ConfigurationError("Consensus topic id not configured")
        await self.open()
        assert self._http is not None and self._identity is not None

        transaction_id = self._new_transaction_id()
        envelope = self._build_envelope(topic_id, transaction_id, encode_message(message))

        response = await self._request(
            "POST", f"/api/v1/topics/{topic_id}/messages", json=envelope
        )
        if response.status_code >= 400:
            self._raise_for_submit_status(response, topic_id)

        accepted_id = self._json(response).get("transaction_id") or transaction_id
        logger.debug(
            "consensus.submitted",
            topic_id=topic_id,
            transaction_id=accepted_id,
            message_type=message.type,
        )
        return await self._await_receipt(topic_id, accepted_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _new_transaction_id(self) -> str:
        assert self._identity is not None
        now_ns = time.time_ns()
        seconds, nanos = divmod(now_ns, 1_000_000_000)
        return f"{self._identity.account_id}@{seconds}.{nanos:09d}"

    def _build_envelope(self, topic_id: str, transaction_id: str, payload: bytes) -> dict:
        assert self._identity is not None
        body = json.dumps(
            {
                "message": base64.b64encode(payload).decode("ascii"),
                "network": self._network,
                "topic_id": topic_id,
                "transaction_id": transaction_id,
            },
            sort_keys=True,
            separators=(",", ":"),
        ).encode("utf-8")
        return {
            "transaction_id": transaction_id,
            "operator_account_id": self._identity.account_id,
            "body": base64.b64encode(body).decode("ascii"),
            "signature": self._identity.sign(body).hex(),
            "public_key": self._identity.public_key_hex,
        }

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        assert self._http is not None
        try:
            return await self._http.request(method, url, **kwargs)
        except httpx.TimeoutException as err:
            raise ConsensusTimeoutError(f"Consensus gateway timed out: {err}") from err
        except httpx.HTTPError as err:
            raise TransportError(f"Consensus gateway unreachable: {err}") from err

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError as err:
            raise TransportError(
                f"Malformed gateway response (HTTP {response.status_code})"
            ) from err
        if not isinstance(data, dict):
            raise TransportError("Malformed gateway response: expected an object")
        return data

    def _raise_for_submit_status(self, response: httpx.Response, topic_id: str) -> None:
        code = response.status_code
        if code >= 500 or code in TRANSIENT_HTTP_STATUSES:
            raise TransportError(f"Consensus gateway error HTTP {code}")
        try:
            detail = response.json()
        except ValueError:
            detail = {}
        status = str(detail.get("status") or f"HTTP_{code}")
        raise RejectedError(
            f"Message rejected on topic {topic_id}: {status}",
            status=status,
        )

    @staticmethod
    def _receipt_from(data: dict, topic_id: str, transaction_id: str) -> ConsensusReceipt:
        """Build a receipt from a SUCCESS body; bad field types are a protocol failure."""
        sequence = data.get("topic_sequence_number")
        timestamp = data.get("consensus_timestamp")
        try:
            sequence_number = int(sequence) if sequence is not None else None
        except (TypeError, ValueError) as err:
            raise TransportError(
                f"Malformed receipt for {transaction_id}: "
                f"topic_sequence_number={sequence!r}"
            ) from err
        if timestamp is not None and not isinstance(timestamp, str):
            raise TransportError(
                f"Malformed receipt for {transaction_id}: consensus_timestamp={timestamp!r}"
            )
        return ConsensusReceipt(
            proof_id=transaction_id,
            topic_id=topic_id,
            sequence_number=sequence_number,
            consensus_timestamp=timestamp,
        )

    async def _await_receipt(self, topic_id: str, transaction_id: str) -> ConsensusReceipt:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._receipt_timeout
        url = f"/api/v1/transactions/{transaction_id}/receipt"

        while True:
            response = await self._request("GET", url)
            if response.status_code >= 500 or response.status_code in TRANSIENT_HTTP_STATUSES:
                raise TransportError(f"Receipt query failed HTTP {response.status_code}")

            status = "RECEIPT_NOT_FOUND"
            data: dict = {}
            if response.status_code != 404:
                data = self._json(response)
                status = str(data.get("status", "UNKNOWN"))

            if status == RECEIPT_SUCCESS:
                return self._receipt_from(data, topic_id, transaction_id)
            if status not in RECEIPT_PENDING:
                raise RejectedError(
                    f"Transaction {transaction_id} failed with status {status}",
                    status=status,
                )

            if loop.time() >= deadline:
                raise ConsensusTimeoutError(
                    f"No receipt for {transaction_id} after {self._receipt_timeout}s"
                )
            await asyncio.sleep(self._receipt_poll_interval)
