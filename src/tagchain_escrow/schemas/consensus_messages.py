"""Versioned consensus message schemas for escrow events.

One tagged variant per event type, discriminated on `type`. Messages are
validated at construction time and serialized to canonical JSON (sorted keys,
compact separators, `None` fields dropped) so the bytes that get signed are
stable across processes.

Off-ledger consumers decode with `decode_message`, which ignores unknown
fields and tolerates optional fields missing from older payloads.

Wire shape (minimum):
    {"type": "escrow.funded", "version": "1.0", "transaction_id": "T1",
     "timestamp": "2025-01-01T00:00:00Z", ...event-specific fields}
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from tagchain_escrow.domain.enums import EscrowEventType, FundingMethod
from tagchain_escrow.domain.exceptions import MessageValidationError

MESSAGE_SCHEMA_VERSION = "1.0"
ON_CHAIN_USER_PREFIX = "TAGCHAIN:USER:"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def on_chain_user_id(party_id: str) -> str:
    """Map a marketplace party id to its on-chain identifier."""
    return f"{ON_CHAIN_USER_PREFIX}{party_id}"


class _MessageBase(BaseModel):
    """Fields shared by every escrow consensus message."""

    model_config = ConfigDict(frozen=True, extra="ignore", str_strip_whitespace=True)

    version: str = MESSAGE_SCHEMA_VERSION
    transaction_id: str = Field(..., min_length=1, max_length=64)
    timestamp: datetime = Field(default_factory=_utcnow)


class EscrowCreatedMessage(_MessageBase):
    type: Literal["escrow.create"] = "escrow.create"
    escrow_id: str = Field(..., min_length=1)
    buyer_on_chain_id: str = Field(..., min_length=1)
    seller_on_chain_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=10)
    status: Literal["initiated"] = "initiated"


class EscrowFundedMessage(_MessageBase):
    type: Literal["escrow.funded"] = "escrow.funded"
    amount: Decimal = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=10)
    funding_method: FundingMethod | None = None


class EscrowReleasedMessage(_MessageBase):
    type: Literal["escrow.release"] = "escrow.release"
    seller_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=10)
    released_by: str | None = None


class EscrowDisputedMessage(_MessageBase):
    type: Literal["escrow.dispute"] = "escrow.dispute"
    reason: str = Field(..., min_length=1, max_length=2000)
    raised_by_user_id: str | None = None


class EscrowCancelledMessage(_MessageBase):
    type: Literal["escrow.cancel"] = "escrow.cancel"
    cancelled_by: str = Field(..., min_length=1)
    reason: str | None = None


class EscrowVerifiedMessage(_MessageBase):
    type: Literal["escrow.verify"] = "escrow.verify"
    verifier_id: str = Field(..., min_length=1)
    note: str | None = None


ConsensusMessage = Annotated[
    EscrowCreatedMessage
    | EscrowFundedMessage
    | EscrowReleasedMessage
    | EscrowDisputedMessage
    | EscrowCancelledMessage
    | EscrowVerifiedMessage,
    Field(discriminator="type"),
]

_MESSAGE_ADAPTER: TypeAdapter[ConsensusMessage] = TypeAdapter(ConsensusMessage)

MESSAGE_TYPES: dict[EscrowEventType, type[_MessageBase]] = {
    EscrowEventType.CREATE: EscrowCreatedMessage,
    EscrowEventType.FUND: EscrowFundedMessage,
    EscrowEventType.RELEASE: EscrowReleasedMessage,
    EscrowEventType.DISPUTE: EscrowDisputedMessage,
    EscrowEventType.CANCEL: EscrowCancelledMessage,
    EscrowEventType.VERIFY: EscrowVerifiedMessage,
}


def build_message(event_type: EscrowEventType, **fields: Any) -> ConsensusMessage:
    """Construct and validate the message variant for an event.

    Raises:
        MessageValidationError: If a required field is missing or invalid.
    """
    model = MESSAGE_TYPES[event_type]
    try:
        return model(**fields)
    except ValidationError as err:
        raise MessageValidationError(
            f"Invalid {event_type.value} message: {err.error_count()} error(s)",
            errors=err.errors(include_url=False),
        ) from err


def message_to_dict(message: ConsensusMessage) -> dict[str, Any]:
    """JSON-compatible dict of the message (what gets stored on the log entry)."""
    return message.model_dump(mode="json", exclude_none=True)


def encode_message(message: ConsensusMessage) -> bytes:
    """Canonical UTF-8 JSON bytes for signing and submission."""
    return json.dumps(
        message_to_dict(message),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def decode_message(raw: bytes | str | dict[str, Any]) -> ConsensusMessage:
    """Parse a message from the ledger or from a stored log payload.

    Unknown fields are ignored; optional fields absent from older versions
    default to None.

    Raises:
        MessageValidationError: If the payload is not a known, valid variant.
    """
    try:
        if isinstance(raw, dict):
            return _MESSAGE_ADAPTER.validate_python(raw)
        return _MESSAGE_ADAPTER.validate_json(raw)
    except ValidationError as err:
        raise MessageValidationError(
            "Undecodable consensus message",
            errors=err.errors(include_url=False),
        ) from err
