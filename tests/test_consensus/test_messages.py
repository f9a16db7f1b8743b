"""Tests for the versioned consensus message variants and their codec."""

from __future__ import annotations

import json
from decimal import Decimal

import pytest
from pydantic import ValidationError

from tagchain_escrow.domain.enums import EscrowEventType, FundingMethod
from tagchain_escrow.domain.exceptions import MessageValidationError
from tagchain_escrow.schemas.consensus_messages import (
    MESSAGE_SCHEMA_VERSION,
    EscrowCreatedMessage,
    EscrowFundedMessage,
    EscrowReleasedMessage,
    build_message,
    decode_message,
    encode_message,
    message_to_dict,
    on_chain_user_id,
)


def _create_message() -> EscrowCreatedMessage:
    return build_message(
        EscrowEventType.CREATE,
        transaction_id="T1",
        escrow_id="escrow-abc",
        buyer_on_chain_id=on_chain_user_id("B"),
        seller_on_chain_id=on_chain_user_id("S"),
        amount=Decimal("100"),
        currency="USD",
    )


class TestBuildMessage:
    def test_create_message_fields(self) -> None:
        message = _create_message()
        assert isinstance(message, EscrowCreatedMessage)
        assert message.type == "escrow.create"
        assert message.version == MESSAGE_SCHEMA_VERSION
        assert message.status == "initiated"
        assert message.buyer_on_chain_id == "TAGCHAIN:USER:B"

    def test_each_event_has_a_variant(self) -> None:
        fund = build_message(
            EscrowEventType.FUND,
            transaction_id="T1",
            amount=Decimal("5"),
            currency="USD",
            funding_method=FundingMethod.MINT,
        )
        release = build_message(
            EscrowEventType.RELEASE,
            transaction_id="T1",
            seller_id="S",
            amount=Decimal("5"),
            currency="USD",
        )
        dispute = build_message(EscrowEventType.DISPUTE, transaction_id="T1", reason="lame")
        cancel = build_message(EscrowEventType.CANCEL, transaction_id="T1", cancelled_by="B")
        verify = build_message(EscrowEventType.VERIFY, transaction_id="T1", verifier_id="V")

        assert [m.type for m in (fund, release, dispute, cancel, verify)] == [
            "escrow.funded",
            "escrow.release",
            "escrow.dispute",
            "escrow.cancel",
            "escrow.verify",
        ]

    def test_missing_required_field(self) -> None:
        with pytest.raises(MessageValidationError) as exc_info:
            build_message(EscrowEventType.RELEASE, transaction_id="T1", amount=Decimal("5"))
        assert exc_info.value.errors

    def test_non_positive_amount_rejected(self) -> None:
        with pytest.raises(MessageValidationError):
            build_message(
                EscrowEventType.FUND,
                transaction_id="T1",
                amount=Decimal("0"),
                currency="USD",
            )

    def test_messages_are_immutable(self) -> None:
        message = _create_message()
        with pytest.raises(ValidationError):
            message.amount = Decimal("1")


class TestEncoding:
    def test_canonical_json(self) -> None:
        raw = encode_message(_create_message())
        text = raw.decode("utf-8")
        data = json.loads(text)

        assert list(data) == sorted(data)
        assert ", " not in text and ": " not in text
        assert data["amount"] == "100"
        assert data["timestamp"].endswith("Z") or "+00:00" in data["timestamp"]

    def test_none_fields_omitted(self) -> None:
        message = build_message(EscrowEventType.DISPUTE, transaction_id="T1", reason="late")
        assert "raised_by_user_id" not in message_to_dict(message)

    def test_encoding_is_stable(self) -> None:
        message = _create_message()
        assert encode_message(message) == encode_message(message)


class TestDecoding:
    def test_decode_bytes(self) -> None:
        original = _create_message()
        decoded = decode_message(encode_message(original))
        assert decoded == original

    def test_decode_ignores_unknown_fields(self) -> None:
        payload = message_to_dict(_create_message())
        payload["breed"] = "Angus"
        decoded = decode_message(payload)
        assert isinstance(decoded, EscrowCreatedMessage)
        assert not hasattr(decoded, "breed")

    def test_decode_older_payload_without_optional_field(self) -> None:
        decoded = decode_message(
            {
                "type": "escrow.funded",
                "version": "1.0",
                "transaction_id": "T1",
                "timestamp": "2025-01-01T00:00:00Z",
                "amount": "100",
                "currency": "USD",
            }
        )
        assert isinstance(decoded, EscrowFundedMessage)
        assert decoded.funding_method is None

    def test_decode_release_without_released_by(self) -> None:
        decoded = decode_message(
            '{"type":"escrow.release","version":"1.0","transaction_id":"T1",'
            '"timestamp":"2025-01-01T00:00:00Z","seller_id":"S","amount":"1","currency":"USD"}'
        )
        assert isinstance(decoded, EscrowReleasedMessage)
        assert decoded.released_by is None

    def test_unknown_type_rejected(self) -> None:
        with pytest.raises(MessageValidationError):
            decode_message({"type": "animal.teleported", "transaction_id": "T1"})

    def test_garbage_rejected(self) -> None:
        with pytest.raises(MessageValidationError):
            decode_message(b"not json")
