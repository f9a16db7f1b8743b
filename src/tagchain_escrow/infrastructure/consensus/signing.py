"""Operator identity and ED25519 signing for consensus submissions.

Hedera operator keys are distributed either as a raw 32-byte hex seed or as
a DER-encoded PKCS#8 hex string (prefix 302e020100300506032b657004220420).
Both forms are accepted.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from tagchain_escrow.domain.exceptions import ConfigurationError

_ACCOUNT_ID_RE = re.compile(r"^\d+\.\d+\.\d+$")
_DER_ED25519_PRIVATE_PREFIX = "302e020100300506032b657004220420"


def parse_account_id(account_id: str) -> str:
    """Validate a `shard.realm.num` account id."""
    account_id = account_id.strip()
    if not _ACCOUNT_ID_RE.match(account_id):
        raise ConfigurationError(
            f"Invalid operator account id '{account_id}' (expected shard.realm.num)"
        )
    return account_id


def parse_private_key(key: str) -> Ed25519PrivateKey:
    """Load an ED25519 private key from raw or DER hex."""
    key_hex = key.strip().lower()
    if key_hex.startswith("0x"):
        key_hex = key_hex[2:]
    if key_hex.startswith(_DER_ED25519_PRIVATE_PREFIX):
        key_hex = key_hex[len(_DER_ED25519_PRIVATE_PREFIX):]
    try:
        seed = bytes.fromhex(key_hex)
    except ValueError as err:
        raise ConfigurationError("Operator key is not valid hex") from err
    if len(seed) != 32:
        raise ConfigurationError(
            f"Operator key must be a 32-byte ED25519 seed, got {len(seed)} bytes"
        )
    return Ed25519PrivateKey.from_private_bytes(seed)


@dataclass(frozen=True)
class OperatorIdentity:
    """The account that pays for and signs consensus submissions."""

    account_id: str
    private_key: Ed25519PrivateKey

    @classmethod
    def from_strings(cls, account_id: str, private_key: str) -> OperatorIdentity:
        """Build an identity from configuration values.

        Raises:
            ConfigurationError: If either value is missing or malformed.
        """
        if not account_id or not private_key:
            raise ConfigurationError("Hedera operator id/key not configured")
        return cls(
            account_id=parse_account_id(account_id),
            private_key=parse_private_key(private_key),
        )

    @property
    def public_key_hex(self) -> str:
        raw = self.private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        return raw.hex()

    def sign(self, body: bytes) -> bytes:
        return self.private_key.sign(body)
