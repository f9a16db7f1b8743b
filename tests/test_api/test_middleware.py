"""Tests for domain error to HTTP status translation."""

from __future__ import annotations

import logging

import pytest

from tagchain_escrow.api.middleware import status_for
from tagchain_escrow.domain.exceptions import (
    ConsensusError,
    DuplicateOperationError,
    EscrowError,
    EscrowNotFoundError,
    InvalidEscrowDataError,
    MessageValidationError,
    PreconditionFailed,
    StorageError,
)


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (EscrowNotFoundError("T1"), 404),
        (PreconditionFailed("T1", "pending", "release"), 409),
        (DuplicateOperationError("k"), 409),
        (InvalidEscrowDataError("bad"), 422),
        (MessageValidationError("bad"), 422),
        (StorageError("down"), 503),
        (ConsensusError("unexpected"), 400),
        (EscrowError("generic"), 400),
    ],
)
def test_status_codes(exc: EscrowError, expected: int) -> None:
    assert status_for(exc)[0] == expected


def test_storage_errors_log_at_error_level() -> None:
    assert status_for(StorageError("down"))[1] == logging.ERROR
    assert status_for(PreconditionFailed("T1", "pending", "release"))[1] == logging.WARNING
