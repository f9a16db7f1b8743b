"""Tests for the EscrowStateMachine domain guard.

These tests verify that:
    1. All valid transitions are allowed.
    2. All invalid transitions are blocked.
    3. guard_transition maps illegal moves to PreconditionFailed.
    4. Terminal states accept nothing.
"""

from __future__ import annotations

import pytest
from statemachine.exceptions import TransitionNotAllowed

from tagchain_escrow.domain.enums import EscrowEventType, EscrowStatus
from tagchain_escrow.domain.exceptions import PreconditionFailed
from tagchain_escrow.domain.state_machine import (
    TRANSITIONS,
    EscrowStateMachine,
    guard_transition,
    validate_transition,
)


class TestHappyPath:
    """Test the full happy-path lifecycle: pending -> released."""

    def test_full_lifecycle(self) -> None:
        sm = EscrowStateMachine("pending")
        assert sm.status == "pending"

        sm.funds_received()
        assert sm.status == "funded"

        sm.payment_released()
        assert sm.status == "released"

    def test_default_is_pending(self) -> None:
        assert EscrowStateMachine().status == "pending"


class TestAlternatePaths:
    def test_dispute_from_funded(self) -> None:
        sm = EscrowStateMachine("funded")
        sm.dispute_raised()
        assert sm.status == "disputed"

    def test_cancel_from_pending(self) -> None:
        sm = EscrowStateMachine("pending")
        sm.trade_cancelled()
        assert sm.status == "cancelled"


class TestIllegalTransitions:
    """Verify that illegal transitions raise TransitionNotAllowed."""

    def test_pending_to_released(self) -> None:
        sm = EscrowStateMachine("pending")
        with pytest.raises(TransitionNotAllowed):
            sm.payment_released()

    def test_funded_cannot_cancel(self) -> None:
        sm = EscrowStateMachine("funded")
        with pytest.raises(TransitionNotAllowed):
            sm.trade_cancelled()

    def test_funded_cannot_be_funded_again(self) -> None:
        sm = EscrowStateMachine("funded")
        with pytest.raises(TransitionNotAllowed):
            sm.funds_received()

    @pytest.mark.parametrize("status", ["released", "disputed", "cancelled"])
    def test_terminal_states_are_final(self, status: str) -> None:
        sm = EscrowStateMachine(status)
        assert sm.get_allowed_events() == []


class TestAllowedEvents:
    def test_pending_allowed(self) -> None:
        allowed = EscrowStateMachine("pending").get_allowed_events()
        assert sorted(allowed) == ["funds_received", "trade_cancelled"]

    def test_funded_allowed(self) -> None:
        allowed = EscrowStateMachine("funded").get_allowed_events()
        assert sorted(allowed) == ["dispute_raised", "payment_released"]


class TestValidateTransitionFunction:
    def test_valid_transition(self) -> None:
        assert validate_transition("funded", "payment_released") == "released"

    def test_invalid_event_name(self) -> None:
        with pytest.raises(ValueError, match="Unknown event"):
            validate_transition("funded", "nonexistent_event")

    def test_invalid_status(self) -> None:
        with pytest.raises(ValueError, match="Unknown status"):
            EscrowStateMachine("shipped")


class TestGuardTransition:
    @pytest.mark.parametrize(
        ("event_type", "source", "target"),
        [
            (EscrowEventType.FUND, EscrowStatus.PENDING, EscrowStatus.FUNDED),
            (EscrowEventType.RELEASE, EscrowStatus.FUNDED, EscrowStatus.RELEASED),
            (EscrowEventType.DISPUTE, EscrowStatus.FUNDED, EscrowStatus.DISPUTED),
            (EscrowEventType.CANCEL, EscrowStatus.PENDING, EscrowStatus.CANCELLED),
        ],
    )
    def test_valid_edges(
        self,
        event_type: EscrowEventType,
        source: EscrowStatus,
        target: EscrowStatus,
    ) -> None:
        transition = guard_transition("T1", source.value, event_type)
        assert transition.source == source
        assert transition.target == target

    def test_every_edge_matches_the_machine(self) -> None:
        for transition in TRANSITIONS.values():
            result = validate_transition(transition.source.value, transition.machine_event)
            assert result == transition.target.value

    def test_release_from_pending_is_precondition_failure(self) -> None:
        with pytest.raises(PreconditionFailed) as exc_info:
            guard_transition("T2", "pending", EscrowEventType.RELEASE)
        assert exc_info.value.current_status == "pending"
        assert exc_info.value.attempted_event == "release"
        assert exc_info.value.code == "PRECONDITION_FAILED"

    def test_verify_is_not_a_transition(self) -> None:
        with pytest.raises(ValueError, match="not a status transition"):
            guard_transition("T1", "funded", EscrowEventType.VERIFY)
