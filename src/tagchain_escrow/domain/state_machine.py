"""Lifecycle guard for escrow transactions, built on python-statemachine.

No matter what the API or a reconciliation job does, an illegal transition
(e.g., pending -> released) raises before anything is written.

Transitions are forward-only and no state is re-enterable:
    (none)   -> pending     (create)
    pending  -> funded      (funds_received)
    funded   -> released    (payment_released)
    funded   -> disputed    (dispute_raised)
    pending  -> cancelled   (trade_cancelled)

Creation has no source state, so it is not modelled as an event here; the
orchestrator treats "id already exists" as its failed precondition.
"""

from __future__ import annotations

from dataclasses import dataclass

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from tagchain_escrow.domain.enums import EscrowEventType, EscrowStatus
from tagchain_escrow.domain.exceptions import PreconditionFailed


class EscrowStateMachine(StateMachine):
    """The escrow lifecycle as a python-statemachine graph.

        sm = EscrowStateMachine(current_status="funded")
        sm.payment_released()  # transitions to released
        sm.status              # "released"
    """

    # --- States ---
    PENDING = State("Pending", value="pending", initial=True)
    FUNDED = State("Funded", value="funded")
    RELEASED = State("Released", value="released", final=True)
    DISPUTED = State("Disputed", value="disputed", final=True)
    CANCELLED = State("Cancelled", value="cancelled", final=True)

    # --- Events / Transitions ---
    funds_received = PENDING.to(FUNDED)
    trade_cancelled = PENDING.to(CANCELLED)
    payment_released = FUNDED.to(RELEASED)
    dispute_raised = FUNDED.to(DISPUTED)

    def __init__(self, current_status: str = "pending") -> None:
        """Start the machine at a stored status; unknown values raise ValueError."""
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Current status as stored in the escrow table."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Machine events that can fire from the current status."""
        return [
            t.machine_event for t in TRANSITIONS.values() if t.source.value == self.status
        ]


@dataclass(frozen=True)
class LifecycleTransition:
    """One edge of the lifecycle graph, as used by the conditional write."""

    event_type: EscrowEventType
    machine_event: str
    source: EscrowStatus
    target: EscrowStatus


TRANSITIONS: dict[EscrowEventType, LifecycleTransition] = {
    EscrowEventType.FUND: LifecycleTransition(
        EscrowEventType.FUND, "funds_received", EscrowStatus.PENDING, EscrowStatus.FUNDED
    ),
    EscrowEventType.RELEASE: LifecycleTransition(
        EscrowEventType.RELEASE, "payment_released", EscrowStatus.FUNDED, EscrowStatus.RELEASED
    ),
    EscrowEventType.DISPUTE: LifecycleTransition(
        EscrowEventType.DISPUTE, "dispute_raised", EscrowStatus.FUNDED, EscrowStatus.DISPUTED
    ),
    EscrowEventType.CANCEL: LifecycleTransition(
        EscrowEventType.CANCEL, "trade_cancelled", EscrowStatus.PENDING, EscrowStatus.CANCELLED
    ),
}


def validate_transition(current_status: str, event_name: str) -> str:
    """Fire `event_name` on a throwaway machine at `current_status`; return the target status.

    Raises TransitionNotAllowed for an illegal edge and ValueError for an
    unknown status or event.
    """
    sm = EscrowStateMachine(current_status=current_status)

    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    event_method()
    return sm.status


def guard_transition(
    transaction_id: str,
    current_status: str,
    event_type: EscrowEventType,
) -> LifecycleTransition:
    """Check that `event_type` may fire from `current_status`.

    Returns the matching LifecycleTransition, or raises PreconditionFailed.
    """
    transition = TRANSITIONS.get(event_type)
    if transition is None:
        raise ValueError(f"'{event_type}' is not a status transition")
    try:
        validate_transition(current_status, transition.machine_event)
    except TransitionNotAllowed as err:
        raise PreconditionFailed(transaction_id, current_status, event_type.value) from err
    return transition
