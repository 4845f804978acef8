"""Lifecycle guards for TxRecords and signed meta-transactions.

Uses python-statemachine to enforce legal transitions at the domain level.
No matter what the HTTP layer or a stale client view asks for, an illegal
transition (e.g. COMPLETED -> CANCELLED) raises TransitionNotAllowed.

The machines are instantiated from a record's current status and validate a
transition before the record's status field is replaced. They hold no timers:
readiness of a temporal approval is a pure function of release_time and is
checked by the workflow, not here.

TxRecord transition table:
    NONE      -> PENDING     (open_request)
    PENDING   -> COMPLETED   (approve_after_delay, approve_with_signature)
    PENDING   -> CANCELLED   (cancel_request)

Broadcast transition table:
    UNBROADCAST -> BROADCASTED (accept_broadcast)
    BROADCASTED -> CONFIRMED   (confirm_receipt)
    BROADCASTED -> FAILED      (fail_receipt)
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from secure_ops.domain.exceptions import InvalidStateTransitionError


class _StatusMachine(StateMachine):
    """Shared construction from a stored status string."""

    def __init__(self, current_status: str) -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string."""
        return str(self.current_state_value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [event.id for event in self.allowed_events]


class TxLifecycleMachine(_StatusMachine):
    """Two-phase temporal lifecycle: NONE -> PENDING -> COMPLETED | CANCELLED."""

    NONE = State("NONE", initial=True)
    PENDING = State("PENDING")
    COMPLETED = State("COMPLETED", final=True)
    CANCELLED = State("CANCELLED", final=True)

    open_request = NONE.to(PENDING)
    approve_after_delay = PENDING.to(COMPLETED)
    approve_with_signature = PENDING.to(COMPLETED)
    cancel_request = PENDING.to(CANCELLED)

    def __init__(self, current_status: str = "NONE") -> None:
        super().__init__(current_status)


class BroadcastMachine(_StatusMachine):
    """Meta-transaction hand-off lifecycle."""

    UNBROADCAST = State("UNBROADCAST", initial=True)
    BROADCASTED = State("BROADCASTED")
    CONFIRMED = State("CONFIRMED", final=True)
    FAILED = State("FAILED", final=True)

    accept_broadcast = UNBROADCAST.to(BROADCASTED)
    confirm_receipt = BROADCASTED.to(CONFIRMED)
    fail_receipt = BROADCASTED.to(FAILED)

    def __init__(self, current_status: str = "UNBROADCAST") -> None:
        super().__init__(current_status)


def fire_transition(machine_cls: type[_StatusMachine], current_status: str, event_name: str) -> str:
    """Validate a transition and return the new status.

    Raises:
        InvalidStateTransitionError: If the event is unknown or illegal from
            the current status.
    """
    sm = machine_cls(current_status)
    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise InvalidStateTransitionError(current_status, event_name)
    try:
        event_method()
    except TransitionNotAllowed as err:
        raise InvalidStateTransitionError(current_status, event_name) from err
    return sm.status
