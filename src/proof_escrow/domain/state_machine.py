"""Deal lifecycle state machine guard.

Uses python-statemachine to enforce the legal status graph. Business rules
(who may act, thresholds, duration gating) live in domain/transitions.py;
this module only answers "may a deal in status X take event Y, and where
does it land".

Transition table:
    PendingAcceptance   -> PendingFunding       (creator_accepts)
    PendingFunding      -> PendingVerification  (funding_confirmed)
    Failed              -> PendingVerification  (funding_confirmed)
    PendingVerification -> Verifying            (post_submitted)
    Verifying           -> Verifying            (verification_recorded)
    Verifying           -> Completed            (verification_succeeded)
    Verifying           -> Failed               (verification_failed)
    any non-terminal    -> Cancelled            (deal_cancelled)
"""

from __future__ import annotations

from statemachine import State, StateMachine


class DealStateMachine(StateMachine):
    """State machine that guards deal lifecycle transitions.

    Usage:
        sm = DealStateMachine(current_status="PendingFunding")
        sm.funding_confirmed()
        sm.status  # "PendingVerification"
    """

    # --- States ---
    PENDING_ACCEPTANCE = State("PendingAcceptance", value="PendingAcceptance", initial=True)
    PENDING_FUNDING = State("PendingFunding", value="PendingFunding")
    PENDING_VERIFICATION = State("PendingVerification", value="PendingVerification")
    VERIFYING = State("Verifying", value="Verifying")
    COMPLETED = State("Completed", value="Completed", final=True)
    FAILED = State("Failed", value="Failed")
    CANCELLED = State("Cancelled", value="Cancelled", final=True)

    # --- Events / Transitions ---
    creator_accepts = PENDING_ACCEPTANCE.to(PENDING_FUNDING)

    # A failed deal may be funded again and re-enter verification
    funding_confirmed = PENDING_FUNDING.to(PENDING_VERIFICATION) | FAILED.to(
        PENDING_VERIFICATION
    )

    post_submitted = PENDING_VERIFICATION.to(VERIFYING)

    verification_recorded = VERIFYING.to(VERIFYING)
    verification_succeeded = VERIFYING.to(COMPLETED)
    verification_failed = VERIFYING.to(FAILED)

    deal_cancelled = (
        PENDING_ACCEPTANCE.to(CANCELLED)
        | PENDING_FUNDING.to(CANCELLED)
        | PENDING_VERIFICATION.to(CANCELLED)
        | VERIFYING.to(CANCELLED)
    )

    def __init__(self, current_status: str = "PendingAcceptance") -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches DealStatus)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [event.name for event in self.allowed_events]


def validate_transition(current_status: str, event_name: str) -> str:
    """Fire ``event_name`` on a throwaway machine and return the new status.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is invalid.
    """
    sm = DealStateMachine(current_status=current_status)

    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    event_method()
    return sm.status
