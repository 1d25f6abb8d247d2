"""Domain layer — pure business logic with zero framework dependencies."""

from proof_escrow.domain.enums import (
    DealStatus,
    ReviewDecision,
    ReviewReason,
    ScheduleStatus,
    VerificationOutcome,
)
from proof_escrow.domain.exceptions import (
    DealNotFoundError,
    InvalidStateTransitionError,
    ProofEscrowError,
)
from proof_escrow.domain.state_machine import DealStateMachine, validate_transition
from proof_escrow.domain.transitions import DealSnapshot, Transition, transition
from proof_escrow.domain.verification import DispatchOutcome, VerificationResult

__all__ = [
    "DealStatus",
    "ReviewDecision",
    "ReviewReason",
    "ScheduleStatus",
    "VerificationOutcome",
    "DealNotFoundError",
    "InvalidStateTransitionError",
    "ProofEscrowError",
    "DealStateMachine",
    "validate_transition",
    "DealSnapshot",
    "Transition",
    "transition",
    "DispatchOutcome",
    "VerificationResult",
]
