"""Tests for the DealStateMachine domain guard.

These tests verify that:
    1. All valid transitions are allowed.
    2. All invalid transitions are blocked.
    3. The convenience function validate_transition works.
    4. Edge cases (re-funding, self transitions) behave correctly.
"""

from __future__ import annotations

import pytest
from statemachine.exceptions import TransitionNotAllowed

from proof_escrow.domain.state_machine import DealStateMachine, validate_transition


class TestHappyPath:
    """Test the full happy-path lifecycle: PendingAcceptance -> Completed."""

    def test_full_lifecycle(self) -> None:
        sm = DealStateMachine("PendingAcceptance")
        assert sm.status == "PendingAcceptance"

        sm.creator_accepts()
        assert sm.status == "PendingFunding"

        sm.funding_confirmed()
        assert sm.status == "PendingVerification"

        sm.post_submitted()
        assert sm.status == "Verifying"

        sm.verification_recorded()
        assert sm.status == "Verifying"

        sm.verification_succeeded()
        assert sm.status == "Completed"


class TestFailurePath:
    def test_verification_failed(self) -> None:
        sm = DealStateMachine("Verifying")
        sm.verification_failed()
        assert sm.status == "Failed"

    def test_failed_deal_can_be_refunded_into_verification(self) -> None:
        sm = DealStateMachine("Failed")
        sm.funding_confirmed()
        assert sm.status == "PendingVerification"


class TestCancelPath:
    @pytest.mark.parametrize(
        "status",
        ["PendingAcceptance", "PendingFunding", "PendingVerification", "Verifying"],
    )
    def test_cancel_from_open_status(self, status: str) -> None:
        sm = DealStateMachine(status)
        sm.deal_cancelled()
        assert sm.status == "Cancelled"

    def test_cannot_cancel_failed_deal(self) -> None:
        sm = DealStateMachine("Failed")
        with pytest.raises(TransitionNotAllowed):
            sm.deal_cancelled()


class TestIllegalTransitions:
    """Verify that illegal transitions raise TransitionNotAllowed."""

    def test_pending_acceptance_to_completed(self) -> None:
        sm = DealStateMachine("PendingAcceptance")
        with pytest.raises(TransitionNotAllowed):
            sm.verification_succeeded()

    def test_funding_cannot_skip_to_verifying(self) -> None:
        sm = DealStateMachine("PendingFunding")
        with pytest.raises(TransitionNotAllowed):
            sm.post_submitted()

    def test_completed_is_final(self) -> None:
        sm = DealStateMachine("Completed")
        assert sm.get_allowed_events() == []

    def test_cancelled_is_final(self) -> None:
        sm = DealStateMachine("Cancelled")
        assert sm.get_allowed_events() == []


class TestValidateTransitionFunction:
    """Test the convenience function."""

    def test_valid_transition(self) -> None:
        assert validate_transition("PendingFunding", "funding_confirmed") == "PendingVerification"

    def test_illegal_transition(self) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_transition("Completed", "verification_failed")

    def test_invalid_event_name(self) -> None:
        with pytest.raises(ValueError, match="Unknown event"):
            validate_transition("Verifying", "nonexistent_event")

    def test_invalid_status(self) -> None:
        with pytest.raises(ValueError, match="Unknown status"):
            DealStateMachine("INVALID_STATUS")
