"""Tests for domain enumerations."""

from __future__ import annotations

from proof_escrow.domain.enums import (
    CANCELLABLE_STATUSES,
    DECISION_VERDICTS,
    TERMINAL_STATUSES,
    DealStatus,
    ReviewDecision,
    ReviewVerdict,
)


class TestDealStatus:
    def test_all_statuses_exist(self) -> None:
        expected = {
            "PendingAcceptance", "PendingFunding", "PendingVerification",
            "Verifying", "Completed", "Failed", "Cancelled",
        }
        assert {s.value for s in DealStatus} == expected

    def test_status_is_str_enum(self) -> None:
        assert isinstance(DealStatus.VERIFYING, str)
        assert DealStatus.VERIFYING == "Verifying"

    def test_terminal_and_cancellable_are_disjoint(self) -> None:
        assert not TERMINAL_STATUSES & CANCELLABLE_STATUSES
        assert TERMINAL_STATUSES | CANCELLABLE_STATUSES == set(DealStatus)


class TestReviewDecision:
    def test_every_decision_has_a_verdict(self) -> None:
        assert set(DECISION_VERDICTS) == set(ReviewDecision)

    def test_release_is_manual_pass(self) -> None:
        assert DECISION_VERDICTS[ReviewDecision.RELEASE] == ReviewVerdict.MANUAL_PASS
        assert DECISION_VERDICTS[ReviewDecision.ESCALATE] == ReviewVerdict.RETRY
