"""Canonical verification result and dispatch outcome.

Every callback shape the analysis service has ever sent is normalized into
a VerificationResult before it reaches the state machine. The domain layer
never sees raw payloads.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from proof_escrow.domain.enums import VerificationOutcome


@dataclass(frozen=True)
class VerificationResult:
    """Output of one verification run against a deal's proof spec.

    Attributes:
        deal_id: Deal the result belongs to (None if the payload had none).
        outcome: completed, failed (judged by the service) or error.
        overall_score: 0-100.
        confidence: 0-100; falls back to overall_score when not reported.
        requirements_met: Proof requirements the analysis confirmed.
        requirements_failed: Proof requirements the analysis could not find.
        raw: The payload as received, kept for audit and display.
        error: Why normalization produced an error outcome, if it did.
    """

    deal_id: str | None
    outcome: VerificationOutcome
    overall_score: float = 0.0
    confidence: float = 0.0
    requirements_met: tuple[str, ...] = ()
    requirements_failed: tuple[str, ...] = ()
    raw: Any = None
    error: str | None = None

    @classmethod
    def errored(cls, deal_id: str | None, raw: Any, error: str) -> VerificationResult:
        return cls(deal_id=deal_id, outcome=VerificationOutcome.ERROR, raw=raw, error=error)

    def to_dict(self) -> dict:
        """Serialize for storage in the orchestrator_result JSON column."""
        return {
            "outcome": self.outcome.value,
            "overall_score": self.overall_score,
            "confidence": self.confidence,
            "requirements_met": list(self.requirements_met),
            "requirements_failed": list(self.requirements_failed),
            "error": self.error,
            "raw": self.raw,
        }


@dataclass(frozen=True)
class DispatchOutcome:
    """Result of handing a verification request to the analysis service."""

    success: bool
    request_id: str | None = None
    error: str | None = None
    timed_out: bool = False
    request: dict = field(default_factory=dict)
