"""Domain enumerations for Proof Escrow.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class DealStatus(enum.StrEnum):
    """Lifecycle states of a deal.

    Legal transitions are enforced by DealStateMachine.
    See domain/state_machine.py for the transition table.
    """

    PENDING_ACCEPTANCE = "PendingAcceptance"
    PENDING_FUNDING = "PendingFunding"
    PENDING_VERIFICATION = "PendingVerification"
    VERIFYING = "Verifying"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


# Statuses after which a callback or sweep has nothing left to decide.
TERMINAL_STATUSES = frozenset(
    {DealStatus.COMPLETED, DealStatus.FAILED, DealStatus.CANCELLED}
)

# Statuses from which either party may still cancel.
CANCELLABLE_STATUSES = frozenset(
    {
        DealStatus.PENDING_ACCEPTANCE,
        DealStatus.PENDING_FUNDING,
        DealStatus.PENDING_VERIFICATION,
        DealStatus.VERIFYING,
    }
)


class Platform(enum.StrEnum):
    TIKTOK = "tiktok"
    INSTAGRAM = "instagram"
    YOUTUBE = "youtube"
    TWITTER = "twitter"
    OTHER = "other"


class CheckType(enum.StrEnum):
    """Position of a verification check within a deal's schedule ladder."""

    INITIAL = "initial"
    PERIODIC = "periodic"
    FINAL = "final"


class ScheduleStatus(enum.StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class VerificationOutcome(enum.StrEnum):
    """Outcome reported by the analysis service for one verification run."""

    COMPLETED = "completed"
    ERROR = "error"
    FAILED = "failed"


class PaymentMethod(enum.StrEnum):
    STRIPE = "stripe"
    SOLANA = "solana"


class EscrowEventType(enum.StrEnum):
    """Ledger entries in escrow_events. Append-only."""

    CREATED = "Created"
    RELEASED = "Released"
    REFUNDED = "Refunded"


class PayoutStatus(enum.StrEnum):
    PROCESSING = "processing"
    PENDING_SETTLEMENT = "pending_settlement"
    AWAITING_CONNECTION = "awaiting_connection"
    COMPLETED = "completed"
    FAILED = "failed"


class RefundStatus(enum.StrEnum):
    PROCESSING = "processing"
    AWAITING_CONNECTION = "awaiting_connection"
    COMPLETED = "completed"
    FAILED = "failed"


class RefundReason(enum.StrEnum):
    VERIFICATION_FAILED = "verification_failed"
    DEADLINE_MISSED = "deadline_missed"
    DISPUTE = "dispute"
    MANUAL = "manual"


class ReviewReason(enum.StrEnum):
    """Why a deal was routed to a human reviewer."""

    INFERENCE_AMBIGUOUS = "INFERENCE_AMBIGUOUS"
    CAPTCHA = "CAPTCHA"
    PLATFORM_BLOCKED = "PLATFORM_BLOCKED"
    NO_CANDIDATES = "NO_CANDIDATES"
    TIMEOUT = "TIMEOUT"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    ORCHESTRATOR_ERROR = "ORCHESTRATOR_ERROR"
    ORCHESTRATOR_DISABLED = "ORCHESTRATOR_DISABLED"
    MANUAL_REVIEW_NEEDED = "MANUAL_REVIEW_NEEDED"


class Severity(enum.StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ReviewStatus(enum.StrEnum):
    OPEN = "Open"
    ASSIGNED = "Assigned"
    IN_PROGRESS = "InProgress"
    CLOSED = "Closed"


class ReviewDecision(enum.StrEnum):
    """Decision submitted by a reviewer."""

    RELEASE = "release"
    REFUND = "refund"
    MANUAL_FAIL = "manual_fail"
    ESCALATE = "escalate"


class ReviewVerdict(enum.StrEnum):
    """Recorded verdict for a decision, kept for reporting."""

    MANUAL_PASS = "ManualPass"
    MANUAL_FAIL = "ManualFail"
    RETRY = "Retry"


DECISION_VERDICTS: dict[ReviewDecision, ReviewVerdict] = {
    ReviewDecision.RELEASE: ReviewVerdict.MANUAL_PASS,
    ReviewDecision.REFUND: ReviewVerdict.MANUAL_FAIL,
    ReviewDecision.MANUAL_FAIL: ReviewVerdict.MANUAL_FAIL,
    ReviewDecision.ESCALATE: ReviewVerdict.RETRY,
}


class NotificationEventType(enum.StrEnum):
    NOTIFIED = "NOTIFIED"
    ESCALATED = "ESCALATED"


class Role(enum.StrEnum):
    ADVERTISER = "advertiser"
    CREATOR = "creator"
    REVIEWER = "reviewer"
    ADMIN = "admin"


class DealEventType(enum.StrEnum):
    """Types of audit events recorded in the deal_events table.

    Every applied transition produces exactly one event. Ignored
    triggers are recorded too, so webhook retries and cron overlap
    remain visible in the trail.
    """

    DEAL_CREATED = "DEAL_CREATED"
    DEAL_ACCEPTED = "DEAL_ACCEPTED"
    DEAL_FUNDED = "DEAL_FUNDED"
    POST_SUBMITTED = "POST_SUBMITTED"
    VERIFICATION_RECORDED = "VERIFICATION_RECORDED"
    DEAL_COMPLETED = "DEAL_COMPLETED"
    DEAL_FAILED = "DEAL_FAILED"
    DEAL_CANCELLED = "DEAL_CANCELLED"
    REVIEW_DECIDED = "REVIEW_DECIDED"
    PROOF_SPEC_UPDATED = "PROOF_SPEC_UPDATED"
    STALE_TRIGGER_IGNORED = "STALE_TRIGGER_IGNORED"
