"""Deal transition rules.

``transition(deal, trigger)`` is a pure function: given a snapshot of a
deal and something that happened to it, it returns the next status, the
column patch to write, and the side effects to run once that write has
committed. It never touches the database or the network.

Two kinds of triggers arrive:

* User actions (accept, fund, submit post, cancel). Invalid ones raise a
  domain error so the caller gets a 4xx. Repeating an action that already
  took effect is a no-op.
* System signals (verification results, duration checks, reviewer
  decisions). These race with each other, so a signal for a deal that has
  already moved on is ignored rather than rejected.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

from statemachine.exceptions import TransitionNotAllowed

from proof_escrow.domain.enums import (
    CANCELLABLE_STATUSES,
    DealEventType,
    DealStatus,
    PaymentMethod,
    RefundReason,
    ReviewDecision,
    ReviewReason,
    Severity,
    VerificationOutcome,
)
from proof_escrow.domain.exceptions import (
    DealValidationError,
    InvalidStateTransitionError,
    PermissionDeniedError,
)
from proof_escrow.domain.post_url import is_valid_post_url
from proof_escrow.domain.schedule import completion_time
from proof_escrow.domain.state_machine import validate_transition
from proof_escrow.domain.verification import VerificationResult


@dataclass(frozen=True)
class Thresholds:
    """Score and confidence cut-offs, all on a 0-100 scale."""

    success: float = 80.0
    review: float = 60.0
    confidence: float = 70.0
    high_priority_confidence: float = 50.0


DEFAULT_THRESHOLDS = Thresholds()


@dataclass(frozen=True)
class DealSnapshot:
    """The fields of a deal the rules look at."""

    deal_id: str
    status: DealStatus
    advertiser_id: str
    creator_id: str | None
    deadline: datetime
    duration_hours: float
    post_url: str | None = None
    posted_at: datetime | None = None
    verification_score: float | None = None
    last_verification_at: datetime | None = None

    @classmethod
    def from_record(cls, deal: Any, duration_hours: float) -> DealSnapshot:
        """Build a snapshot from any object carrying the deal columns."""
        score = deal.verification_score
        return cls(
            deal_id=str(deal.id),
            status=DealStatus(deal.status),
            advertiser_id=deal.advertiser_id,
            creator_id=deal.creator_id,
            deadline=deal.deadline,
            duration_hours=float(duration_hours),
            post_url=deal.post_url,
            posted_at=deal.posted_at,
            verification_score=float(score) if score is not None else None,
            last_verification_at=deal.last_verification_at,
        )


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Accept:
    actor_id: str


@dataclass(frozen=True)
class FundConfirmed:
    payment_method: PaymentMethod
    tx_ref: str | None = None
    # None when the confirmation comes from the payment provider
    actor_id: str | None = None


@dataclass(frozen=True)
class PostSubmitted:
    actor_id: str
    post_url: str
    now: datetime
    analysis_enabled: bool = True


@dataclass(frozen=True)
class VerificationArrived:
    result: VerificationResult
    now: datetime


@dataclass(frozen=True)
class DurationCheck:
    now: datetime


@dataclass(frozen=True)
class ReviewerDecided:
    review_id: str
    decision: ReviewDecision
    reviewer_id: str
    now: datetime
    notes: str | None = None


@dataclass(frozen=True)
class Cancel:
    actor_id: str
    now: datetime


Trigger = Union[
    Accept,
    FundConfirmed,
    PostSubmitted,
    VerificationArrived,
    DurationCheck,
    ReviewerDecided,
    Cancel,
]


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------


class EffectKind(enum.StrEnum):
    DISPATCH_VERIFICATION = "DISPATCH_VERIFICATION"
    CREATE_REVIEW = "CREATE_REVIEW"
    TRIGGER_PAYOUT = "TRIGGER_PAYOUT"
    TRIGGER_REFUND = "TRIGGER_REFUND"
    NOTIFY_ESCALATION = "NOTIFY_ESCALATION"


@dataclass(frozen=True)
class SideEffect:
    kind: EffectKind
    reason_code: ReviewReason | None = None
    severity: Severity | None = None
    refund_reason: RefundReason | None = None
    evidence: dict = field(default_factory=dict)


class ScheduleAction(enum.StrEnum):
    CREATE_LADDER = "CREATE_LADDER"
    COMPLETE_CURRENT = "COMPLETE_CURRENT"
    COMPLETE_PENDING = "COMPLETE_PENDING"
    CANCEL_PENDING = "CANCEL_PENDING"


@dataclass(frozen=True)
class Transition:
    """Decision for one trigger.

    ``applied`` is False for ignored triggers; those carry a ``reason`` and
    nothing is written except (when ``audit`` is set) a deal event.
    """

    old_status: DealStatus
    new_status: DealStatus
    applied: bool
    event_type: DealEventType | None = None
    patch: dict = field(default_factory=dict)
    effects: tuple[SideEffect, ...] = ()
    schedule_actions: tuple[ScheduleAction, ...] = ()
    reason: str | None = None
    audit: bool = True

    @property
    def status_changed(self) -> bool:
        return self.old_status != self.new_status

    def has_effect(self, kind: EffectKind) -> bool:
        return any(effect.kind == kind for effect in self.effects)


def _ignored(deal: DealSnapshot, reason: str, audit: bool = True) -> Transition:
    return Transition(
        old_status=deal.status,
        new_status=deal.status,
        applied=False,
        reason=reason,
        audit=audit,
    )


def _advance(status: DealStatus, event_name: str) -> DealStatus:
    try:
        return DealStatus(validate_transition(status.value, event_name))
    except TransitionNotAllowed as exc:
        raise InvalidStateTransitionError(status.value, event_name) from exc


def _review(
    reason: ReviewReason,
    severity: Severity,
    evidence: dict | None = None,
) -> SideEffect:
    return SideEffect(
        kind=EffectKind.CREATE_REVIEW,
        reason_code=reason,
        severity=severity,
        evidence=evidence or {},
    )


def _fail(
    deal: DealSnapshot,
    patch: dict,
    failure_reason: str,
    refund_reason: RefundReason,
    schedule_actions: tuple[ScheduleAction, ...],
) -> Transition:
    return Transition(
        old_status=deal.status,
        new_status=_advance(deal.status, "verification_failed"),
        applied=True,
        event_type=DealEventType.DEAL_FAILED,
        patch={**patch, "failure_reason": failure_reason},
        effects=(SideEffect(kind=EffectKind.TRIGGER_REFUND, refund_reason=refund_reason),),
        schedule_actions=schedule_actions,
    )


def _complete(deal: DealSnapshot, patch: dict) -> Transition:
    return Transition(
        old_status=deal.status,
        new_status=_advance(deal.status, "verification_succeeded"),
        applied=True,
        event_type=DealEventType.DEAL_COMPLETED,
        patch=patch,
        effects=(SideEffect(kind=EffectKind.TRIGGER_PAYOUT),),
        schedule_actions=(ScheduleAction.COMPLETE_PENDING,),
    )


# ---------------------------------------------------------------------------
# User actions
# ---------------------------------------------------------------------------


def _on_accept(deal: DealSnapshot, trigger: Accept) -> Transition:
    if trigger.actor_id == deal.advertiser_id:
        raise DealValidationError("You cannot accept your own deal")

    if deal.status != DealStatus.PENDING_ACCEPTANCE:
        if deal.creator_id == trigger.actor_id and deal.status != DealStatus.CANCELLED:
            return _ignored(deal, "already accepted by this creator")
        raise InvalidStateTransitionError(deal.status.value, "accept")

    return Transition(
        old_status=deal.status,
        new_status=_advance(deal.status, "creator_accepts"),
        applied=True,
        event_type=DealEventType.DEAL_ACCEPTED,
        patch={"creator_id": trigger.actor_id},
    )


def _on_fund(deal: DealSnapshot, trigger: FundConfirmed) -> Transition:
    if trigger.actor_id is not None and trigger.actor_id != deal.advertiser_id:
        raise PermissionDeniedError("Only the advertiser can fund this deal")

    if deal.status in (
        DealStatus.PENDING_VERIFICATION,
        DealStatus.VERIFYING,
        DealStatus.COMPLETED,
    ):
        return _ignored(deal, "deal already funded")
    if deal.status not in (DealStatus.PENDING_FUNDING, DealStatus.FAILED):
        raise InvalidStateTransitionError(deal.status.value, "fund")

    patch: dict[str, Any] = {"failure_reason": None}
    if deal.status == DealStatus.FAILED:
        # Re-funding starts a fresh verification round
        patch.update(
            post_url=None,
            posted_at=None,
            completes_at=None,
            verification_score=None,
            last_verification_at=None,
            orchestrator_result=None,
        )

    return Transition(
        old_status=deal.status,
        new_status=_advance(deal.status, "funding_confirmed"),
        applied=True,
        event_type=DealEventType.DEAL_FUNDED,
        patch=patch,
    )


def _on_post_submitted(deal: DealSnapshot, trigger: PostSubmitted) -> Transition:
    if deal.creator_id is None or trigger.actor_id != deal.creator_id:
        raise PermissionDeniedError("Only the deal creator can submit a post")

    post_url = trigger.post_url.strip()
    if deal.status == DealStatus.VERIFYING and deal.post_url == post_url:
        return _ignored(deal, "post already submitted")
    if deal.status != DealStatus.PENDING_VERIFICATION:
        raise InvalidStateTransitionError(deal.status.value, "submit_post")
    if not is_valid_post_url(post_url):
        raise DealValidationError(f"Invalid post URL: {trigger.post_url!r}")
    if trigger.now > deal.deadline:
        raise DealValidationError("Deal deadline has passed")

    if trigger.analysis_enabled:
        effects = (SideEffect(kind=EffectKind.DISPATCH_VERIFICATION),)
    else:
        effects = (
            _review(
                ReviewReason.ORCHESTRATOR_DISABLED,
                Severity.HIGH,
                {"post_url": post_url},
            ),
        )

    return Transition(
        old_status=deal.status,
        new_status=_advance(deal.status, "post_submitted"),
        applied=True,
        event_type=DealEventType.POST_SUBMITTED,
        patch={
            "post_url": post_url,
            "posted_at": trigger.now,
            "completes_at": completion_time(trigger.now, deal.duration_hours),
        },
        effects=effects,
        schedule_actions=(ScheduleAction.CREATE_LADDER,),
    )


def _on_cancel(deal: DealSnapshot, trigger: Cancel) -> Transition:
    if trigger.actor_id not in (deal.advertiser_id, deal.creator_id):
        raise PermissionDeniedError("Only the advertiser or creator can cancel this deal")

    if deal.status == DealStatus.CANCELLED:
        return _ignored(deal, "deal already cancelled")
    if deal.status not in CANCELLABLE_STATUSES:
        raise InvalidStateTransitionError(deal.status.value, "cancel")

    return Transition(
        old_status=deal.status,
        new_status=_advance(deal.status, "deal_cancelled"),
        applied=True,
        event_type=DealEventType.DEAL_CANCELLED,
        patch={"cancelled_at": trigger.now},
        schedule_actions=(ScheduleAction.CANCEL_PENDING,),
    )


# ---------------------------------------------------------------------------
# System signals
# ---------------------------------------------------------------------------


def _on_verification(
    deal: DealSnapshot,
    trigger: VerificationArrived,
    thresholds: Thresholds,
) -> Transition:
    if deal.status != DealStatus.VERIFYING:
        return _ignored(deal, f"verification result for a deal in {deal.status}")

    result = trigger.result
    score = result.overall_score
    confidence = result.confidence
    patch = {
        "orchestrator_result": result.to_dict(),
        "verification_score": score,
        "last_verification_at": trigger.now,
    }
    recorded = (ScheduleAction.COMPLETE_CURRENT,)
    failed = (ScheduleAction.COMPLETE_CURRENT, ScheduleAction.CANCEL_PENDING)
    evidence = {"overall_score": score, "confidence": confidence}

    if result.outcome == VerificationOutcome.ERROR:
        return Transition(
            old_status=deal.status,
            new_status=_advance(deal.status, "verification_recorded"),
            applied=True,
            event_type=DealEventType.VERIFICATION_RECORDED,
            patch={**patch, "verification_score": 0.0},
            effects=(
                _review(
                    ReviewReason.ORCHESTRATOR_ERROR,
                    Severity.HIGH,
                    {**evidence, "error": result.error},
                ),
            ),
            schedule_actions=recorded,
        )

    if result.outcome == VerificationOutcome.FAILED:
        return _fail(
            deal,
            patch,
            f"Verification failed - Score: {score:g}/100",
            RefundReason.VERIFICATION_FAILED,
            failed,
        )

    # Named requirement failures win over any score
    if result.requirements_failed:
        return _fail(
            deal,
            patch,
            "Verification requirements not met: " + ", ".join(result.requirements_failed),
            RefundReason.VERIFICATION_FAILED,
            failed,
        )

    if score >= thresholds.success:
        return Transition(
            old_status=deal.status,
            new_status=_advance(deal.status, "verification_recorded"),
            applied=True,
            event_type=DealEventType.VERIFICATION_RECORDED,
            patch=patch,
            schedule_actions=recorded,
        )

    if score >= thresholds.review or confidence < thresholds.confidence:
        reason = (
            ReviewReason.MANUAL_REVIEW_NEEDED
            if score >= thresholds.review
            else ReviewReason.INFERENCE_AMBIGUOUS
        )
        severity = (
            Severity.HIGH
            if confidence < thresholds.high_priority_confidence
            else Severity.MEDIUM
        )
        return Transition(
            old_status=deal.status,
            new_status=_advance(deal.status, "verification_recorded"),
            applied=True,
            event_type=DealEventType.VERIFICATION_RECORDED,
            patch=patch,
            effects=(_review(reason, severity, evidence),),
            schedule_actions=recorded,
        )

    return _fail(
        deal,
        patch,
        f"Low verification confidence: {score:g}/100",
        RefundReason.VERIFICATION_FAILED,
        failed,
    )


def _on_duration_check(
    deal: DealSnapshot,
    trigger: DurationCheck,
    thresholds: Thresholds,
) -> Transition:
    if (
        deal.status != DealStatus.VERIFYING
        or deal.posted_at is None
        or deal.last_verification_at is None
    ):
        return _ignored(deal, f"duration check for a deal in {deal.status}")

    if trigger.now < completion_time(deal.posted_at, deal.duration_hours):
        return _ignored(deal, "observation window still open", audit=False)

    score = deal.verification_score
    if score is not None and score >= thresholds.success:
        return _complete(deal, {})

    return _fail(
        deal,
        {},
        f"Duration completed ({deal.duration_hours:g}h) without successful verification",
        RefundReason.VERIFICATION_FAILED,
        (ScheduleAction.CANCEL_PENDING,),
    )


def _on_review_decision(deal: DealSnapshot, trigger: ReviewerDecided) -> Transition:
    if trigger.decision == ReviewDecision.ESCALATE:
        return Transition(
            old_status=deal.status,
            new_status=deal.status,
            applied=True,
            event_type=DealEventType.REVIEW_DECIDED,
            effects=(SideEffect(kind=EffectKind.NOTIFY_ESCALATION),),
        )

    if deal.status != DealStatus.VERIFYING:
        return _ignored(deal, f"review decision for a deal in {deal.status}")

    manual = {
        "review_id": trigger.review_id,
        "decision": trigger.decision.value,
        "reviewer_id": trigger.reviewer_id,
        "notes": trigger.notes,
    }

    if trigger.decision == ReviewDecision.RELEASE:
        patch = {
            "orchestrator_result": {"manual_review": manual},
            "verification_score": 100.0,
            "last_verification_at": trigger.now,
            "failure_reason": None,
        }
        # A manual pass is still held until the observation window closes
        due = deal.posted_at is None or trigger.now >= completion_time(
            deal.posted_at, deal.duration_hours
        )
        if due:
            return _complete(deal, patch)
        return Transition(
            old_status=deal.status,
            new_status=_advance(deal.status, "verification_recorded"),
            applied=True,
            event_type=DealEventType.REVIEW_DECIDED,
            patch=patch,
        )

    return _fail(
        deal,
        {"orchestrator_result": {"manual_review": manual}},
        f"Rejected by manual review ({trigger.decision.value})",
        RefundReason.MANUAL,
        (ScheduleAction.CANCEL_PENDING,),
    )


def transition(
    deal: DealSnapshot,
    trigger: Trigger,
    thresholds: Thresholds = DEFAULT_THRESHOLDS,
) -> Transition:
    """Decide what ``trigger`` does to ``deal``.

    Raises:
        DealValidationError, PermissionDeniedError, InvalidStateTransitionError:
            For user actions that are not allowed.
    """
    if isinstance(trigger, Accept):
        return _on_accept(deal, trigger)
    if isinstance(trigger, FundConfirmed):
        return _on_fund(deal, trigger)
    if isinstance(trigger, PostSubmitted):
        return _on_post_submitted(deal, trigger)
    if isinstance(trigger, Cancel):
        return _on_cancel(deal, trigger)
    if isinstance(trigger, VerificationArrived):
        return _on_verification(deal, trigger, thresholds)
    if isinstance(trigger, DurationCheck):
        return _on_duration_check(deal, trigger, thresholds)
    if isinstance(trigger, ReviewerDecided):
        return _on_review_decision(deal, trigger)
    raise TypeError(f"Unsupported trigger: {type(trigger).__name__}")
