"""Deal Service: applies triggers to deals inside one unit of work.

This is the application layer that coordinates between:
    - Transition rules (domain/transitions.py)
    - Repositories (data access, compare-and-swap status writes)
    - Event log (audit trail)

It never commits and never calls external services. Callers (the workflow
and the routes) commit the session and then run the side effects listed on
the returned Transition.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC
from typing import TYPE_CHECKING, Any

from proof_escrow.config import Settings, get_settings
from proof_escrow.domain.enums import (
    DealEventType,
    DealStatus,
    EscrowEventType,
    PaymentMethod,
    ReviewDecision,
    ScheduleStatus,
)
from proof_escrow.domain.exceptions import (
    DealNotFoundError,
    DealValidationError,
    PermissionDeniedError,
)
from proof_escrow.domain.schedule import (
    build_schedule_ladder,
    completion_time,
    is_allowed_duration,
)
from proof_escrow.domain.transitions import (
    Accept,
    Cancel,
    DealSnapshot,
    DurationCheck,
    FundConfirmed,
    PostSubmitted,
    ReviewerDecided,
    ScheduleAction,
    Thresholds,
    Transition,
    Trigger,
    VerificationArrived,
    transition,
)
from proof_escrow.infrastructure.database.orm_models import Deal, ProofSpec
from proof_escrow.infrastructure.database.repositories import (
    DealEventRepository,
    DealRepository,
    EscrowEventRepository,
    ProofSpecRepository,
    ScheduleRepository,
)
from proof_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid
    from datetime import datetime
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession

    from proof_escrow.domain.verification import VerificationResult
    from proof_escrow.infrastructure.database.orm_models import DealEvent, VerificationSchedule

logger = get_logger(__name__)

# Statuses in which the creator may still revise the proof spec
_EDITABLE_STATUSES = (
    DealStatus.PENDING_ACCEPTANCE,
    DealStatus.PENDING_FUNDING,
    DealStatus.PENDING_VERIFICATION,
    DealStatus.VERIFYING,
)

# Schedule statuses after which a repeated result for the same run is ignored
_ANSWERED_STATUSES = (
    ScheduleStatus.COMPLETED.value,
    ScheduleStatus.EXPIRED.value,
    ScheduleStatus.CANCELLED.value,
)

_PROOF_SPEC_FIELDS = (
    "text_proof",
    "duration_hours",
    "visual_markers",
    "video_markers",
    "link_markers",
)


def thresholds_from_settings(settings: Settings) -> Thresholds:
    return Thresholds(
        success=settings.success_score_threshold,
        review=settings.review_score_threshold,
        confidence=settings.confidence_threshold,
        high_priority_confidence=settings.high_priority_confidence,
    )


@dataclass
class TransitionOutcome:
    """A trigger's decision plus the deal as it stands after the write."""

    deal: Deal
    transition: Transition
    applied: bool


class DealService:
    """Manages the deal lifecycle inside one database session."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._thresholds = thresholds_from_settings(self._settings)
        self._deal_repo = DealRepository(session)
        self._spec_repo = ProofSpecRepository(session)
        self._schedule_repo = ScheduleRepository(session)
        self._escrow_repo = EscrowEventRepository(session)
        self._event_repo = DealEventRepository(session)

    # ------------------------------------------------------------------
    # Deal Creation
    # ------------------------------------------------------------------

    async def create_deal(
        self,
        advertiser_id: str,
        amount: Decimal,
        deadline: datetime,
        now: datetime,
        platform: str = "tiktok",
        currency: str = "USDC",
        account_url: str | None = None,
        public_opt_in: bool = False,
        proof_spec: dict[str, Any] | None = None,
    ) -> Deal:
        """Create a deal in PendingAcceptance together with its proof spec."""
        spec_fields = dict(proof_spec or {})
        duration = float(spec_fields.get("duration_hours", 24))
        if not is_allowed_duration(duration):
            raise DealValidationError(
                "Duration must be 0.0833 (5min test), 24, 72, 168, or 720 hours"
            )
        if deadline.tzinfo is None:
            deadline = deadline.replace(tzinfo=UTC)
        if deadline <= now:
            raise DealValidationError("Deadline must be in the future")

        deal = await self._deal_repo.create(
            Deal(
                advertiser_id=advertiser_id,
                amount=amount,
                currency=currency,
                platform=platform,
                account_url=account_url,
                public_opt_in=public_opt_in,
                deadline=deadline,
                status=DealStatus.PENDING_ACCEPTANCE.value,
            )
        )
        await self._spec_repo.create(
            ProofSpec(
                deal_id=deal.id,
                text_proof=spec_fields.get("text_proof"),
                duration_hours=duration,
                visual_markers=list(spec_fields.get("visual_markers") or []),
                video_markers=list(spec_fields.get("video_markers") or []),
                link_markers=list(spec_fields.get("link_markers") or []),
            )
        )
        await self._event_repo.record(
            deal_id=deal.id,
            event_type=DealEventType.DEAL_CREATED,
            old_status=None,
            new_status=DealStatus.PENDING_ACCEPTANCE,
            actor=advertiser_id,
            metadata={"amount": str(amount), "currency": currency, "duration_hours": duration},
        )

        logger.info("deal.created", deal_id=str(deal.id), amount=str(amount))
        return deal

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_deal(self, deal_id: uuid.UUID) -> Deal:
        deal = await self._deal_repo.get_by_id(deal_id)
        if deal is None:
            raise DealNotFoundError(str(deal_id))
        return deal

    async def get_proof_spec(self, deal_id: uuid.UUID) -> ProofSpec | None:
        return await self._spec_repo.get_by_deal(deal_id)

    async def list_events(self, deal_id: uuid.UUID) -> list[DealEvent]:
        await self.get_deal(deal_id)
        return await self._event_repo.get_by_deal(deal_id)

    async def schedule_status(self, deal_id: uuid.UUID, now: datetime) -> dict[str, Any]:
        """Schedules of a deal with a per-status summary and window progress."""
        deal = await self.get_deal(deal_id)
        spec = await self._spec_repo.get_by_deal(deal_id)
        schedules: list[VerificationSchedule] = await self._schedule_repo.list_for_deal(deal_id)

        summary = {status.value: 0 for status in ScheduleStatus}
        for schedule in schedules:
            summary[schedule.status] = summary.get(schedule.status, 0) + 1
        summary["total"] = len(schedules)

        return {
            "deal_id": deal.id,
            "status": deal.status,
            "duration_hours": spec.duration_hours if spec else None,
            "posted_at": deal.posted_at,
            "completes_at": deal.completes_at,
            "duration_elapsed": deal.completes_at is not None and now >= deal.completes_at,
            "summary": summary,
            "schedules": schedules,
        }

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    async def accept(self, deal_id: uuid.UUID, actor_id: str) -> TransitionOutcome:
        deal = await self.get_deal(deal_id)
        return await self._apply(deal, Accept(actor_id=actor_id), actor=actor_id)

    async def fund(
        self,
        deal_id: uuid.UUID,
        payment_method: PaymentMethod,
        tx_ref: str | None = None,
        actor_id: str | None = None,
    ) -> TransitionOutcome:
        """Record a funding confirmation; repeated confirmations are no-ops."""
        deal = await self.get_deal(deal_id)
        trigger = FundConfirmed(payment_method=payment_method, tx_ref=tx_ref, actor_id=actor_id)

        if tx_ref and await self._escrow_repo.has_tx_ref(deal.id, tx_ref):
            return await self._ignore(
                deal, trigger, actor_id or "SYSTEM", "funding confirmation already recorded"
            )

        outcome = await self._apply(deal, trigger, actor=actor_id or "SYSTEM")
        if outcome.applied:
            await self._escrow_repo.record(
                deal_id=deal.id,
                event_type=EscrowEventType.CREATED,
                amount=outcome.deal.amount,
                payment_method=payment_method.value,
                tx_ref=tx_ref,
            )
        return outcome

    async def submit_post(
        self,
        deal_id: uuid.UUID,
        actor_id: str,
        post_url: str,
        now: datetime,
    ) -> TransitionOutcome:
        deal = await self.get_deal(deal_id)
        trigger = PostSubmitted(
            actor_id=actor_id,
            post_url=post_url,
            now=now,
            analysis_enabled=self._settings.analysis_enabled,
        )
        return await self._apply(deal, trigger, actor=actor_id)

    async def cancel(self, deal_id: uuid.UUID, actor_id: str, now: datetime) -> TransitionOutcome:
        deal = await self.get_deal(deal_id)
        return await self._apply(deal, Cancel(actor_id=actor_id, now=now), actor=actor_id)

    async def update_proof_spec(
        self,
        deal_id: uuid.UUID,
        actor_id: str,
        changes: dict[str, Any],
        now: datetime,
        reason: str | None = None,
    ) -> ProofSpec:
        """Revise the proof spec; only the accepted creator may, before settlement."""
        changes = {k: v for k, v in changes.items() if k in _PROOF_SPEC_FIELDS and v is not None}
        if not changes:
            raise DealValidationError("At least one proof specification field must be updated")
        if "duration_hours" in changes:
            changes["duration_hours"] = float(changes["duration_hours"])
            if not is_allowed_duration(changes["duration_hours"]):
                raise DealValidationError(
                    "Duration must be 0.0833 (5min test), 24, 72, 168, or 720 hours"
                )
        if len(changes.get("text_proof") or "") > 2000:
            raise DealValidationError("Text proof requirements cannot exceed 2000 characters")

        deal = await self.get_deal(deal_id)
        if deal.creator_id != actor_id:
            raise PermissionDeniedError("Only the deal creator can update the proof spec")
        if DealStatus(deal.status) not in _EDITABLE_STATUSES:
            raise DealValidationError(f"Proof spec cannot be modified while deal is {deal.status}")

        spec = await self._spec_repo.get_by_deal(deal_id)
        if spec is None:
            raise DealValidationError("Deal has no proof spec")

        old_values = {name: getattr(spec, name) for name in changes}
        for name, value in changes.items():
            setattr(spec, name, value)
        await self._spec_repo.add_revision(
            deal_id=deal.id,
            revised_by=actor_id,
            old_values=old_values,
            new_values=changes,
            reason=reason,
        )

        if "duration_hours" in changes and deal.posted_at is not None:
            # Keep the completion sweep aligned with the new window
            await self._deal_repo.update_if_status(
                deal.id,
                DealStatus(deal.status),
                {"completes_at": completion_time(deal.posted_at, changes["duration_hours"])},
            )
        await self._session.flush()

        status = DealStatus(deal.status)
        await self._event_repo.record(
            deal_id=deal.id,
            event_type=DealEventType.PROOF_SPEC_UPDATED,
            old_status=status,
            new_status=status,
            actor=actor_id,
            metadata={"changed": sorted(changes), "reason": reason},
        )
        logger.info("deal.proof_spec_updated", deal_id=str(deal.id), fields=sorted(changes))
        return spec

    # ------------------------------------------------------------------
    # System signals
    # ------------------------------------------------------------------

    async def record_verification(
        self,
        deal_id: uuid.UUID,
        result: VerificationResult,
        now: datetime,
        request_id: str | None = None,
    ) -> TransitionOutcome:
        """Apply a verification result; a retry for an already answered run is a no-op."""
        deal = await self.get_deal(deal_id)
        trigger = VerificationArrived(result=result, now=now)
        if request_id:
            answered = await self._schedule_repo.find_by_request_id(deal.id, request_id)
            if answered is not None and answered.status in _ANSWERED_STATUSES:
                return await self._ignore(
                    deal, trigger, "ANALYSIS", f"request {request_id} already {answered.status}"
                )
        return await self._apply(deal, trigger, actor="ANALYSIS", request_id=request_id)

    async def check_duration(self, deal_id: uuid.UUID, now: datetime) -> TransitionOutcome:
        deal = await self.get_deal(deal_id)
        return await self._apply(deal, DurationCheck(now=now), actor="SCHEDULER")

    async def apply_review_decision(
        self,
        deal_id: uuid.UUID,
        review_id: str,
        decision: ReviewDecision,
        reviewer_id: str,
        now: datetime,
        notes: str | None = None,
    ) -> TransitionOutcome:
        deal = await self.get_deal(deal_id)
        trigger = ReviewerDecided(
            review_id=review_id,
            decision=decision,
            reviewer_id=reviewer_id,
            now=now,
            notes=notes,
        )
        return await self._apply(deal, trigger, actor=reviewer_id)

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    async def _snapshot(self, deal: Deal) -> DealSnapshot:
        spec = await self._spec_repo.get_by_deal(deal.id)
        duration = spec.duration_hours if spec is not None else 24.0
        return DealSnapshot.from_record(deal, duration)

    async def _apply(
        self,
        deal: Deal,
        trigger: Trigger,
        actor: str,
        request_id: str | None = None,
    ) -> TransitionOutcome:
        """Decide, CAS-write, update schedules and append the audit event."""
        snapshot = await self._snapshot(deal)
        decision = transition(snapshot, trigger, self._thresholds)

        if not decision.applied:
            if decision.audit:
                await self._record_ignored(deal, decision, trigger, actor)
            return TransitionOutcome(deal=deal, transition=decision, applied=False)

        values = {"status": decision.new_status.value, **decision.patch}
        won = await self._deal_repo.update_if_status(deal.id, decision.old_status, values)
        if not won:
            fresh = await self._deal_repo.get_by_id(deal.id, refresh=True)
            lost = Transition(
                old_status=decision.old_status,
                new_status=DealStatus(fresh.status) if fresh else decision.old_status,
                applied=False,
                reason="deal changed concurrently",
            )
            await self._record_ignored(fresh or deal, lost, trigger, actor)
            logger.warning(
                "deal.transition_lost_race",
                deal_id=str(deal.id),
                expected=decision.old_status.value,
                trigger=type(trigger).__name__,
            )
            return TransitionOutcome(deal=fresh or deal, transition=lost, applied=False)

        await self._apply_schedule_actions(deal, decision, trigger, snapshot, request_id)

        metadata: dict[str, Any] = {"trigger": type(trigger).__name__}
        if decision.patch.get("failure_reason"):
            metadata["failure_reason"] = decision.patch["failure_reason"]
        if "verification_score" in decision.patch:
            metadata["verification_score"] = decision.patch["verification_score"]
        if request_id:
            metadata["request_id"] = request_id
        await self._event_repo.record(
            deal_id=deal.id,
            event_type=decision.event_type,
            old_status=decision.old_status,
            new_status=decision.new_status,
            actor=actor,
            metadata=metadata,
        )

        updated = await self._deal_repo.get_by_id(deal.id, refresh=True)
        logger.info(
            "deal.transitioned",
            deal_id=str(deal.id),
            old_status=decision.old_status.value,
            new_status=decision.new_status.value,
            trigger=type(trigger).__name__,
        )
        return TransitionOutcome(deal=updated, transition=decision, applied=True)

    async def _apply_schedule_actions(
        self,
        deal: Deal,
        decision: Transition,
        trigger: Trigger,
        snapshot: DealSnapshot,
        request_id: str | None,
    ) -> None:
        for action in decision.schedule_actions:
            if action == ScheduleAction.CREATE_LADDER:
                posted_at = decision.patch["posted_at"]
                checks = build_schedule_ladder(posted_at, snapshot.deadline, snapshot.duration_hours)
                await self._schedule_repo.create_ladder(deal.id, checks)

            elif action == ScheduleAction.COMPLETE_CURRENT:
                now = trigger.now  # type: ignore[union-attr]
                result: VerificationResult = trigger.result  # type: ignore[union-attr]
                current = await self._schedule_repo.find_for_result(deal.id, request_id, now)
                if current is None:
                    continue
                values: dict[str, Any] = {
                    "completed_at": now,
                    "confidence_score": result.confidence,
                    "result": result.to_dict(),
                }
                known = (current.orchestrator_request_id, current.analysis_request_id)
                if request_id and request_id not in known:
                    if not current.orchestrator_request_id:
                        values["orchestrator_request_id"] = request_id
                    elif not current.analysis_request_id:
                        values["analysis_request_id"] = request_id
                await self._schedule_repo.transition(
                    current.id,
                    (ScheduleStatus.PENDING, ScheduleStatus.RUNNING, ScheduleStatus.FAILED),
                    ScheduleStatus.COMPLETED,
                    **values,
                )

            elif action == ScheduleAction.COMPLETE_PENDING:
                await self._schedule_repo.close_pending(
                    deal.id, ScheduleStatus.COMPLETED, notes="Deal completed"
                )

            elif action == ScheduleAction.CANCEL_PENDING:
                await self._schedule_repo.close_pending(
                    deal.id,
                    ScheduleStatus.CANCELLED,
                    notes=f"Deal {decision.new_status.value}",
                )

    async def _ignore(
        self,
        deal: Deal,
        trigger: Trigger,
        actor: str,
        reason: str,
    ) -> TransitionOutcome:
        status = DealStatus(deal.status)
        ignored = Transition(old_status=status, new_status=status, applied=False, reason=reason)
        await self._record_ignored(deal, ignored, trigger, actor)
        return TransitionOutcome(deal=deal, transition=ignored, applied=False)

    async def _record_ignored(
        self,
        deal: Deal,
        decision: Transition,
        trigger: Trigger,
        actor: str,
    ) -> None:
        status = DealStatus(deal.status)
        await self._event_repo.record(
            deal_id=deal.id,
            event_type=DealEventType.STALE_TRIGGER_IGNORED,
            old_status=status,
            new_status=status,
            actor=actor,
            metadata={"trigger": type(trigger).__name__, "reason": decision.reason},
        )
        logger.info(
            "deal.trigger_ignored",
            deal_id=str(deal.id),
            status=status.value,
            trigger=type(trigger).__name__,
            reason=decision.reason,
        )
