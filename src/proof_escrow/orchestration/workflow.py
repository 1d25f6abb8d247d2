"""Deal Workflow: commit a transition, then run its side effects.

Every entry point follows the same shape:

    open session -> DealService decides and writes -> commit
        -> run side effects (dispatch, review, payout, refund), each on its own

A failing side effect is logged and never undoes the committed transition;
the scheduler's sweeps pick up settlements and notifications that did not
go through.

Usage:
    from proof_escrow.orchestration.workflow import DealWorkflow

    workflow = DealWorkflow(session_factory, verification, settlement, review_queue, settings)
    outcome = await workflow.submit_post(deal_id, creator_id, post_url, now)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from proof_escrow.domain.enums import ReviewDecision, Role
from proof_escrow.domain.transitions import EffectKind
from proof_escrow.logging_config import get_logger, log_context
from proof_escrow.services.deal_service import DealService, TransitionOutcome
from proof_escrow.services.review_service import ReviewService

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from proof_escrow.config import Settings
    from proof_escrow.domain.enums import PaymentMethod
    from proof_escrow.domain.transitions import SideEffect
    from proof_escrow.domain.verification import VerificationResult
    from proof_escrow.infrastructure.database.orm_models import Review
    from proof_escrow.services.review_service import ReviewQueue
    from proof_escrow.services.settlement_service import SettlementExecutor
    from proof_escrow.services.verification_service import VerificationService

logger = get_logger(__name__)


class DealWorkflow:
    """Entry point for every trigger that can move a deal."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        verification: VerificationService,
        settlement: SettlementExecutor,
        review_queue: ReviewQueue,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._verification = verification
        self._settlement = settlement
        self._reviews = review_queue
        self._settings = settings

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    async def accept(self, deal_id: uuid.UUID, actor_id: str) -> TransitionOutcome:
        async with self._session_factory() as session:
            outcome = await DealService(session, self._settings).accept(deal_id, actor_id)
            await session.commit()
        return outcome

    async def fund(
        self,
        deal_id: uuid.UUID,
        payment_method: PaymentMethod,
        tx_ref: str | None = None,
        actor_id: str | None = None,
    ) -> TransitionOutcome:
        async with self._session_factory() as session:
            outcome = await DealService(session, self._settings).fund(
                deal_id, payment_method, tx_ref=tx_ref, actor_id=actor_id
            )
            await session.commit()
        return outcome

    async def submit_post(
        self,
        deal_id: uuid.UUID,
        actor_id: str,
        post_url: str,
        now: datetime,
        run_effects: bool = True,
    ) -> TransitionOutcome:
        """Record the post and build its schedule; the initial check is a side effect.

        Routes pass ``run_effects=False`` and run the dispatch as a
        background task so the response does not wait on the analysis service.
        """
        async with self._session_factory() as session:
            outcome = await DealService(session, self._settings).submit_post(
                deal_id, actor_id, post_url, now
            )
            await session.commit()
        if run_effects:
            await self.run_effects(outcome, now)
        return outcome

    async def cancel(self, deal_id: uuid.UUID, actor_id: str, now: datetime) -> TransitionOutcome:
        async with self._session_factory() as session:
            outcome = await DealService(session, self._settings).cancel(deal_id, actor_id, now)
            await session.commit()
        return outcome

    # ------------------------------------------------------------------
    # System signals
    # ------------------------------------------------------------------

    async def handle_callback(
        self,
        deal_id: uuid.UUID,
        result: VerificationResult,
        now: datetime,
        request_id: str | None = None,
    ) -> TransitionOutcome:
        """Apply a normalized verification result. Late or duplicate results are no-ops."""
        async with self._session_factory() as session:
            outcome = await DealService(session, self._settings).record_verification(
                deal_id, result, now, request_id=request_id
            )
            await session.commit()
        await self.run_effects(outcome, now, run_id=request_id)
        return outcome

    async def check_duration(self, deal_id: uuid.UUID, now: datetime) -> TransitionOutcome:
        async with self._session_factory() as session:
            outcome = await DealService(session, self._settings).check_duration(deal_id, now)
            await session.commit()
        await self.run_effects(outcome, now)
        return outcome

    async def process_review_decision(
        self,
        review_id: uuid.UUID,
        decision: ReviewDecision,
        notes: str,
        reviewer_id: str,
        role: Role,
        now: datetime,
    ) -> tuple[Review, TransitionOutcome]:
        """Close (or escalate) the review and apply the decision to its deal atomically."""
        async with self._session_factory() as session:
            review = await ReviewService(session, self._settings).record_decision(
                review_id, decision, notes, reviewer_id, role, now
            )
            outcome = await DealService(session, self._settings).apply_review_decision(
                review.deal_id,
                str(review.id),
                decision,
                reviewer_id,
                now,
                notes=notes,
            )
            await session.commit()
        await self.run_effects(outcome, now, review_id=review.id)
        return review, outcome

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    async def run_effects(
        self,
        outcome: TransitionOutcome,
        now: datetime,
        run_id: str | None = None,
        review_id: uuid.UUID | None = None,
    ) -> None:
        """Run each side effect of a committed transition in isolation."""
        if not outcome.applied:
            return
        with log_context(deal_id=str(outcome.deal.id)):
            for effect in outcome.transition.effects:
                try:
                    await self._run_effect(outcome.deal.id, effect, now, run_id, review_id)
                except Exception:
                    logger.exception("workflow.effect_failed", effect=effect.kind.value)

    async def _run_effect(
        self,
        deal_id: uuid.UUID,
        effect: SideEffect,
        now: datetime,
        run_id: str | None,
        review_id: uuid.UUID | None,
    ) -> None:
        if effect.kind == EffectKind.DISPATCH_VERIFICATION:
            await self._verification.run_initial(deal_id, now)
        elif effect.kind == EffectKind.CREATE_REVIEW:
            await self._reviews.open_review(
                deal_id,
                effect.reason_code,
                effect.severity,
                now,
                run_id=run_id,
                evidence=effect.evidence,
            )
        elif effect.kind == EffectKind.TRIGGER_PAYOUT:
            await self._settlement.release_escrow(deal_id)
        elif effect.kind == EffectKind.TRIGGER_REFUND:
            await self._settlement.refund_escrow(deal_id, effect.refund_reason)
        elif effect.kind == EffectKind.NOTIFY_ESCALATION and review_id is not None:
            await self._reviews.deliver_for_review(review_id, now)
