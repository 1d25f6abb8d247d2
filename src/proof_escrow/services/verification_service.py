"""Verification runs: claim a schedule row, dispatch, record the outcome.

A run never holds a transaction open across the analysis-service call:
the pending -> running claim commits first, the dispatch happens outside
any session, and the outcome is written in a fresh one. The verdict
itself arrives later through the callback.
"""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING

from proof_escrow.domain.enums import DealStatus, ReviewReason, ScheduleStatus, Severity
from proof_escrow.domain.post_url import is_valid_post_url
from proof_escrow.infrastructure.database.repositories import (
    DealRepository,
    ProofSpecRepository,
    ScheduleRepository,
)
from proof_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from proof_escrow.config import Settings
    from proof_escrow.services.dispatcher import VerificationDispatcher
    from proof_escrow.services.review_service import ReviewQueue

logger = get_logger(__name__)


class RunOutcome(enum.StrEnum):
    DISPATCHED = "dispatched"
    DISPATCH_FAILED = "dispatch_failed"
    EXPIRED = "expired"
    INVALID_URL = "invalid_url"
    SKIPPED = "skipped"


class VerificationService:
    """Executes scheduled verification checks."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: VerificationDispatcher,
        reviews: ReviewQueue,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._reviews = reviews
        self._settings = settings

    async def run_schedule(self, schedule_id: uuid.UUID, now: datetime) -> RunOutcome:
        """Run one pending schedule row."""
        async with self._session_factory() as session:
            schedules = ScheduleRepository(session)
            schedule = await schedules.get_by_id(schedule_id)
            if schedule is None or schedule.status != ScheduleStatus.PENDING.value:
                return RunOutcome.SKIPPED

            deal = await DealRepository(session).get_by_id(schedule.deal_id, refresh=True)
            if deal is None or deal.status != DealStatus.VERIFYING.value:
                return RunOutcome.SKIPPED

            if now > deal.deadline:
                await schedules.transition(
                    schedule.id,
                    (ScheduleStatus.PENDING,),
                    ScheduleStatus.EXPIRED,
                    notes="Deal past deadline",
                )
                await session.commit()
                logger.info("verification.schedule_expired", schedule_id=str(schedule_id))
                return RunOutcome.EXPIRED

            if not is_valid_post_url(deal.post_url):
                await schedules.transition(
                    schedule.id,
                    (ScheduleStatus.PENDING,),
                    ScheduleStatus.FAILED,
                    notes=f"Invalid post URL: {deal.post_url!r}",
                    completed_at=now,
                )
                await session.commit()
                logger.warning("verification.invalid_post_url", schedule_id=str(schedule_id))
                return RunOutcome.INVALID_URL

            claimed = await schedules.transition(
                schedule.id,
                (ScheduleStatus.PENDING,),
                ScheduleStatus.RUNNING,
                executed_at=now,
                orchestrator_request_id=str(schedule.id),
            )
            if not claimed:
                await session.rollback()
                logger.info("verification.claim_lost", schedule_id=str(schedule_id))
                return RunOutcome.SKIPPED

            spec = await ProofSpecRepository(session).get_by_deal(deal.id)
            await session.commit()

        outcome = await self._dispatcher.dispatch(
            deal, spec, deal.post_url, request_id=str(schedule_id)
        )

        async with self._session_factory() as session:
            schedules = ScheduleRepository(session)
            if outcome.success:
                if outcome.request_id and outcome.request_id != str(schedule_id):
                    await schedules.set_analysis_request_id(schedule_id, outcome.request_id)
            else:
                await schedules.transition(
                    schedule_id,
                    (ScheduleStatus.RUNNING,),
                    ScheduleStatus.FAILED,
                    notes=outcome.error,
                    completed_at=now,
                )
            await session.commit()

        if outcome.success:
            logger.info(
                "verification.dispatched",
                schedule_id=str(schedule_id),
                deal_id=str(deal.id),
                check_type=schedule.check_type,
            )
            return RunOutcome.DISPATCHED

        if outcome.timed_out:
            await self._reviews.open_review(
                deal.id,
                ReviewReason.TIMEOUT,
                Severity.HIGH,
                now,
                run_id=str(schedule_id),
                evidence={"error": outcome.error, "post_url": deal.post_url},
            )
        return RunOutcome.DISPATCH_FAILED

    async def run_initial(self, deal_id: uuid.UUID, now: datetime) -> RunOutcome:
        """Dispatch the first pending check of a freshly submitted post."""
        async with self._session_factory() as session:
            schedule = await ScheduleRepository(session).first_pending(deal_id)
        if schedule is None:
            return RunOutcome.SKIPPED
        return await self.run_schedule(schedule.id, now)

    async def pending_requests(self, limit: int | None = None) -> list[dict]:
        async with self._session_factory() as session:
            return await self._dispatcher.fetch_due(
                session, limit or self._settings.pending_batch_size
            )
