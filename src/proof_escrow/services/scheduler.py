"""Verification Scheduler: one periodic tick drives all background work.

A tick runs four steps in order:

    1. dispatch due verification checks
    2. duration completion sweep (Verifying deals whose window closed)
    3. settlement retries (awaiting_connection rows, unsettled decided deals)
    4. HITL notification outbox delivery

Each step, and each item inside a step, is isolated: one failure is logged
and the rest of the tick carries on. The tick is driven by APScheduler (see
orchestration/cron.py) or by POST /internal/cron/tick.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from proof_escrow.domain.enums import DealStatus
from proof_escrow.infrastructure.database.repositories import (
    DealRepository,
    ScheduleRepository,
)
from proof_escrow.logging_config import get_logger, log_context
from proof_escrow.services.verification_service import RunOutcome

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from proof_escrow.config import Settings
    from proof_escrow.orchestration.workflow import DealWorkflow
    from proof_escrow.services.review_service import ReviewQueue
    from proof_escrow.services.settlement_service import SettlementExecutor
    from proof_escrow.services.verification_service import VerificationService

logger = get_logger(__name__)


@dataclass
class TickReport:
    """What one tick did; returned by the cron endpoint."""

    started_at: datetime
    tick_id: str = ""
    dispatched: int = 0
    dispatch_failed: int = 0
    expired: int = 0
    invalid_url: int = 0
    skipped: int = 0
    deals_completed: int = 0
    deals_failed: int = 0
    settlements_retried: int = 0
    settlements_settled: int = 0
    notifications_delivered: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        return data


class VerificationScheduler:
    """Runs the background steps of the deal lifecycle."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        workflow: DealWorkflow,
        verification: VerificationService,
        settlement: SettlementExecutor,
        review_queue: ReviewQueue,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._workflow = workflow
        self._verification = verification
        self._settlement = settlement
        self._reviews = review_queue
        self._settings = settings

    async def run_tick(self, now: datetime | None = None) -> TickReport:
        now = now or datetime.now(UTC)
        report = TickReport(started_at=now, tick_id=uuid.uuid4().hex[:12])

        steps = (
            ("dispatch", self.dispatch_due),
            ("completion", self.completion_sweep),
            ("settlement", self.retry_settlements),
            ("notifications", self.deliver_notifications),
        )
        with log_context(tick_id=report.tick_id):
            logger.info("scheduler.tick_started", now=now.isoformat())
            for name, step in steps:
                try:
                    await step(now, report)
                except Exception as exc:
                    report.errors.append(f"{name}: {exc}")
                    logger.exception("scheduler.step_failed", step=name)

            summary = {k: v for k, v in report.to_dict().items() if v and k != "tick_id"}
            logger.info("scheduler.tick_finished", **summary)
        return report

    async def dispatch_due(self, now: datetime, report: TickReport) -> None:
        """Run pending checks due within the lookahead window."""
        horizon = now + timedelta(minutes=self._settings.schedule_lookahead_minutes)
        async with self._session_factory() as session:
            due = await ScheduleRepository(session).list_due(
                horizon, self._settings.dispatch_batch_size
            )
            schedule_ids = [schedule.id for schedule, _deal in due]

        for schedule_id in schedule_ids:
            try:
                outcome = await self._verification.run_schedule(schedule_id, now)
            except Exception as exc:
                report.errors.append(f"schedule {schedule_id}: {exc}")
                logger.exception("scheduler.dispatch_failed", schedule_id=str(schedule_id))
                continue

            if outcome == RunOutcome.DISPATCHED:
                report.dispatched += 1
            elif outcome == RunOutcome.DISPATCH_FAILED:
                report.dispatch_failed += 1
            elif outcome == RunOutcome.EXPIRED:
                report.expired += 1
            elif outcome == RunOutcome.INVALID_URL:
                report.invalid_url += 1
            else:
                report.skipped += 1

    async def completion_sweep(self, now: datetime, report: TickReport) -> None:
        """Finish deals whose observation window has closed."""
        async with self._session_factory() as session:
            deals = await DealRepository(session).list_completion_due(
                now, self._settings.completion_batch_size
            )
            deal_ids = [deal.id for deal in deals]

        for deal_id in deal_ids:
            try:
                outcome = await self._workflow.check_duration(deal_id, now)
            except Exception as exc:
                report.errors.append(f"deal {deal_id}: {exc}")
                logger.exception("scheduler.completion_failed", deal_id=str(deal_id))
                continue

            if not outcome.applied:
                continue
            if outcome.transition.new_status == DealStatus.COMPLETED:
                report.deals_completed += 1
            elif outcome.transition.new_status == DealStatus.FAILED:
                report.deals_failed += 1

    async def retry_settlements(self, now: datetime, report: TickReport) -> None:
        for sweep in (
            await self._settlement.retry_awaiting_connection(),
            await self._settlement.settle_orphans(),
        ):
            report.settlements_retried += sweep.retried
            report.settlements_settled += sweep.settled

    async def deliver_notifications(self, now: datetime, report: TickReport) -> None:
        report.notifications_delivered += await self._reviews.deliver_pending(now)
