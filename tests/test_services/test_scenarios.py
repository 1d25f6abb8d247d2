"""End-to-end deal lifecycles driven through the workflow and scheduler tick."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import CREATOR, NOW, REVIEWER, legacy_callback, nested_callback
from proof_escrow.domain.enums import (
    DealEventType,
    DealStatus,
    PaymentMethod,
    PayoutStatus,
    RefundReason,
    RefundStatus,
    ReviewDecision,
    ReviewReason,
    ReviewStatus,
    Role,
    ScheduleStatus,
    Severity,
)
from proof_escrow.domain.exceptions import AnalysisTimeoutError
from proof_escrow.infrastructure.database.repositories import (
    IdentityRepository,
    PayoutRepository,
    RefundRepository,
    ReviewRepository,
    ScheduleRepository,
)
from proof_escrow.orchestration.cron import TICK_JOB_ID, build_scheduler
from proof_escrow.services.dispatcher import normalize
from proof_escrow.services.review_service import ReviewService


async def _callback(services, deal_id, payload, at, request_id="req-1"):  # noqa: ANN001, ANN201
    return await services.workflow.handle_callback(deal_id, normalize(payload), at, request_id)


async def _reviews_for(services, deal_id):  # noqa: ANN001, ANN201
    async with services.session_factory() as session:
        return await ReviewRepository(session).list_for_deal(deal_id)


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_passing_deal_pays_out_after_window(
        self, deals, services, payments, analysis  # noqa: ANN001
    ) -> None:
        deal_id = await deals.verifying()
        assert len(analysis.requests) == 1

        outcome = await _callback(
            services, deal_id, nested_callback(deal_id, 92, confidence=90), NOW + timedelta(minutes=3)
        )
        assert outcome.applied
        assert (await deals.get(deal_id)).status == DealStatus.VERIFYING

        # Window still open: nothing completes
        early = await services.scheduler.run_tick(NOW + timedelta(hours=12))
        assert early.deals_completed == 0

        report = await services.scheduler.run_tick(NOW + timedelta(hours=25))
        assert report.deals_completed == 1
        assert report.errors == []

        deal = await deals.get(deal_id)
        assert deal.status == DealStatus.COMPLETED
        assert deal.verification_score == 92
        assert len(payments.transfers) == 1

        async with services.session_factory() as session:
            payout = await PayoutRepository(session).get_live(deal_id)
            pending = [
                s
                for s in await ScheduleRepository(session).list_for_deal(deal_id)
                if s.status == ScheduleStatus.PENDING
            ]
        assert payout.status == PayoutStatus.COMPLETED
        assert pending == []

        # Another tick never pays twice
        await services.scheduler.run_tick(NOW + timedelta(hours=26))
        assert len(payments.transfers) == 1

        assert await deals.event_types(deal_id) == [
            DealEventType.DEAL_CREATED,
            DealEventType.DEAL_ACCEPTED,
            DealEventType.DEAL_FUNDED,
            DealEventType.POST_SUBMITTED,
            DealEventType.VERIFICATION_RECORDED,
            DealEventType.DEAL_COMPLETED,
        ]


class TestFailurePaths:
    @pytest.mark.asyncio
    async def test_failed_verification_refunds_advertiser(
        self, deals, services, payments  # noqa: ANN001
    ) -> None:
        deal_id = await deals.verifying()

        await _callback(services, deal_id, legacy_callback(deal_id, "failed", 20), NOW + timedelta(minutes=3))

        deal = await deals.get(deal_id)
        assert deal.status == DealStatus.FAILED
        assert deal.failure_reason.startswith("Verification failed")
        async with services.session_factory() as session:
            refund = await RefundRepository(session).get_live(deal_id)
        assert refund.status == RefundStatus.COMPLETED
        assert refund.reason == RefundReason.VERIFICATION_FAILED
        assert len(payments.refunds) == 1
        assert payments.transfers == []

    @pytest.mark.asyncio
    async def test_requirement_failure_wins_over_score(self, deals, services) -> None:  # noqa: ANN001
        deal_id = await deals.verifying()
        payload = nested_callback(deal_id, 95, confidence=95, requirements_failed=["promo code"])

        await _callback(services, deal_id, payload, NOW + timedelta(minutes=3))

        deal = await deals.get(deal_id)
        assert deal.status == DealStatus.FAILED
        assert "promo code" in deal.failure_reason

    @pytest.mark.asyncio
    async def test_passing_score_never_reached_fails_at_window(
        self, deals, services  # noqa: ANN001
    ) -> None:
        deal_id = await deals.verifying()
        await _callback(services, deal_id, legacy_callback(deal_id, None), NOW + timedelta(minutes=3))
        assert (await deals.get(deal_id)).status == DealStatus.VERIFYING

        report = await services.scheduler.run_tick(NOW + timedelta(hours=25))

        assert report.deals_failed == 1
        assert (await deals.get(deal_id)).status == DealStatus.FAILED

    @pytest.mark.asyncio
    async def test_analysis_error_opens_review(self, deals, services) -> None:  # noqa: ANN001
        deal_id = await deals.verifying()

        await _callback(services, deal_id, legacy_callback(deal_id, None), NOW + timedelta(minutes=3))

        reviews = await _reviews_for(services, deal_id)
        assert [r.reason_code for r in reviews] == [ReviewReason.ORCHESTRATOR_ERROR]
        assert reviews[0].priority == Severity.HIGH


class TestManualReview:
    @pytest.mark.asyncio
    async def test_borderline_score_released_by_reviewer(
        self, deals, services, settings, payments  # noqa: ANN001
    ) -> None:
        deal_id = await deals.verifying()
        await _callback(
            services, deal_id, nested_callback(deal_id, 70, confidence=80), NOW + timedelta(minutes=3)
        )

        reviews = await _reviews_for(services, deal_id)
        assert len(reviews) == 1
        review = reviews[0]
        assert review.reason_code == ReviewReason.MANUAL_REVIEW_NEEDED
        assert review.priority == Severity.MEDIUM
        assert review.run_id == "req-1"

        async with services.session_factory() as session:
            await ReviewService(session, settings).assign(
                review.id, REVIEWER, actor_id="admin-1", actor_role=Role.ADMIN, now=NOW
            )
            await session.commit()

        # Released early: the deal waits out its window
        decided, outcome = await services.workflow.process_review_decision(
            review.id, ReviewDecision.RELEASE, "Product clearly shown", REVIEWER, Role.REVIEWER,
            NOW + timedelta(hours=1),
        )
        assert decided.status == ReviewStatus.CLOSED
        assert outcome.applied
        assert (await deals.get(deal_id)).status == DealStatus.VERIFYING
        assert payments.transfers == []

        report = await services.scheduler.run_tick(NOW + timedelta(hours=25))

        assert report.deals_completed == 1
        deal = await deals.get(deal_id)
        assert deal.status == DealStatus.COMPLETED
        assert deal.verification_score == 100
        assert len(payments.transfers) == 1

    @pytest.mark.asyncio
    async def test_release_after_window_completes_immediately(
        self, deals, services, payments  # noqa: ANN001
    ) -> None:
        deal_id = await deals.verifying()
        await _callback(
            services, deal_id, nested_callback(deal_id, 65, confidence=40), NOW + timedelta(minutes=3)
        )
        review = (await _reviews_for(services, deal_id))[0]
        assert review.priority == Severity.HIGH

        await services.workflow.process_review_decision(
            review.id, ReviewDecision.RELEASE, "ok", "admin-1", Role.ADMIN, NOW + timedelta(hours=30)
        )

        assert (await deals.get(deal_id)).status == DealStatus.COMPLETED
        assert len(payments.transfers) == 1

    @pytest.mark.asyncio
    async def test_manual_fail_refunds(self, deals, services) -> None:  # noqa: ANN001
        deal_id = await deals.verifying()
        await _callback(
            services, deal_id, nested_callback(deal_id, 70, confidence=80), NOW + timedelta(minutes=3)
        )
        review = (await _reviews_for(services, deal_id))[0]

        await services.workflow.process_review_decision(
            review.id, ReviewDecision.MANUAL_FAIL, "wrong product", "admin-1", Role.ADMIN, NOW
        )

        assert (await deals.get(deal_id)).status == DealStatus.FAILED
        async with services.session_factory() as session:
            refund = await RefundRepository(session).get_live(deal_id)
        assert refund.reason == RefundReason.MANUAL

    @pytest.mark.asyncio
    async def test_unconnected_creator_is_paid_once_connected(
        self, deals, services, payments  # noqa: ANN001
    ) -> None:
        deal_id = await deals.verifying(
            method=PaymentMethod.STRIPE, tx_ref="pi_fund", creator_payouts_enabled=False
        )
        await _callback(
            services, deal_id, nested_callback(deal_id, 90, confidence=90), NOW + timedelta(minutes=3)
        )

        await services.scheduler.run_tick(NOW + timedelta(hours=25))
        async with services.session_factory() as session:
            payout = await PayoutRepository(session).get_live(deal_id)
        assert payout.status == PayoutStatus.AWAITING_CONNECTION
        assert payments.transfers == []

        async with services.session_factory() as session:
            await IdentityRepository(session).upsert(CREATOR, stripe_payouts_enabled=True)
            await session.commit()

        report = await services.scheduler.run_tick(NOW + timedelta(hours=26))

        assert report.settlements_settled == 1
        async with services.session_factory() as session:
            payout = await PayoutRepository(session).get_live(deal_id)
        assert payout.status == PayoutStatus.PENDING_SETTLEMENT
        assert len(payments.transfers) == 1


class TestStaleSignals:
    @pytest.mark.asyncio
    async def test_late_callback_is_ignored_and_audited(
        self, deals, services, payments  # noqa: ANN001
    ) -> None:
        deal_id = await deals.verifying()
        await _callback(services, deal_id, legacy_callback(deal_id, "failed", 10), NOW + timedelta(minutes=3))

        late = await _callback(
            services, deal_id, nested_callback(deal_id, 99, confidence=99), NOW + timedelta(minutes=9),
            request_id="req-2",
        )

        assert not late.applied
        assert (await deals.get(deal_id)).status == DealStatus.FAILED
        assert len(payments.refunds) == 1
        assert (await deals.event_types(deal_id))[-1] == DealEventType.STALE_TRIGGER_IGNORED

    @pytest.mark.asyncio
    async def test_retried_error_callback_opens_one_review(self, deals, services) -> None:  # noqa: ANN001
        deal_id = await deals.verifying()
        payload = legacy_callback(deal_id, None)

        first = await _callback(services, deal_id, payload, NOW + timedelta(minutes=3))
        retry = await _callback(services, deal_id, payload, NOW + timedelta(minutes=4))

        assert first.applied
        assert not retry.applied
        assert (await deals.get(deal_id)).status == DealStatus.VERIFYING
        reviews = await _reviews_for(services, deal_id)
        assert [r.reason_code for r in reviews] == [ReviewReason.ORCHESTRATOR_ERROR]
        assert (await deals.event_types(deal_id))[-1] == DealEventType.STALE_TRIGGER_IGNORED

    @pytest.mark.asyncio
    async def test_retry_is_recognized_without_a_dispatch(self, deals, services) -> None:  # noqa: ANN001
        deal_id = await deals.verifying(run_effects=False)
        payload = nested_callback(deal_id, 70, confidence=80)

        await _callback(services, deal_id, payload, NOW + timedelta(minutes=3), request_id="push-9")
        retry = await _callback(
            services, deal_id, payload, NOW + timedelta(minutes=4), request_id="push-9"
        )

        assert not retry.applied
        assert len(await _reviews_for(services, deal_id)) == 1


class TestScheduledChecks:
    @pytest.mark.asyncio
    async def test_dispatch_timeout_opens_timeout_review(
        self, deals, services, analysis  # noqa: ANN001
    ) -> None:
        analysis.error = AnalysisTimeoutError(600)

        deal_id = await deals.verifying()

        reviews = await _reviews_for(services, deal_id)
        assert [r.reason_code for r in reviews] == [ReviewReason.TIMEOUT]
        assert reviews[0].priority == Severity.HIGH
        async with services.session_factory() as session:
            schedules = await ScheduleRepository(session).list_for_deal(deal_id)
        assert schedules[0].status == ScheduleStatus.FAILED

    @pytest.mark.asyncio
    async def test_periodic_checks_dispatch_on_tick(self, deals, services, analysis) -> None:  # noqa: ANN001
        await deals.verifying()

        report = await services.scheduler.run_tick(NOW + timedelta(hours=4))

        assert report.dispatched == 1
        assert len(analysis.requests) == 2

    @pytest.mark.asyncio
    async def test_each_check_is_answered_by_its_own_request_id(
        self, deals, services, analysis  # noqa: ANN001
    ) -> None:
        deal_id = await deals.verifying()
        await services.scheduler.run_tick(NOW + timedelta(hours=4))
        initial_id, periodic_id = (request["requestId"] for request in analysis.requests)
        assert initial_id != periodic_id

        # The service echoes the id it was sent, newest check first
        passing = nested_callback(deal_id, 92, confidence=90)
        newer = await _callback(
            services, deal_id, passing, NOW + timedelta(hours=4, minutes=1), request_id=periodic_id
        )
        older = await _callback(
            services, deal_id, passing, NOW + timedelta(hours=4, minutes=2), request_id=initial_id
        )

        assert newer.applied
        assert older.applied
        async with services.session_factory() as session:
            schedules = await ScheduleRepository(session).list_for_deal(deal_id)
        by_request = {s.orchestrator_request_id: s.status for s in schedules}
        assert by_request[initial_id] == ScheduleStatus.COMPLETED
        assert by_request[periodic_id] == ScheduleStatus.COMPLETED
        assert ScheduleStatus.RUNNING not in by_request.values()

    @pytest.mark.asyncio
    async def test_checks_past_deadline_expire(self, deals, services) -> None:  # noqa: ANN001
        deal_id = await deals.verifying(deadline=NOW + timedelta(hours=2))

        report = await services.scheduler.run_tick(NOW + timedelta(hours=3))

        assert report.expired == 1
        async with services.session_factory() as session:
            statuses = [s.status for s in await ScheduleRepository(session).list_for_deal(deal_id)]
        assert ScheduleStatus.EXPIRED in statuses

    @pytest.mark.asyncio
    async def test_tick_report_serializes(self, services) -> None:  # noqa: ANN001
        report = await services.scheduler.run_tick(NOW)
        data = report.to_dict()
        assert data["started_at"] == NOW.isoformat()
        assert len(data["tick_id"]) == 12
        assert data["dispatched"] == 0


class TestCron:
    def test_build_scheduler_registers_tick(self, services, settings) -> None:  # noqa: ANN001
        cron = build_scheduler(services.scheduler, settings)
        job = cron.get_job(TICK_JOB_ID)
        assert job is not None
        assert job.max_instances == 1
        assert job.coalesce is True
