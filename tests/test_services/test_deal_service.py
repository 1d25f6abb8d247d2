"""Tests for DealService and the user-action half of DealWorkflow."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import ADVERTISER, CREATOR, NOW, POST_URL
from proof_escrow.domain.enums import (
    DealEventType,
    DealStatus,
    PaymentMethod,
    ScheduleStatus,
)
from proof_escrow.domain.exceptions import (
    DealNotFoundError,
    DealValidationError,
    InvalidStateTransitionError,
    PermissionDeniedError,
)
from proof_escrow.infrastructure.database.repositories import (
    EscrowEventRepository,
    ProofSpecRepository,
    ScheduleRepository,
)
from proof_escrow.services.deal_service import DealService


class TestCreateDeal:
    @pytest.mark.asyncio
    async def test_creates_deal_spec_and_event(self, deals, services, settings) -> None:  # noqa: ANN001
        deal_id = await deals.create()
        deal = await deals.get(deal_id)

        assert deal.status == DealStatus.PENDING_ACCEPTANCE
        assert deal.amount == Decimal("250.00")
        async with services.session_factory() as session:
            spec = await DealService(session, settings).get_proof_spec(deal_id)
        assert spec.duration_hours == 24
        assert spec.visual_markers == ["brand logo"]
        assert await deals.event_types(deal_id) == [DealEventType.DEAL_CREATED]

    @pytest.mark.asyncio
    async def test_rejects_unknown_duration(self, services, settings) -> None:  # noqa: ANN001
        async with services.session_factory() as session:
            with pytest.raises(DealValidationError, match="Duration"):
                await DealService(session, settings).create_deal(
                    ADVERTISER,
                    Decimal("10"),
                    NOW + timedelta(days=1),
                    NOW,
                    proof_spec={"duration_hours": 48},
                )

    @pytest.mark.asyncio
    async def test_rejects_past_deadline(self, services, settings) -> None:  # noqa: ANN001
        async with services.session_factory() as session:
            with pytest.raises(DealValidationError, match="Deadline"):
                await DealService(session, settings).create_deal(
                    ADVERTISER, Decimal("10"), NOW - timedelta(minutes=1), NOW
                )

    @pytest.mark.asyncio
    async def test_unknown_deal(self, services, settings) -> None:  # noqa: ANN001
        import uuid

        async with services.session_factory() as session:
            with pytest.raises(DealNotFoundError):
                await DealService(session, settings).get_deal(uuid.uuid4())


class TestLifecycleActions:
    @pytest.mark.asyncio
    async def test_accept_and_fund(self, deals, services) -> None:  # noqa: ANN001
        deal_id = await deals.funded(method=PaymentMethod.STRIPE, tx_ref="pi_1")
        deal = await deals.get(deal_id)

        assert deal.status == DealStatus.PENDING_VERIFICATION
        assert deal.creator_id == CREATOR
        async with services.session_factory() as session:
            funding = await EscrowEventRepository(session).get_funding(deal_id)
        assert funding.tx_ref == "pi_1"
        assert funding.payment_method == "stripe"

    @pytest.mark.asyncio
    async def test_duplicate_funding_confirmation_is_ignored(self, deals, services) -> None:  # noqa: ANN001
        deal_id = await deals.funded(tx_ref="sig-1")
        outcome = await services.workflow.fund(
            deal_id, PaymentMethod.SOLANA, tx_ref="sig-1", actor_id=ADVERTISER
        )

        assert not outcome.applied
        async with services.session_factory() as session:
            ledger = await EscrowEventRepository(session).list_for_deal(deal_id)
        assert len(ledger) == 1
        assert (await deals.event_types(deal_id))[-1] == DealEventType.STALE_TRIGGER_IGNORED

    @pytest.mark.asyncio
    async def test_submit_post_builds_ladder_and_dispatches(self, deals, services, analysis) -> None:  # noqa: ANN001
        deal_id = await deals.verifying()
        deal = await deals.get(deal_id)

        assert deal.status == DealStatus.VERIFYING
        assert deal.posted_at == NOW
        assert deal.completes_at == NOW + timedelta(hours=24)
        async with services.session_factory() as session:
            schedules = await ScheduleRepository(session).list_for_deal(deal_id)
        assert schedules[0].check_type == "initial"
        assert schedules[0].status == ScheduleStatus.RUNNING
        assert schedules[0].orchestrator_request_id == "req-1"
        assert schedules[-1].check_type == "final"
        assert len(analysis.requests) == 1
        assert analysis.requests[0]["requestId"] == str(deal_id)

    @pytest.mark.asyncio
    async def test_submit_before_funding_conflicts(self, deals, services) -> None:  # noqa: ANN001
        deal_id = await deals.create()
        await services.workflow.accept(deal_id, CREATOR)
        with pytest.raises(InvalidStateTransitionError):
            await services.workflow.submit_post(deal_id, CREATOR, POST_URL, NOW)

    @pytest.mark.asyncio
    async def test_cancel_closes_pending_schedules(self, deals, services, payments) -> None:  # noqa: ANN001
        deal_id = await deals.verifying()
        outcome = await services.workflow.cancel(deal_id, ADVERTISER, NOW + timedelta(hours=1))

        assert outcome.deal.status == DealStatus.CANCELLED
        async with services.session_factory() as session:
            schedules = await ScheduleRepository(session).list_for_deal(deal_id)
        assert not [s for s in schedules if s.status == ScheduleStatus.PENDING]
        # No automatic refund on cancel
        assert payments.refunds == []


class TestProofSpecUpdate:
    @pytest.mark.asyncio
    async def test_creator_revises_spec(self, deals, services, settings) -> None:  # noqa: ANN001
        deal_id = await deals.verifying()
        async with services.session_factory() as session:
            svc = DealService(session, settings)
            spec = await svc.update_proof_spec(
                deal_id,
                CREATOR,
                {"duration_hours": 72, "text_proof": "Updated wording"},
                NOW,
                reason="advertiser asked for longer window",
            )
            await session.commit()
        assert spec.duration_hours == 72

        deal = await deals.get(deal_id)
        assert deal.completes_at == NOW + timedelta(hours=72)
        async with services.session_factory() as session:
            revisions = await ProofSpecRepository(session).list_revisions(deal_id)
        assert revisions[0].old_values["duration_hours"] == 24
        assert DealEventType.PROOF_SPEC_UPDATED in await deals.event_types(deal_id)

    @pytest.mark.asyncio
    async def test_advertiser_cannot_revise(self, deals, services, settings) -> None:  # noqa: ANN001
        deal_id = await deals.funded()
        async with services.session_factory() as session:
            with pytest.raises(PermissionDeniedError):
                await DealService(session, settings).update_proof_spec(
                    deal_id, ADVERTISER, {"text_proof": "mine"}, NOW
                )

    @pytest.mark.asyncio
    async def test_empty_update_rejected(self, deals, services, settings) -> None:  # noqa: ANN001
        deal_id = await deals.funded()
        async with services.session_factory() as session:
            with pytest.raises(DealValidationError):
                await DealService(session, settings).update_proof_spec(
                    deal_id, CREATOR, {"text_proof": None}, NOW
                )


class TestScheduleStatus:
    @pytest.mark.asyncio
    async def test_summary_counts(self, deals, services, settings) -> None:  # noqa: ANN001
        deal_id = await deals.verifying()
        async with services.session_factory() as session:
            status = await DealService(session, settings).schedule_status(
                deal_id, NOW + timedelta(hours=25)
            )
        assert status["duration_elapsed"] is True
        assert status["summary"]["running"] == 1
        assert status["summary"]["total"] == len(status["schedules"])
        assert status["summary"]["pending"] == status["summary"]["total"] - 1
