"""Tests for SettlementExecutor: exactly-once payouts and refunds."""

from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta

import pytest

from conftest import (
    ADVERTISER,
    ADVERTISER_WALLET,
    CREATOR,
    CREATOR_WALLET,
    NOW,
    POST_URL,
    legacy_callback,
    nested_callback,
)
from proof_escrow.domain.enums import (
    DealStatus,
    EscrowEventType,
    PaymentMethod,
    PayoutStatus,
    RefundReason,
    RefundStatus,
)
from proof_escrow.domain.exceptions import PaymentError, SettlementError
from proof_escrow.infrastructure.database.orm_models import Identity
from proof_escrow.infrastructure.database.repositories import (
    DealRepository,
    EscrowEventRepository,
    IdentityRepository,
    PayoutRepository,
    RefundRepository,
)
from proof_escrow.infrastructure.payments import SimulatedPaymentBackend
from proof_escrow.services.dispatcher import normalize
from proof_escrow.services.settlement_service import (
    SettlementExecutor,
    payout_destination,
    refund_destination,
)


async def _complete(deals, services, **kwargs) -> uuid.UUID:  # noqa: ANN001, ANN003
    """Drive a deal to Verifying with a passing score recorded."""
    deal_id = await deals.verifying(**kwargs)
    result = normalize(nested_callback(deal_id, 95, confidence=95, request_id="req-1"))
    await services.workflow.handle_callback(deal_id, result, NOW + timedelta(minutes=5), "req-1")
    return deal_id


async def _refunded_and_funded_again(deals, services) -> uuid.UUID:  # noqa: ANN001
    """Fail a deal (refunded automatically), then fund it again for a second round."""
    deal_id = await deals.verifying()
    failed = normalize(legacy_callback(deal_id, "failed", 20))
    await services.workflow.handle_callback(deal_id, failed, NOW + timedelta(minutes=3), "req-1")
    await services.workflow.fund(
        deal_id, PaymentMethod.SOLANA, tx_ref="fund-tx-2", actor_id=ADVERTISER
    )
    return deal_id


async def _force_status(services, deal_id, status: str) -> None:  # noqa: ANN001
    async with services.session_factory() as session:
        deal = await DealRepository(session).get_by_id(deal_id)
        await DealRepository(session).update_if_status(
            deal_id, DealStatus(deal.status), {"status": status}
        )
        await session.commit()


class TestDestinations:
    def test_payout_destination(self) -> None:
        creator = Identity(
            id="c",
            solana_wallet_address="wallet",
            stripe_connect_account_id="acct",
            stripe_payouts_enabled=False,
        )
        assert payout_destination(PaymentMethod.SOLANA, creator) == "wallet"
        assert payout_destination(PaymentMethod.STRIPE, creator) is None
        creator.stripe_payouts_enabled = True
        assert payout_destination(PaymentMethod.STRIPE, creator) == "acct"
        assert payout_destination(PaymentMethod.STRIPE, None) is None

    def test_refund_destination_without_funding(self) -> None:
        assert refund_destination(PaymentMethod.STRIPE, None, None) is None


class TestRelease:
    @pytest.mark.asyncio
    async def test_solana_payout_completes(self, deals, services, payments) -> None:  # noqa: ANN001
        deal_id = await _complete(deals, services)
        await _force_status(services, deal_id, "Completed")

        payout = await services.settlement.release_escrow(deal_id)

        assert payout.status == PayoutStatus.COMPLETED
        assert payout.destination == CREATOR_WALLET
        assert payout.recipient_id == CREATOR
        assert payout.settled_at is not None
        assert len(payments.transfers) == 1
        async with services.session_factory() as session:
            ledger = await EscrowEventRepository(session).list_for_deal(deal_id)
        assert [e.event_type for e in ledger] == [EscrowEventType.CREATED, EscrowEventType.RELEASED]

    @pytest.mark.asyncio
    async def test_stripe_payout_pending_settlement(self, deals, services) -> None:  # noqa: ANN001
        deal_id = await _complete(deals, services, method=PaymentMethod.STRIPE, tx_ref="pi_9")
        await _force_status(services, deal_id, "Completed")

        payout = await services.settlement.release_escrow(deal_id)

        assert payout.status == PayoutStatus.PENDING_SETTLEMENT
        assert payout.destination == "acct_creator"
        assert payout.tx_ref.startswith("tr_sim_")

    @pytest.mark.asyncio
    async def test_release_requires_completed(self, deals, services) -> None:  # noqa: ANN001
        deal_id = await deals.verifying()
        with pytest.raises(SettlementError):
            await services.settlement.release_escrow(deal_id)

    @pytest.mark.asyncio
    async def test_repeated_release_is_idempotent(self, deals, services, payments) -> None:  # noqa: ANN001
        deal_id = await _complete(deals, services)
        await _force_status(services, deal_id, "Completed")

        first = await services.settlement.release_escrow(deal_id)
        second = await services.settlement.release_escrow(deal_id)

        assert first.id == second.id
        assert len(payments.transfers) == 1

    @pytest.mark.asyncio
    async def test_concurrent_release_pays_once(self, deals, services, payments) -> None:  # noqa: ANN001
        deal_id = await _complete(deals, services)
        await _force_status(services, deal_id, "Completed")

        results = await asyncio.gather(
            *(services.settlement.release_escrow(deal_id) for _ in range(5))
        )

        assert len({p.id for p in results}) == 1
        assert len(payments.transfers) == 1
        async with services.session_factory() as session:
            rows = await PayoutRepository(session).list_for_deal(deal_id)
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_missing_connection_parks_payout(self, deals, services, settings, payments) -> None:  # noqa: ANN001
        deal_id = await _complete(
            deals,
            services,
            method=PaymentMethod.STRIPE,
            tx_ref="pi_1",
            creator_payouts_enabled=False,
        )
        await _force_status(services, deal_id, "Completed")

        payout = await services.settlement.release_escrow(deal_id)
        assert payout.status == PayoutStatus.AWAITING_CONNECTION
        assert payments.transfers == []

        async with services.session_factory() as session:
            await IdentityRepository(session).upsert(CREATOR, stripe_payouts_enabled=True)
            await session.commit()

        sweep = await services.settlement.retry_awaiting_connection()
        assert sweep.settled == 1
        async with services.session_factory() as session:
            row = await PayoutRepository(session).get_by_id(payout.id)
        assert row.status == PayoutStatus.PENDING_SETTLEMENT
        assert row.destination == "acct_creator"

    @pytest.mark.asyncio
    async def test_backend_failure_marks_row_failed(
        self, deals, services, session_factory, settings  # noqa: ANN001
    ) -> None:
        deal_id = await _complete(deals, services)
        await _force_status(services, deal_id, "Completed")
        executor = SettlementExecutor(
            session_factory, SimulatedPaymentBackend(fail_with="insufficient funds"), settings
        )

        with pytest.raises(PaymentError):
            await executor.release_escrow(deal_id)

        async with session_factory() as session:
            repo = PayoutRepository(session)
            assert await repo.get_live(deal_id) is None
            assert await repo.count_failed(deal_id) == 1

        # A later attempt claims a fresh row
        payout = await services.settlement.release_escrow(deal_id)
        assert payout.status == PayoutStatus.COMPLETED


class TestRefund:
    @pytest.mark.asyncio
    async def test_stripe_refund_uses_funding_intent(self, deals, services, payments) -> None:  # noqa: ANN001
        deal_id = await deals.funded(method=PaymentMethod.STRIPE, tx_ref="pi_fund")
        await services.workflow.cancel(deal_id, CREATOR, NOW)

        refund = await services.settlement.refund_escrow(deal_id)

        assert refund.status == RefundStatus.PROCESSING
        assert refund.reason == RefundReason.MANUAL
        assert refund.destination == "pi_fund"
        assert payments.refunds[0]["destination"] == "pi_fund"

    @pytest.mark.asyncio
    async def test_solana_refund_completes(self, deals, services) -> None:  # noqa: ANN001
        deal_id = await deals.funded()
        await services.workflow.cancel(deal_id, CREATOR, NOW)

        refund = await services.settlement.refund_escrow(deal_id, RefundReason.DISPUTE)

        assert refund.status == RefundStatus.COMPLETED
        assert refund.destination == ADVERTISER_WALLET

    @pytest.mark.asyncio
    async def test_unfunded_deal_cannot_refund(self, deals, services) -> None:  # noqa: ANN001
        deal_id = await deals.create()
        await services.workflow.cancel(deal_id, "adv-1", NOW)
        with pytest.raises(SettlementError, match="never funded"):
            await services.settlement.refund_escrow(deal_id)

    @pytest.mark.asyncio
    async def test_refund_requires_failed_or_cancelled(self, deals, services) -> None:  # noqa: ANN001
        deal_id = await deals.funded()
        with pytest.raises(SettlementError):
            await services.settlement.refund_escrow(deal_id)

    @pytest.mark.asyncio
    async def test_concurrent_refund_once(self, deals, services, payments) -> None:  # noqa: ANN001
        deal_id = await deals.funded()
        await services.workflow.cancel(deal_id, CREATOR, NOW)

        await asyncio.gather(*(services.settlement.refund_escrow(deal_id) for _ in range(3)))

        assert len(payments.refunds) == 1
        async with services.session_factory() as session:
            assert len(await RefundRepository(session).list_for_deal(deal_id)) == 1

    @pytest.mark.asyncio
    async def test_each_funding_round_is_refunded(self, deals, services, payments) -> None:  # noqa: ANN001
        deal_id = await _refunded_and_funded_again(deals, services)
        second_post = NOW + timedelta(hours=1)
        await services.workflow.submit_post(deal_id, CREATOR, POST_URL, second_post)
        failed = normalize(legacy_callback(deal_id, "failed", 15))
        await services.workflow.handle_callback(
            deal_id, failed, second_post + timedelta(minutes=3), "req-2"
        )

        assert (await deals.get(deal_id)).status == DealStatus.FAILED
        assert len(payments.refunds) == 2
        async with services.session_factory() as session:
            refunds = await RefundRepository(session).list_for_deal(deal_id)
            fundings = [
                e.id
                for e in await EscrowEventRepository(session).list_for_deal(deal_id)
                if e.event_type == EscrowEventType.CREATED
            ]
        assert [r.status for r in refunds] == [RefundStatus.COMPLETED, RefundStatus.COMPLETED]
        assert [r.funding_event_id for r in refunds] == fundings

        # Still one refund per round
        await services.settlement.refund_escrow(deal_id)
        assert len(payments.refunds) == 2


class TestOrphanSweep:
    @pytest.mark.asyncio
    async def test_completed_deal_without_payout_is_settled(self, deals, services, payments) -> None:  # noqa: ANN001
        deal_id = await _complete(deals, services)
        await _force_status(services, deal_id, "Completed")

        sweep = await services.settlement.settle_orphans()

        assert sweep.settled == 1
        assert len(payments.transfers) == 1
        assert (await services.settlement.settle_orphans()).retried == 0

    @pytest.mark.asyncio
    async def test_refunded_round_does_not_hide_a_new_one(self, deals, services, payments) -> None:  # noqa: ANN001
        deal_id = await _refunded_and_funded_again(deals, services)
        await _force_status(services, deal_id, "Failed")

        sweep = await services.settlement.settle_orphans()

        assert sweep.settled == 1
        assert len(payments.refunds) == 2
        assert (await services.settlement.settle_orphans()).retried == 0
