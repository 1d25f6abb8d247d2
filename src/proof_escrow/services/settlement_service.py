"""Settlement Executor: releases escrow to the creator or refunds the advertiser.

Every settlement runs in two phases:

    1. Claim: insert the payout/refund row and COMMIT it. Partial unique
       indexes allow one non-failed payout per deal and one non-failed
       refund per funding round, so a concurrent caller
       either sees the winner's row or hits IntegrityError and returns it.
    2. Act: call the payment backend outside any transaction, then record
       the outcome (and the Released/Refunded ledger entry) in a new one.

A per-deal lock (Redis when configured) serializes callers in front of the
claim so the common race never reaches the database constraint.

Usage:
    executor = SettlementExecutor(get_session_factory(), build_payment_backend(settings), settings)
    payout = await executor.release_escrow(deal_id)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from proof_escrow.domain.enums import (
    DealStatus,
    EscrowEventType,
    PaymentMethod,
    PayoutStatus,
    RefundReason,
    RefundStatus,
)
from proof_escrow.domain.exceptions import (
    DealNotFoundError,
    PaymentError,
    SettlementError,
)
from proof_escrow.infrastructure.database.orm_models import Payout, Refund
from proof_escrow.infrastructure.database.repositories import (
    DealRepository,
    EscrowEventRepository,
    IdentityRepository,
    PayoutRepository,
    RefundRepository,
)
from proof_escrow.infrastructure.redis_client import deal_lock
from proof_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from proof_escrow.config import Settings
    from proof_escrow.domain.protocols import PaymentBackend
    from proof_escrow.infrastructure.database.orm_models import Deal, EscrowEvent, Identity

logger = get_logger(__name__)

_REFUNDABLE = (DealStatus.FAILED, DealStatus.CANCELLED)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _funding_method(funding: EscrowEvent | None) -> PaymentMethod:
    if funding is None:
        return PaymentMethod.STRIPE
    try:
        return PaymentMethod(funding.payment_method)
    except ValueError:
        return PaymentMethod.STRIPE


def payout_destination(method: PaymentMethod, creator: Identity | None) -> str | None:
    """Where a creator receives funds, or None until they connect one."""
    if creator is None:
        return None
    if method == PaymentMethod.SOLANA:
        return creator.solana_wallet_address
    if creator.stripe_payouts_enabled:
        return creator.stripe_connect_account_id
    return None


def refund_destination(
    method: PaymentMethod,
    funding: EscrowEvent | None,
    advertiser: Identity | None,
) -> str | None:
    """Stripe refunds go back to the funding payment intent; Solana to the wallet."""
    if method == PaymentMethod.SOLANA:
        return advertiser.solana_wallet_address if advertiser else None
    return funding.tx_ref if funding else None


@dataclass
class SettlementSweep:
    retried: int = 0
    settled: int = 0
    failed: int = 0


class SettlementExecutor:
    """Moves escrowed funds exactly once per deal."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        backend: PaymentBackend,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._backend = backend
        self._settings = settings

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release_escrow(self, deal_id: uuid.UUID) -> Payout:
        """Pay a Completed deal's creator. Repeated calls return the same payout.

        Raises:
            DealNotFoundError: Unknown deal.
            SettlementError: Deal is not Completed.
            PaymentError: The backend rejected the transfer (row marked failed).
        """
        async with deal_lock(f"payout:{deal_id}"):
            payout, claimed = await self._claim_payout(deal_id)
            if not claimed or payout.status != PayoutStatus.PROCESSING.value:
                return payout
            return await self._execute_payout(payout)

    async def _claim_payout(self, deal_id: uuid.UUID) -> tuple[Payout, bool]:
        async with self._session_factory() as session:
            deal = await self._load_deal(session, deal_id)
            if deal.status != DealStatus.COMPLETED.value:
                raise SettlementError(
                    f"Deal {deal_id} is {deal.status}; only Completed deals can be released"
                )

            payouts = PayoutRepository(session)
            live = await payouts.get_live(deal.id)
            if live is not None:
                logger.info("settlement.payout_exists", deal_id=str(deal_id), status=live.status)
                return live, False

            funding = await EscrowEventRepository(session).get_funding(deal.id)
            method = _funding_method(funding)
            creator = await IdentityRepository(session).get(deal.creator_id)
            destination = payout_destination(method, creator)

            payout = Payout(
                deal_id=deal.id,
                recipient_id=deal.creator_id,
                method=method.value,
                status=(
                    PayoutStatus.PROCESSING.value
                    if destination
                    else PayoutStatus.AWAITING_CONNECTION.value
                ),
                amount=deal.amount,
                currency=deal.currency,
                destination=destination,
            )
            session.add(payout)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                winner = await payouts.get_live(deal_id)
                logger.info("settlement.payout_claim_lost", deal_id=str(deal_id))
                if winner is None:
                    raise
                return winner, False

        logger.info(
            "settlement.payout_claimed",
            deal_id=str(deal_id),
            payout_id=str(payout.id),
            method=payout.method,
            status=payout.status,
        )
        return payout, True

    async def _execute_payout(self, payout: Payout) -> Payout:
        method = PaymentMethod(payout.method)
        try:
            tx_ref = await self._backend.transfer(
                method=method,
                destination=payout.destination,
                amount=payout.amount,
                currency=payout.currency,
                reference=f"payout:{payout.deal_id}",
            )
        except PaymentError as exc:
            await self._mark_failed(PayoutRepository, payout.id, exc.message)
            logger.error("settlement.payout_failed", deal_id=str(payout.deal_id), error=exc.message)
            raise

        # Stripe transfers land in the connected balance and settle later
        if method == PaymentMethod.STRIPE:
            final, settled_at = PayoutStatus.PENDING_SETTLEMENT, None
        else:
            final, settled_at = PayoutStatus.COMPLETED, _utcnow()

        async with self._session_factory() as session:
            repo = PayoutRepository(session)
            await repo.transition(
                payout.id,
                PayoutStatus.PROCESSING.value,
                final.value,
                tx_ref=tx_ref,
                settled_at=settled_at,
                error=None,
            )
            await EscrowEventRepository(session).record(
                deal_id=payout.deal_id,
                event_type=EscrowEventType.RELEASED,
                amount=payout.amount,
                payment_method=method.value,
                tx_ref=tx_ref,
            )
            await session.commit()
            result = await repo.get_by_id(payout.id)

        logger.info(
            "settlement.payout_sent",
            deal_id=str(payout.deal_id),
            tx_ref=tx_ref,
            status=final.value,
        )
        return result

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    async def refund_escrow(
        self,
        deal_id: uuid.UUID,
        reason: RefundReason = RefundReason.MANUAL,
    ) -> Refund:
        """Return a Failed or Cancelled deal's funds to the advertiser.

        Raises:
            DealNotFoundError: Unknown deal.
            SettlementError: Deal is not refundable or was never funded.
            PaymentError: The backend rejected the refund (row marked failed).
        """
        async with deal_lock(f"refund:{deal_id}"):
            refund, claimed = await self._claim_refund(deal_id, reason)
            if not claimed or refund.status != RefundStatus.PROCESSING.value:
                return refund
            return await self._execute_refund(refund)

    async def _claim_refund(self, deal_id: uuid.UUID, reason: RefundReason) -> tuple[Refund, bool]:
        async with self._session_factory() as session:
            deal = await self._load_deal(session, deal_id)
            if DealStatus(deal.status) not in _REFUNDABLE:
                raise SettlementError(
                    f"Deal {deal_id} is {deal.status}; only Failed or Cancelled deals can be refunded"
                )

            funding = await EscrowEventRepository(session).get_funding(deal.id)
            if funding is None:
                raise SettlementError(f"Deal {deal_id} was never funded; nothing to refund")

            refunds = RefundRepository(session)
            live = await refunds.get_live(deal.id, funding.id)
            if live is not None:
                logger.info("settlement.refund_exists", deal_id=str(deal_id), status=live.status)
                return live, False

            funding_id = funding.id
            method = _funding_method(funding)
            advertiser = await IdentityRepository(session).get(deal.advertiser_id)
            destination = refund_destination(method, funding, advertiser)

            refund = Refund(
                deal_id=deal.id,
                funding_event_id=funding.id,
                recipient_id=deal.advertiser_id,
                method=method.value,
                reason=reason.value,
                status=(
                    RefundStatus.PROCESSING.value
                    if destination
                    else RefundStatus.AWAITING_CONNECTION.value
                ),
                amount=deal.amount,
                currency=deal.currency,
                destination=destination,
            )
            session.add(refund)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                winner = await refunds.get_live(deal_id, funding_id)
                logger.info("settlement.refund_claim_lost", deal_id=str(deal_id))
                if winner is None:
                    raise
                return winner, False

        logger.info(
            "settlement.refund_claimed",
            deal_id=str(deal_id),
            refund_id=str(refund.id),
            method=refund.method,
            reason=reason.value,
            status=refund.status,
        )
        return refund, True

    async def _execute_refund(self, refund: Refund) -> Refund:
        method = PaymentMethod(refund.method)
        try:
            tx_ref = await self._backend.refund(
                method=method,
                destination=refund.destination,
                amount=refund.amount,
                currency=refund.currency,
                reference=f"refund:{refund.deal_id}",
                funding_reference=refund.destination if method == PaymentMethod.STRIPE else None,
            )
        except PaymentError as exc:
            await self._mark_failed(RefundRepository, refund.id, exc.message)
            logger.error("settlement.refund_failed", deal_id=str(refund.deal_id), error=exc.message)
            raise

        # Stripe confirms refunds asynchronously; Solana transfers are final
        if method == PaymentMethod.STRIPE:
            final, settled_at = RefundStatus.PROCESSING, None
        else:
            final, settled_at = RefundStatus.COMPLETED, _utcnow()

        async with self._session_factory() as session:
            repo = RefundRepository(session)
            await repo.transition(
                refund.id,
                RefundStatus.PROCESSING.value,
                final.value,
                tx_ref=tx_ref,
                settled_at=settled_at,
                error=None,
            )
            await EscrowEventRepository(session).record(
                deal_id=refund.deal_id,
                event_type=EscrowEventType.REFUNDED,
                amount=refund.amount,
                payment_method=method.value,
                tx_ref=tx_ref,
            )
            await session.commit()
            result = await repo.get_by_id(refund.id)

        logger.info(
            "settlement.refund_sent",
            deal_id=str(refund.deal_id),
            tx_ref=tx_ref,
            status=final.value,
        )
        return result

    # ------------------------------------------------------------------
    # Retry sweeps
    # ------------------------------------------------------------------

    async def retry_awaiting_connection(self, limit: int | None = None) -> SettlementSweep:
        """Execute rows parked in awaiting_connection whose destination now exists."""
        limit = limit or self._settings.settlement_retry_batch_size
        sweep = SettlementSweep()

        async with self._session_factory() as session:
            payout_ids = [
                (p.id, p.deal_id)
                for p in await PayoutRepository(session).list_by_status(
                    PayoutStatus.AWAITING_CONNECTION.value, limit
                )
            ]
            refund_ids = [
                (r.id, r.deal_id)
                for r in await RefundRepository(session).list_by_status(
                    RefundStatus.AWAITING_CONNECTION.value, limit
                )
            ]

        for payout_id, deal_id in payout_ids:
            sweep.retried += 1
            try:
                async with deal_lock(f"payout:{deal_id}"):
                    payout = await self._reclaim_payout(payout_id)
                    if payout is not None:
                        await self._execute_payout(payout)
                        sweep.settled += 1
            except (PaymentError, SettlementError):
                sweep.failed += 1
                logger.exception("settlement.retry_failed", payout_id=str(payout_id))

        for refund_id, deal_id in refund_ids:
            sweep.retried += 1
            try:
                async with deal_lock(f"refund:{deal_id}"):
                    refund = await self._reclaim_refund(refund_id)
                    if refund is not None:
                        await self._execute_refund(refund)
                        sweep.settled += 1
            except (PaymentError, SettlementError):
                sweep.failed += 1
                logger.exception("settlement.retry_failed", refund_id=str(refund_id))

        return sweep

    async def _reclaim_payout(self, payout_id: uuid.UUID) -> Payout | None:
        async with self._session_factory() as session:
            repo = PayoutRepository(session)
            payout = await repo.get_by_id(payout_id)
            if payout is None or payout.status != PayoutStatus.AWAITING_CONNECTION.value:
                return None
            creator = await IdentityRepository(session).get(payout.recipient_id)
            destination = payout_destination(PaymentMethod(payout.method), creator)
            if destination is None:
                return None
            claimed = await repo.transition(
                payout.id,
                PayoutStatus.AWAITING_CONNECTION.value,
                PayoutStatus.PROCESSING.value,
                destination=destination,
            )
            await session.commit()
            if not claimed:
                return None
            return await repo.get_by_id(payout_id)

    async def _reclaim_refund(self, refund_id: uuid.UUID) -> Refund | None:
        async with self._session_factory() as session:
            repo = RefundRepository(session)
            refund = await repo.get_by_id(refund_id)
            if refund is None or refund.status != RefundStatus.AWAITING_CONNECTION.value:
                return None
            method = PaymentMethod(refund.method)
            funding = await EscrowEventRepository(session).get_by_id(refund.funding_event_id)
            advertiser = await IdentityRepository(session).get(refund.recipient_id)
            destination = refund_destination(method, funding, advertiser)
            if destination is None:
                return None
            claimed = await repo.transition(
                refund.id,
                RefundStatus.AWAITING_CONNECTION.value,
                RefundStatus.PROCESSING.value,
                destination=destination,
            )
            await session.commit()
            if not claimed:
                return None
            return await repo.get_by_id(refund_id)

    async def settle_orphans(self, limit: int | None = None) -> SettlementSweep:
        """Settle decided deals whose settlement never ran or failed earlier."""
        limit = limit or self._settings.settlement_retry_batch_size
        max_failed = self._settings.settlement_max_attempts
        sweep = SettlementSweep()

        async with self._session_factory() as session:
            deals = DealRepository(session)
            to_release = [d.id for d in await deals.list_unsettled(
                DealStatus.COMPLETED, Payout, max_failed, limit
            )]
            to_refund = [d.id for d in await deals.list_unsettled(
                DealStatus.FAILED, Refund, max_failed, limit
            )]

        for deal_id in to_release:
            sweep.retried += 1
            try:
                await self.release_escrow(deal_id)
                sweep.settled += 1
            except (PaymentError, SettlementError):
                sweep.failed += 1
                logger.exception("settlement.orphan_release_failed", deal_id=str(deal_id))

        for deal_id in to_refund:
            sweep.retried += 1
            try:
                await self.refund_escrow(deal_id, RefundReason.VERIFICATION_FAILED)
                sweep.settled += 1
            except (PaymentError, SettlementError):
                sweep.failed += 1
                logger.exception("settlement.orphan_refund_failed", deal_id=str(deal_id))

        return sweep

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _load_deal(session: AsyncSession, deal_id: uuid.UUID) -> Deal:
        deal = await DealRepository(session).get_by_id(deal_id, refresh=True)
        if deal is None:
            raise DealNotFoundError(str(deal_id))
        return deal

    async def _mark_failed(
        self,
        repo_cls: type[PayoutRepository] | type[RefundRepository],
        row_id: uuid.UUID,
        error: str,
    ) -> None:
        async with self._session_factory() as session:
            await repo_cls(session).transition(
                row_id,
                "processing",
                "failed",
                error=error,
            )
            await session.commit()
