"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).

Status changes go through compare-and-swap helpers (``update ... where
status = expected``) so two actors racing on the same row cannot both win.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import exists, func, or_, select, update
from sqlalchemy.orm import aliased

from proof_escrow.domain.enums import (
    DealStatus,
    EscrowEventType,
    ScheduleStatus,
)
from proof_escrow.infrastructure.database.orm_models import (
    Deal,
    DealEvent,
    EscrowEvent,
    HitlEvent,
    Identity,
    Payout,
    ProofSpec,
    ProofSpecRevision,
    Refund,
    Review,
    VerificationSchedule,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable
    from datetime import datetime
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession

    from proof_escrow.domain.enums import DealEventType
    from proof_escrow.domain.schedule import PlannedCheck


def current_funding_ids():  # noqa: ANN201
    """Ids of each deal's latest Created escrow event (its current funding round)."""
    later = aliased(EscrowEvent)
    return select(EscrowEvent.id).where(
        EscrowEvent.event_type == EscrowEventType.CREATED.value,
        ~exists().where(
            later.deal_id == EscrowEvent.deal_id,
            later.event_type == EscrowEventType.CREATED.value,
            later.created_at > EscrowEvent.created_at,
        ),
    )


class DealRepository:
    """Data access for deals."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, deal: Deal) -> Deal:
        self._session.add(deal)
        await self._session.flush()
        return deal

    async def get_by_id(self, deal_id: uuid.UUID, refresh: bool = False) -> Deal | None:
        """Fetch a deal by its UUID; ``refresh`` overwrites any stale identity-map copy."""
        stmt = select(Deal).where(Deal.id == deal_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def update_if_status(
        self,
        deal_id: uuid.UUID,
        expected_status: DealStatus,
        patch: dict[str, Any],
    ) -> bool:
        """Apply ``patch`` only if the deal is still in ``expected_status``.

        Returns False when another actor moved the deal first; the caller
        drops its write instead of retrying.
        """
        result = await self._session.execute(
            update(Deal)
            .where(Deal.id == deal_id, Deal.status == expected_status.value)
            .values(**patch)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_for_party(self, identity_id: str, limit: int = 100) -> list[Deal]:
        result = await self._session.execute(
            select(Deal)
            .where((Deal.advertiser_id == identity_id) | (Deal.creator_id == identity_id))
            .order_by(Deal.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_completion_due(self, now: datetime, limit: int) -> list[Deal]:
        """Verifying deals whose observation window has closed, oldest first."""
        result = await self._session.execute(
            select(Deal)
            .where(
                Deal.status == DealStatus.VERIFYING.value,
                Deal.last_verification_at.is_not(None),
                Deal.posted_at.is_not(None),
                Deal.completes_at.is_not(None),
                Deal.completes_at <= now,
            )
            .order_by(Deal.completes_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_verifying_with_post(self, limit: int) -> list[Deal]:
        result = await self._session.execute(
            select(Deal)
            .where(
                Deal.status == DealStatus.VERIFYING.value,
                Deal.post_url.is_not(None),
            )
            .order_by(Deal.posted_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_by_status(self, status: DealStatus, limit: int) -> list[Deal]:
        result = await self._session.execute(
            select(Deal)
            .where(Deal.status == status.value)
            .order_by(Deal.updated_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_unsettled(
        self,
        status: DealStatus,
        model: type[Payout] | type[Refund],
        max_failed: int,
        limit: int,
    ) -> list[Deal]:
        """Funded deals in ``status`` with no live ``model`` row and retries left.

        Refunds only count against the deal's current funding round.
        """
        in_round = [model.funding_event_id.in_(current_funding_ids())] if model is Refund else []
        live = select(model.deal_id).where(model.status != "failed", *in_round)
        funded = select(EscrowEvent.deal_id).where(
            EscrowEvent.event_type == EscrowEventType.CREATED.value
        )
        failed_count = (
            select(func.count())
            .select_from(model)
            .where(model.deal_id == Deal.id, model.status == "failed", *in_round)
            .scalar_subquery()
        )
        result = await self._session.execute(
            select(Deal)
            .where(
                Deal.status == status.value,
                Deal.id.not_in(live),
                Deal.id.in_(funded),
                failed_count < max_failed,
            )
            .order_by(Deal.updated_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())


class ProofSpecRepository:
    """Data access for proof specs and their revision history."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, spec: ProofSpec) -> ProofSpec:
        self._session.add(spec)
        await self._session.flush()
        return spec

    async def get_by_deal(self, deal_id: uuid.UUID) -> ProofSpec | None:
        result = await self._session.execute(
            select(ProofSpec).where(ProofSpec.deal_id == deal_id)
        )
        return result.scalar_one_or_none()

    async def add_revision(
        self,
        deal_id: uuid.UUID,
        revised_by: str,
        old_values: dict,
        new_values: dict,
        reason: str | None = None,
    ) -> ProofSpecRevision:
        revision = ProofSpecRevision(
            deal_id=deal_id,
            revised_by=revised_by,
            old_values=old_values,
            new_values=new_values,
            reason=reason,
        )
        self._session.add(revision)
        await self._session.flush()
        return revision

    async def list_revisions(self, deal_id: uuid.UUID) -> list[ProofSpecRevision]:
        result = await self._session.execute(
            select(ProofSpecRevision)
            .where(ProofSpecRevision.deal_id == deal_id)
            .order_by(ProofSpecRevision.created_at.asc())
        )
        return list(result.scalars().all())


class ScheduleRepository:
    """Data access for verification schedules."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create_ladder(
        self,
        deal_id: uuid.UUID,
        checks: Iterable[PlannedCheck],
    ) -> list[VerificationSchedule]:
        rows = [
            VerificationSchedule(
                deal_id=deal_id,
                scheduled_at=check.scheduled_at,
                check_type=check.check_type.value,
                status=ScheduleStatus.PENDING.value,
            )
            for check in checks
        ]
        self._session.add_all(rows)
        await self._session.flush()
        return rows

    async def get_by_id(self, schedule_id: uuid.UUID) -> VerificationSchedule | None:
        result = await self._session.execute(
            select(VerificationSchedule)
            .where(VerificationSchedule.id == schedule_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_deal(self, deal_id: uuid.UUID) -> list[VerificationSchedule]:
        result = await self._session.execute(
            select(VerificationSchedule)
            .where(VerificationSchedule.deal_id == deal_id)
            .order_by(VerificationSchedule.scheduled_at.asc())
        )
        return list(result.scalars().all())

    async def list_due(self, horizon: datetime, limit: int) -> list[tuple[VerificationSchedule, Deal]]:
        """Pending schedules due before ``horizon`` whose deal is still Verifying."""
        result = await self._session.execute(
            select(VerificationSchedule, Deal)
            .join(Deal, Deal.id == VerificationSchedule.deal_id)
            .where(
                VerificationSchedule.status == ScheduleStatus.PENDING.value,
                VerificationSchedule.scheduled_at <= horizon,
                Deal.status == DealStatus.VERIFYING.value,
            )
            .order_by(VerificationSchedule.scheduled_at.asc())
            .limit(limit)
        )
        return [(row[0], row[1]) for row in result.all()]

    async def first_pending(self, deal_id: uuid.UUID) -> VerificationSchedule | None:
        result = await self._session.execute(
            select(VerificationSchedule)
            .where(
                VerificationSchedule.deal_id == deal_id,
                VerificationSchedule.status == ScheduleStatus.PENDING.value,
            )
            .order_by(VerificationSchedule.scheduled_at.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_by_request_id(
        self,
        deal_id: uuid.UUID,
        request_id: str,
    ) -> VerificationSchedule | None:
        """Latest schedule of the deal carrying ``request_id`` as either id."""
        result = await self._session.execute(
            select(VerificationSchedule)
            .where(
                VerificationSchedule.deal_id == deal_id,
                or_(
                    VerificationSchedule.orchestrator_request_id == request_id,
                    VerificationSchedule.analysis_request_id == request_id,
                ),
            )
            .order_by(VerificationSchedule.scheduled_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_for_result(
        self,
        deal_id: uuid.UUID,
        request_id: str | None,
        now: datetime,
    ) -> VerificationSchedule | None:
        """Pick the schedule a verification result answers.

        Matches on request id first, then the earliest running row, then
        the earliest pending row that was already due.
        """
        if request_id:
            match = await self.find_by_request_id(deal_id, request_id)
            if match is not None:
                return match

        base = select(VerificationSchedule).where(VerificationSchedule.deal_id == deal_id)
        result = await self._session.execute(
            base.where(VerificationSchedule.status == ScheduleStatus.RUNNING.value)
            .order_by(VerificationSchedule.scheduled_at.asc())
            .limit(1)
        )
        match = result.scalar_one_or_none()
        if match is not None:
            return match

        result = await self._session.execute(
            base.where(
                VerificationSchedule.status == ScheduleStatus.PENDING.value,
                VerificationSchedule.scheduled_at <= now,
            )
            .order_by(VerificationSchedule.scheduled_at.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def transition(
        self,
        schedule_id: uuid.UUID,
        expected: Iterable[ScheduleStatus],
        new_status: ScheduleStatus,
        **values: Any,
    ) -> bool:
        """Move one schedule to ``new_status`` if it is still in ``expected``."""
        result = await self._session.execute(
            update(VerificationSchedule)
            .where(
                VerificationSchedule.id == schedule_id,
                VerificationSchedule.status.in_([s.value for s in expected]),
            )
            .values(status=new_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_analysis_request_id(self, schedule_id: uuid.UUID, request_id: str) -> None:
        """Attach the id the service assigned; the callback may already have closed the row."""
        await self._session.execute(
            update(VerificationSchedule)
            .where(
                VerificationSchedule.id == schedule_id,
                VerificationSchedule.analysis_request_id.is_(None),
            )
            .values(analysis_request_id=request_id)
            .execution_options(synchronize_session=False)
        )

    async def close_pending(
        self,
        deal_id: uuid.UUID,
        new_status: ScheduleStatus,
        **values: Any,
    ) -> int:
        """Move every pending schedule of a deal to ``new_status``."""
        result = await self._session.execute(
            update(VerificationSchedule)
            .where(
                VerificationSchedule.deal_id == deal_id,
                VerificationSchedule.status == ScheduleStatus.PENDING.value,
            )
            .values(status=new_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


class EscrowEventRepository:
    """Data access for the append-only money ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        deal_id: uuid.UUID,
        event_type: EscrowEventType,
        amount: Decimal,
        payment_method: str,
        tx_ref: str | None = None,
    ) -> EscrowEvent:
        evt = EscrowEvent(
            deal_id=deal_id,
            event_type=event_type.value,
            amount=amount,
            payment_method=payment_method,
            tx_ref=tx_ref,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_funding(self, deal_id: uuid.UUID) -> EscrowEvent | None:
        """Latest Created event; how (and whether) the deal was funded."""
        result = await self._session.execute(
            select(EscrowEvent)
            .where(
                EscrowEvent.deal_id == deal_id,
                EscrowEvent.event_type == EscrowEventType.CREATED.value,
            )
            .order_by(EscrowEvent.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, event_id: uuid.UUID) -> EscrowEvent | None:
        result = await self._session.execute(select(EscrowEvent).where(EscrowEvent.id == event_id))
        return result.scalar_one_or_none()

    async def has_tx_ref(self, deal_id: uuid.UUID, tx_ref: str) -> bool:
        result = await self._session.execute(
            select(func.count())
            .select_from(EscrowEvent)
            .where(EscrowEvent.deal_id == deal_id, EscrowEvent.tx_ref == tx_ref)
        )
        return (result.scalar_one() or 0) > 0

    async def list_for_deal(self, deal_id: uuid.UUID) -> list[EscrowEvent]:
        result = await self._session.execute(
            select(EscrowEvent)
            .where(EscrowEvent.deal_id == deal_id)
            .order_by(EscrowEvent.created_at.asc())
        )
        return list(result.scalars().all())


class _SettlementRepository:
    """Shared queries for payouts and refunds."""

    model: type[Payout] | type[Refund]

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, row_id: uuid.UUID):  # noqa: ANN201
        result = await self._session.execute(
            select(self.model)
            .where(self.model.id == row_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_live(self, deal_id: uuid.UUID):  # noqa: ANN201
        """The deal's non-failed row, if any."""
        result = await self._session.execute(
            select(self.model)
            .where(self.model.deal_id == deal_id, self.model.status != "failed")
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def count_failed(self, deal_id: uuid.UUID) -> int:
        result = await self._session.execute(
            select(func.count())
            .select_from(self.model)
            .where(self.model.deal_id == deal_id, self.model.status == "failed")
        )
        return result.scalar_one() or 0

    async def list_by_status(self, status: str, limit: int) -> list:
        result = await self._session.execute(
            select(self.model)
            .where(self.model.status == status)
            .order_by(self.model.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_for_deal(self, deal_id: uuid.UUID) -> list:
        result = await self._session.execute(
            select(self.model)
            .where(self.model.deal_id == deal_id)
            .order_by(self.model.created_at.asc())
        )
        return list(result.scalars().all())

    async def transition(
        self,
        row_id: uuid.UUID,
        expected_status: str,
        new_status: str,
        **values: Any,
    ) -> bool:
        result = await self._session.execute(
            update(self.model)
            .where(self.model.id == row_id, self.model.status == expected_status)
            .values(status=new_status, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class PayoutRepository(_SettlementRepository):
    model = Payout


class RefundRepository(_SettlementRepository):
    model = Refund

    async def get_live(  # noqa: ANN201
        self,
        deal_id: uuid.UUID,
        funding_event_id: uuid.UUID | None = None,
    ):
        """Live refund of one funding round, or the deal's latest live refund."""
        query = select(Refund).where(Refund.deal_id == deal_id, Refund.status != "failed")
        if funding_event_id is not None:
            query = query.where(Refund.funding_event_id == funding_event_id)
        result = await self._session.execute(
            query.order_by(Refund.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()


class ReviewRepository:
    """Data access for HITL reviews and their notification outbox."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, review: Review) -> Review:
        self._session.add(review)
        await self._session.flush()
        return review

    async def get_by_id(self, review_id: uuid.UUID) -> Review | None:
        result = await self._session.execute(
            select(Review)
            .where(Review.id == review_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_reviews(
        self,
        status: str | None = None,
        reviewer_id: str | None = None,
        limit: int = 50,
    ) -> list[Review]:
        stmt = select(Review)
        if status is not None:
            stmt = stmt.where(Review.status == status)
        if reviewer_id is not None:
            stmt = stmt.where(Review.reviewer_id == reviewer_id)
        result = await self._session.execute(
            stmt.order_by(Review.created_at.asc()).limit(limit)
        )
        return list(result.scalars().all())

    async def list_for_deal(self, deal_id: uuid.UUID) -> list[Review]:
        result = await self._session.execute(
            select(Review).where(Review.deal_id == deal_id).order_by(Review.created_at.asc())
        )
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        result = await self._session.execute(
            select(Review.status, func.count()).group_by(Review.status)
        )
        return {status: count for status, count in result.all()}

    async def add_event(
        self,
        review_id: uuid.UUID,
        event_type: str,
        payload: dict,
    ) -> HitlEvent:
        evt = HitlEvent(review_id=review_id, event_type=event_type, payload=payload)
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def list_undelivered(
        self,
        max_attempts: int,
        limit: int = 50,
        review_id: uuid.UUID | None = None,
    ) -> list[HitlEvent]:
        stmt = select(HitlEvent).where(
            HitlEvent.delivered.is_(False),
            HitlEvent.attempts < max_attempts,
        )
        if review_id is not None:
            stmt = stmt.where(HitlEvent.review_id == review_id)
        result = await self._session.execute(
            stmt.order_by(HitlEvent.created_at.asc()).limit(limit)
        )
        return list(result.scalars().all())

    async def count_undelivered(self) -> int:
        result = await self._session.execute(
            select(func.count()).select_from(HitlEvent).where(HitlEvent.delivered.is_(False))
        )
        return result.scalar_one() or 0

    async def get_event(self, event_id: uuid.UUID) -> HitlEvent | None:
        result = await self._session.execute(
            select(HitlEvent)
            .where(HitlEvent.id == event_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()


class IdentityRepository:
    """Data access for identities (payout destinations, roles)."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, identity_id: str | None) -> Identity | None:
        if not identity_id:
            return None
        result = await self._session.execute(
            select(Identity)
            .where(Identity.id == identity_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def upsert(self, identity_id: str, **fields: Any) -> Identity:
        identity = await self.get(identity_id)
        if identity is None:
            identity = Identity(id=identity_id, **fields)
            self._session.add(identity)
        else:
            for key, value in fields.items():
                setattr(identity, key, value)
        await self._session.flush()
        return identity


class DealEventRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        deal_id: uuid.UUID,
        event_type: DealEventType,
        old_status: DealStatus | None,
        new_status: DealStatus,
        actor: str = "SYSTEM",
        metadata: dict | None = None,
    ) -> DealEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = DealEvent(
            deal_id=deal_id,
            event_type=event_type.value,
            old_status=old_status.value if old_status else None,
            new_status=new_status.value,
            actor=actor,
            metadata_json=metadata,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_deal(self, deal_id: uuid.UUID) -> list[DealEvent]:
        """Fetch all events for a deal, oldest first."""
        result = await self._session.execute(
            select(DealEvent)
            .where(DealEvent.deal_id == deal_id)
            .order_by(DealEvent.created_at.asc())
        )
        return list(result.scalars().all())
