"""HITL review queue.

ReviewService holds the review rules inside one session (create, assign,
decide, stats). ReviewQueue owns the notification outbox: every review
queues a hitl_events row in the same transaction, and delivery happens
after commit, so a failing email provider never blocks review creation.

Usage:
    queue = ReviewQueue(get_session_factory(), build_notifier(settings), settings)
    review_id = await queue.open_review(deal_id, ReviewReason.TIMEOUT, Severity.HIGH)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from proof_escrow.domain.enums import (
    DECISION_VERDICTS,
    NotificationEventType,
    ReviewDecision,
    ReviewReason,
    ReviewStatus,
    Role,
    Severity,
)
from proof_escrow.domain.exceptions import (
    DealValidationError,
    NotificationError,
    PermissionDeniedError,
    ReviewClosedError,
    ReviewNotFoundError,
)
from proof_escrow.infrastructure.database.orm_models import Review
from proof_escrow.infrastructure.database.repositories import ReviewRepository
from proof_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from proof_escrow.config import Settings
    from proof_escrow.domain.protocols import Notifier
    from proof_escrow.infrastructure.database.orm_models import HitlEvent

logger = get_logger(__name__)


class ReviewService:
    """Review rules within a single unit of work."""

    def __init__(self, session: AsyncSession, settings: Settings) -> None:
        self._session = session
        self._settings = settings
        self._repo = ReviewRepository(session)

    async def create_review(
        self,
        deal_id: uuid.UUID,
        reason_code: ReviewReason,
        severity: Severity,
        run_id: str | None = None,
        evidence: dict | None = None,
        metadata: dict | None = None,
    ) -> Review:
        """Record a review and queue its NOTIFIED outbox row."""
        review = await self._repo.create(
            Review(
                deal_id=deal_id,
                run_id=run_id,
                reason_code=reason_code.value,
                priority=severity.value,
                status=ReviewStatus.OPEN.value,
                evidence=evidence or {},
                metadata_json=metadata or {},
            )
        )
        await self._repo.add_event(
            review.id,
            NotificationEventType.NOTIFIED.value,
            {
                "review_id": str(review.id),
                "deal_id": str(deal_id),
                "reason_code": reason_code.value,
                "severity": severity.value,
                "run_id": run_id,
            },
        )
        logger.info(
            "review.created",
            review_id=str(review.id),
            deal_id=str(deal_id),
            reason_code=reason_code.value,
            severity=severity.value,
        )
        return review

    async def get_review(self, review_id: uuid.UUID) -> Review:
        review = await self._repo.get_by_id(review_id)
        if review is None:
            raise ReviewNotFoundError(str(review_id))
        return review

    async def list_reviews(
        self,
        status: str | None = None,
        reviewer_id: str | None = None,
        limit: int = 50,
    ) -> list[Review]:
        return await self._repo.list_reviews(status=status, reviewer_id=reviewer_id, limit=limit)

    async def assign(
        self,
        review_id: uuid.UUID,
        reviewer_id: str,
        actor_id: str,
        actor_role: Role,
        now: datetime,
    ) -> Review:
        """Assign a reviewer. Admins assign anyone; reviewers only themselves."""
        if actor_role != Role.ADMIN and not (
            actor_role == Role.REVIEWER and actor_id == reviewer_id
        ):
            raise PermissionDeniedError("Reviewers can only assign reviews to themselves")

        review = await self.get_review(review_id)
        if review.status == ReviewStatus.CLOSED.value:
            raise ReviewClosedError(str(review_id))

        review.reviewer_id = reviewer_id
        review.status = ReviewStatus.ASSIGNED.value
        review.assigned_at = now
        await self._session.flush()

        logger.info("review.assigned", review_id=str(review_id), reviewer_id=reviewer_id)
        return review

    async def start_review(self, review_id: uuid.UUID, reviewer_id: str, role: Role) -> Review:
        review = await self.get_review(review_id)
        self._check_can_act(review, reviewer_id, role)
        if review.status == ReviewStatus.CLOSED.value:
            raise ReviewClosedError(str(review_id))
        review.status = ReviewStatus.IN_PROGRESS.value
        await self._session.flush()
        return review

    async def record_decision(
        self,
        review_id: uuid.UUID,
        decision: ReviewDecision,
        notes: str,
        reviewer_id: str,
        role: Role,
        now: datetime,
    ) -> Review:
        """Store a reviewer's decision on the review itself.

        Escalation puts the review back in the queue at high priority;
        every other decision closes it. The deal side of the decision is
        applied separately by the workflow.
        """
        if not notes or not notes.strip():
            raise DealValidationError("Decision notes are required")

        review = await self.get_review(review_id)
        self._check_can_act(review, reviewer_id, role)
        if review.status == ReviewStatus.CLOSED.value:
            raise ReviewClosedError(str(review_id))

        review.decision = decision.value
        review.verdict = DECISION_VERDICTS[decision].value
        review.notes = notes.strip()

        if decision == ReviewDecision.ESCALATE:
            review.priority = Severity.HIGH.value
            review.status = ReviewStatus.OPEN.value
            review.reviewer_id = None
            review.assigned_at = None
            await self._repo.add_event(
                review.id,
                NotificationEventType.ESCALATED.value,
                {
                    "review_id": str(review.id),
                    "deal_id": str(review.deal_id),
                    "reason_code": review.reason_code,
                    "severity": Severity.HIGH.value,
                    "escalated_by": reviewer_id,
                    "notes": review.notes,
                },
            )
        else:
            review.status = ReviewStatus.CLOSED.value
            review.closed_at = now
        await self._session.flush()

        logger.info(
            "review.decided",
            review_id=str(review_id),
            deal_id=str(review.deal_id),
            decision=decision.value,
            reviewer_id=reviewer_id,
        )
        return review

    async def get_stats(self) -> dict[str, int]:
        counts = await self._repo.count_by_status()
        return {
            "backlog": counts.get(ReviewStatus.OPEN.value, 0),
            "assigned": counts.get(ReviewStatus.ASSIGNED.value, 0),
            "in_progress": counts.get(ReviewStatus.IN_PROGRESS.value, 0),
            "closed": counts.get(ReviewStatus.CLOSED.value, 0),
            "undelivered_notifications": await self._repo.count_undelivered(),
        }

    @staticmethod
    def _check_can_act(review: Review, reviewer_id: str, role: Role) -> None:
        if role == Role.ADMIN:
            return
        if role != Role.REVIEWER or review.reviewer_id != reviewer_id:
            raise PermissionDeniedError("Only the assigned reviewer or an admin can act on this review")


# ---------------------------------------------------------------------------
# Notification outbox
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Message:
    event_id: uuid.UUID
    subject: str
    html: str
    text: str


def render_message(event: HitlEvent, dashboard_url: str) -> _Message:
    payload: dict[str, Any] = event.payload or {}
    deal_id = payload.get("deal_id", "unknown")
    reason = payload.get("reason_code", "UNKNOWN")
    severity = payload.get("severity", Severity.MEDIUM.value)
    link = f"{dashboard_url.rstrip('/')}/{payload.get('review_id', event.review_id)}"

    if event.event_type == NotificationEventType.ESCALATED.value:
        heading = "Review Escalated"
    else:
        heading = "Review Required"
    subject = f"[Proof Escrow HITL] {heading} - Deal {deal_id} - {reason}"
    text = (
        f"{heading}\n\n"
        f"Deal: {deal_id}\n"
        f"Reason: {reason}\n"
        f"Priority: {severity}\n\n"
        f"Open the review: {link}\n"
    )
    html = (
        f"<h2>{heading}</h2>"
        f"<p><strong>Deal:</strong> {deal_id}<br>"
        f"<strong>Reason:</strong> {reason}<br>"
        f"<strong>Priority:</strong> {severity}</p>"
        f'<p><a href="{link}">Open the review</a></p>'
    )
    return _Message(event_id=event.id, subject=subject, html=html, text=text)


class ReviewQueue:
    """Creates reviews in their own transaction and delivers their notifications."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Notifier,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier
        self._settings = settings

    async def open_review(
        self,
        deal_id: uuid.UUID,
        reason_code: ReviewReason,
        severity: Severity,
        now: datetime,
        run_id: str | None = None,
        evidence: dict | None = None,
        metadata: dict | None = None,
    ) -> uuid.UUID:
        """Commit a new review, then try to notify reviewers."""
        async with self._session_factory() as session:
            review = await ReviewService(session, self._settings).create_review(
                deal_id,
                reason_code,
                severity,
                run_id=run_id,
                evidence=evidence,
                metadata=metadata,
            )
            await session.commit()
            review_id = review.id

        await self.deliver_for_review(review_id, now)
        return review_id

    async def deliver_for_review(self, review_id: uuid.UUID, now: datetime) -> int:
        """Deliver the queued notifications of one review; returns how many went out."""
        if not self._settings.hitl_enabled:
            return 0
        async with self._session_factory() as session:
            events = await ReviewRepository(session).list_undelivered(
                self._settings.hitl_retry_limit, review_id=review_id
            )
            messages = [render_message(e, self._settings.hitl_dashboard_url) for e in events]

        delivered = 0
        for message in messages:
            if await self._deliver(message, now):
                delivered += 1
        return delivered

    async def deliver_pending(self, now: datetime, limit: int = 50) -> int:
        """Outbox sweep: retry undelivered rows whose backoff has elapsed."""
        if not self._settings.hitl_enabled:
            return 0
        async with self._session_factory() as session:
            events = await ReviewRepository(session).list_undelivered(
                self._settings.hitl_retry_limit, limit=limit
            )
            messages = [
                render_message(e, self._settings.hitl_dashboard_url)
                for e in events
                if self._backoff_elapsed(e, now)
            ]

        delivered = 0
        for message in messages:
            if await self._deliver(message, now):
                delivered += 1
        if messages:
            logger.info("review.outbox_swept", attempted=len(messages), delivered=delivered)
        return delivered

    def _backoff_elapsed(self, event: HitlEvent, now: datetime) -> bool:
        if event.attempts == 0 or event.last_attempt_at is None:
            return True
        delay = self._settings.hitl_retry_initial_seconds * 2 ** (event.attempts - 1)
        return now - event.last_attempt_at >= timedelta(seconds=delay)

    async def _deliver(self, message: _Message, now: datetime) -> bool:
        error: str | None = None
        try:
            await self._notifier.send(
                to=self._settings.hitl_admin_email_list,
                subject=message.subject,
                html=message.html,
                text=message.text,
            )
        except NotificationError as exc:
            error = exc.message
            logger.warning("review.notification_failed", event_id=str(message.event_id), error=error)

        async with self._session_factory() as session:
            event = await ReviewRepository(session).get_event(message.event_id)
            if event is not None:
                event.attempts += 1
                event.last_attempt_at = now
                event.delivered = error is None
                event.last_error = error
                await session.commit()
        return error is None
