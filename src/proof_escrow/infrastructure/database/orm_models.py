"""SQLAlchemy 2.0 ORM models for Proof Escrow.

Tables:
    1. identities              — Payout destinations and roles of known users.
    2. deals                   — The escrow deal between advertiser and creator.
    3. proof_specs             — What a creator's post must show (1:1 with deals).
    4. proof_spec_revisions    — History of proof spec edits.
    5. verification_schedules  — Planned and executed verification checks.
    6. escrow_events           — Append-only money ledger (funding, release, refund).
    7. payouts / refunds       — Settlement attempts; one live row per deal each.
    8. reviews / hitl_events   — Human review queue and its notification outbox.
    9. deal_events             — Append-only audit log of every status change.

Design decisions:
    - UUID primary keys, generic Uuid type so the schema also runs on SQLite.
    - Numeric for amounts (no floating point rounding errors).
    - JSONB on PostgreSQL, JSON elsewhere.
    - Partial unique indexes keep at most one non-failed payout and one
      non-failed refund per deal, whatever the application does.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always comes back in UTC.

    SQLite drops tzinfo on the way in; values are normalized to UTC before
    binding and re-tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value, dialect):  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# 1. identities
# ---------------------------------------------------------------------------
class Identity(Base):
    """A user known to the escrow, keyed by the upstream identity id."""

    __tablename__ = "identities"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="creator",
        comment="Role enum value (advertiser, creator, reviewer, admin)",
    )
    stripe_connect_account_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="Connected Stripe account receiving payouts",
    )
    stripe_payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    solana_wallet_address: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="Wallet receiving Solana payouts and refunds",
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self) -> str:
        return f"<Identity id={self.id} role={self.role}>"


# ---------------------------------------------------------------------------
# 2. deals
# ---------------------------------------------------------------------------
class Deal(Base):
    """An escrow deal between an advertiser and a content creator."""

    __tablename__ = "deals"

    # --- Primary Key ---
    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # --- Participants ---
    advertiser_id: Mapped[str] = mapped_column(String(64), nullable=False)
    creator_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        default=None,
        comment="Set when a creator accepts the deal",
    )
    platform: Mapped[str] = mapped_column(String(20), nullable=False, default="tiktok")
    account_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Financials ---
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="USDC")

    # --- Lifecycle ---
    status: Mapped[str] = mapped_column(
        String(24),
        nullable=False,
        default="PendingAcceptance",
        comment="Current lifecycle state (guarded by DealStateMachine)",
    )
    deadline: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    public_opt_in: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # --- Proof of work ---
    post_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    posted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completes_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
        comment="posted_at + proof spec duration; when the completion sweep decides",
    )

    # --- Verification ---
    verification_score: Mapped[float | None] = mapped_column(
        Numeric(5, 2, asdecimal=False), nullable=True
    )
    last_verification_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    orchestrator_result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PendingAcceptance', 'PendingFunding', 'PendingVerification', "
            "'Verifying', 'Completed', 'Failed', 'Cancelled')",
            name="ck_deal_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_deal_positive_amount"),
        CheckConstraint(
            "verification_score IS NULL OR (verification_score >= 0 AND verification_score <= 100)",
            name="ck_deal_score_range",
        ),
        Index("idx_deal_status", "status"),
        Index("idx_deal_advertiser", "advertiser_id"),
        Index("idx_deal_creator", "creator_id"),
        Index("idx_deal_completes_at", "status", "completes_at"),
    )

    def __repr__(self) -> str:
        return f"<Deal id={self.id} status={self.status} amount={self.amount} {self.currency}>"


# ---------------------------------------------------------------------------
# 3. proof_specs
# ---------------------------------------------------------------------------
class ProofSpec(Base):
    """What the creator's post must demonstrate, and for how long."""

    __tablename__ = "proof_specs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("deals.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    text_proof: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_hours: Mapped[float] = mapped_column(
        Numeric(8, 4, asdecimal=False), nullable=False, default=24
    )
    visual_markers: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    video_markers: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    link_markers: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )

    @property
    def requirements(self) -> list[str]:
        """Flattened list of every marker the analysis must find."""
        return [
            *map(str, self.visual_markers or []),
            *map(str, self.video_markers or []),
            *map(str, self.link_markers or []),
        ]

    def __repr__(self) -> str:
        return f"<ProofSpec deal={self.deal_id} duration={self.duration_hours}h>"


class ProofSpecRevision(Base):
    """One edit of a proof spec. Append-only."""

    __tablename__ = "proof_spec_revisions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("deals.id", ondelete="CASCADE"), nullable=False
    )
    revised_by: Mapped[str] = mapped_column(String(64), nullable=False)
    old_values: Mapped[dict] = mapped_column(JSONType, nullable=False)
    new_values: Mapped[dict] = mapped_column(JSONType, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (Index("idx_revision_deal", "deal_id"),)


# ---------------------------------------------------------------------------
# 4. verification_schedules
# ---------------------------------------------------------------------------
class VerificationSchedule(Base):
    """A planned verification check of a deal's post."""

    __tablename__ = "verification_schedules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("deals.id", ondelete="CASCADE"), nullable=False
    )
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    check_type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    executed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    orchestrator_request_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # Id the analysis service assigned, when it differs from the one we sent
    analysis_request_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    confidence_score: Mapped[float | None] = mapped_column(
        Numeric(5, 2, asdecimal=False), nullable=True
    )
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        CheckConstraint(
            "check_type IN ('initial', 'periodic', 'final')",
            name="ck_schedule_check_type",
        ),
        CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed', 'expired', 'cancelled')",
            name="ck_schedule_status",
        ),
        Index("idx_schedule_due", "status", "scheduled_at"),
        Index("idx_schedule_deal", "deal_id"),
        Index("idx_schedule_request", "orchestrator_request_id"),
        Index("idx_schedule_analysis_request", "analysis_request_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<VerificationSchedule id={self.id} deal={self.deal_id} "
            f"{self.check_type}@{self.scheduled_at} {self.status}>"
        )


# ---------------------------------------------------------------------------
# 5. escrow_events (money ledger)
# ---------------------------------------------------------------------------
class EscrowEvent(Base):
    """Immutable record of money entering or leaving escrow.

    The Created row is the source of truth for how a deal was funded.
    """

    __tablename__ = "escrow_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("deals.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    tx_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_escrow_event_deal", "deal_id", "event_type"),
    )

    def __repr__(self) -> str:
        return f"<EscrowEvent deal={self.deal_id} {self.event_type} {self.amount} via {self.payment_method}>"


# ---------------------------------------------------------------------------
# 6. payouts / refunds
# ---------------------------------------------------------------------------
_LIVE_ROW = text("status <> 'failed'")


class Payout(Base):
    """Release of escrowed funds to the creator."""

    __tablename__ = "payouts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("deals.id", ondelete="CASCADE"), nullable=False
    )
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(24), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    destination: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tx_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )
    settled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index(
            "uq_payout_live_per_deal",
            "deal_id",
            unique=True,
            postgresql_where=_LIVE_ROW,
            sqlite_where=_LIVE_ROW,
        ),
        Index("idx_payout_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Payout deal={self.deal_id} {self.status} {self.amount} {self.currency}>"


class Refund(Base):
    """Return of escrowed funds to the advertiser.

    Each funding round (Created escrow event) may have one live refund, so
    a deal that is re-funded after failing can be refunded again.
    """

    __tablename__ = "refunds"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("deals.id", ondelete="CASCADE"), nullable=False
    )
    funding_event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("escrow_events.id", ondelete="CASCADE"), nullable=False
    )
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(24), nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    destination: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tx_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )
    settled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index(
            "uq_refund_live_per_funding",
            "funding_event_id",
            unique=True,
            postgresql_where=_LIVE_ROW,
            sqlite_where=_LIVE_ROW,
        ),
        Index("idx_refund_status", "status"),
        Index("idx_refund_deal", "deal_id"),
    )

    def __repr__(self) -> str:
        return f"<Refund deal={self.deal_id} {self.status} {self.reason}>"


# ---------------------------------------------------------------------------
# 7. reviews / hitl_events
# ---------------------------------------------------------------------------
class Review(Base):
    """A manual review task for an ambiguous or erroring verification."""

    __tablename__ = "reviews"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("deals.id", ondelete="CASCADE"), nullable=False
    )
    run_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reason_code: Mapped[str] = mapped_column(String(32), nullable=False)
    priority: Mapped[str] = mapped_column(String(10), nullable=False, default="medium")
    status: Mapped[str] = mapped_column(String(12), nullable=False, default="Open")
    reviewer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    decision: Mapped[str | None] = mapped_column(String(16), nullable=True)
    verdict: Mapped[str | None] = mapped_column(String(16), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    evidence: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    assigned_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('Open', 'Assigned', 'InProgress', 'Closed')",
            name="ck_review_status",
        ),
        Index("idx_review_status", "status", "priority"),
        Index("idx_review_deal", "deal_id"),
    )

    def __repr__(self) -> str:
        return f"<Review id={self.id} deal={self.deal_id} {self.reason_code} {self.status}>"


class HitlEvent(Base):
    """Outbox row for one reviewer notification."""

    __tablename__ = "hitl_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    review_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(16), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    delivered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (Index("idx_hitl_undelivered", "delivered", "attempts"),)


# ---------------------------------------------------------------------------
# 8. deal_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class DealEvent(Base):
    """Immutable audit record of every status change or ignored trigger."""

    __tablename__ = "deal_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("deals.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(24), nullable=True)
    new_status: Mapped[str] = mapped_column(String(24), nullable=False)
    actor: Mapped[str] = mapped_column(String(64), nullable=False, default="SYSTEM")
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_deal_event_deal", "deal_id", "created_at"),
        Index("idx_deal_event_type", "event_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<DealEvent id={self.id} type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )
