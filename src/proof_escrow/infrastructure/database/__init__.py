"""Database infrastructure — engine, ORM models, and repositories."""

from proof_escrow.infrastructure.database.engine import (
    close_db,
    get_async_session,
    get_session_factory,
    init_db,
)
from proof_escrow.infrastructure.database.orm_models import (
    Base,
    Deal,
    DealEvent,
    EscrowEvent,
    HitlEvent,
    Identity,
    Payout,
    ProofSpec,
    Refund,
    Review,
    VerificationSchedule,
)
from proof_escrow.infrastructure.database.repositories import (
    DealEventRepository,
    DealRepository,
    EscrowEventRepository,
    IdentityRepository,
    PayoutRepository,
    ProofSpecRepository,
    RefundRepository,
    ReviewRepository,
    ScheduleRepository,
)

__all__ = [
    "Base",
    "Deal",
    "DealEvent",
    "EscrowEvent",
    "HitlEvent",
    "Identity",
    "Payout",
    "ProofSpec",
    "Refund",
    "Review",
    "VerificationSchedule",
    "DealEventRepository",
    "DealRepository",
    "EscrowEventRepository",
    "IdentityRepository",
    "PayoutRepository",
    "ProofSpecRepository",
    "RefundRepository",
    "ReviewRepository",
    "ScheduleRepository",
    "get_async_session",
    "get_session_factory",
    "init_db",
    "close_db",
]
