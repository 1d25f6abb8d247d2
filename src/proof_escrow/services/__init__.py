"""Application services — use case orchestration."""

from proof_escrow.services.deal_service import DealService, TransitionOutcome
from proof_escrow.services.dispatcher import VerificationDispatcher, normalize
from proof_escrow.services.review_service import ReviewQueue, ReviewService
from proof_escrow.services.scheduler import TickReport, VerificationScheduler
from proof_escrow.services.settlement_service import SettlementExecutor
from proof_escrow.services.verification_service import VerificationService

__all__ = [
    "DealService",
    "TransitionOutcome",
    "VerificationDispatcher",
    "normalize",
    "ReviewQueue",
    "ReviewService",
    "TickReport",
    "VerificationScheduler",
    "SettlementExecutor",
    "VerificationService",
]
