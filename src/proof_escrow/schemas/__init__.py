"""Pydantic API schemas."""

from proof_escrow.schemas.deals import (
    CreateDealRequest,
    DealEventResponse,
    DealResponse,
    DealScheduleResponse,
    FundDealRequest,
    HealthResponse,
    ProofSpecInput,
    SubmitPostRequest,
    UpdateProofSpecRequest,
)
from proof_escrow.schemas.orchestrator import (
    CallbackResponse,
    PendingVerificationsResponse,
    callback_adapter,
)
from proof_escrow.schemas.reviews import (
    AssignReviewRequest,
    ReviewDecisionRequest,
    ReviewResponse,
    ReviewStatsResponse,
)
from proof_escrow.schemas.settlement import (
    PayoutResponse,
    RefundRequest,
    RefundResponse,
    ReleaseRequest,
)

__all__ = [
    "CreateDealRequest",
    "DealEventResponse",
    "DealResponse",
    "DealScheduleResponse",
    "FundDealRequest",
    "HealthResponse",
    "ProofSpecInput",
    "SubmitPostRequest",
    "UpdateProofSpecRequest",
    "CallbackResponse",
    "PendingVerificationsResponse",
    "callback_adapter",
    "AssignReviewRequest",
    "ReviewDecisionRequest",
    "ReviewResponse",
    "ReviewStatsResponse",
    "PayoutResponse",
    "RefundRequest",
    "RefundResponse",
    "ReleaseRequest",
]
