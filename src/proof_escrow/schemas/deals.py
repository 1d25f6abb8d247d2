"""Pydantic schemas for the deals API.

These schemas define the request/response shapes for the REST API. They
are separate from the ORM models to maintain clean boundaries between the
API and database layers.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from proof_escrow.domain.enums import PaymentMethod, Platform

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class ProofSpecInput(BaseModel):
    """What the creator's post must show."""

    text_proof: str | None = Field(
        default=None,
        max_length=2000,
        description="Claim the post must make, in plain words",
        examples=["Mentions the product by name and shows the logo on screen"],
    )
    duration_hours: float = Field(
        default=24,
        description="How long the post must stay up and keep passing (0.0833, 24, 72, 168 or 720)",
        examples=[24],
    )
    visual_markers: list[str] = Field(default_factory=list, examples=[["brand logo"]])
    video_markers: list[str] = Field(default_factory=list)
    link_markers: list[str] = Field(default_factory=list, examples=[["example.com/promo"]])


class CreateDealRequest(BaseModel):
    """Request body for an advertiser creating a deal."""

    amount: Decimal = Field(..., gt=0, decimal_places=6, examples=[50])
    currency: str = Field(default="USDC", max_length=10)
    platform: Platform = Field(default=Platform.TIKTOK)
    deadline: datetime = Field(..., description="Latest instant the post may be checked")
    account_url: str | None = Field(default=None, description="Creator account the post must come from")
    public_opt_in: bool = False
    proof_spec: ProofSpecInput = Field(default_factory=ProofSpecInput)


class FundDealRequest(BaseModel):
    """Payment confirmation for a deal."""

    payment_method: PaymentMethod = Field(default=PaymentMethod.STRIPE)
    tx_ref: str | None = Field(
        default=None,
        max_length=128,
        description="Payment intent id (Stripe) or transaction signature (Solana)",
    )


class SubmitPostRequest(BaseModel):
    post_url: str = Field(
        ...,
        min_length=8,
        max_length=2048,
        examples=["https://www.tiktok.com/@creator/video/7300000000000000000"],
    )


class UpdateProofSpecRequest(BaseModel):
    text_proof: str | None = Field(default=None, max_length=2000)
    duration_hours: float | None = None
    visual_markers: list[str] | None = None
    video_markers: list[str] | None = None
    link_markers: list[str] | None = None
    reason: str | None = Field(default=None, max_length=500)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class ProofSpecResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    text_proof: str | None
    duration_hours: float
    visual_markers: list[str]
    video_markers: list[str]
    link_markers: list[str]
    updated_at: datetime


class DealResponse(BaseModel):
    """Response schema for a deal."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    advertiser_id: str
    creator_id: str | None
    platform: str
    account_url: str | None
    amount: Decimal
    currency: str
    status: str
    deadline: datetime
    failure_reason: str | None
    post_url: str | None
    posted_at: datetime | None
    completes_at: datetime | None
    verification_score: float | None
    last_verification_at: datetime | None
    orchestrator_result: dict | None
    public_opt_in: bool
    cancelled_at: datetime | None
    created_at: datetime
    updated_at: datetime
    proof_spec: ProofSpecResponse | None = None


class DealEventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: uuid.UUID
    deal_id: uuid.UUID
    event_type: str
    old_status: str | None
    new_status: str
    actor: str
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class ScheduleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    scheduled_at: datetime
    check_type: str
    status: str
    executed_at: datetime | None
    completed_at: datetime | None
    orchestrator_request_id: str | None
    analysis_request_id: str | None = None
    confidence_score: float | None
    notes: str | None


class DealScheduleResponse(BaseModel):
    """Verification schedule of a deal, with progress through its window."""

    deal_id: uuid.UUID
    status: str
    duration_hours: float | None
    posted_at: datetime | None
    completes_at: datetime | None
    duration_elapsed: bool
    summary: dict[str, int]
    schedules: list[ScheduleResponse]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
    scheduler: str = "disabled"
