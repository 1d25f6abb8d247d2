"""Pydantic schemas for the HITL review API."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from proof_escrow.domain.enums import ReviewDecision


class AssignReviewRequest(BaseModel):
    reviewer_id: str = Field(..., min_length=1, max_length=64)


class ReviewDecisionRequest(BaseModel):
    decision: ReviewDecision
    notes: str = Field(
        ...,
        min_length=1,
        max_length=5000,
        description="Why the reviewer decided this way; kept on the review",
    )


class ReviewResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    deal_id: uuid.UUID
    run_id: str | None
    reason_code: str
    priority: str
    status: str
    reviewer_id: str | None
    decision: str | None
    verdict: str | None
    notes: str | None
    evidence: dict | None
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime
    assigned_at: datetime | None
    closed_at: datetime | None


class ReviewStatsResponse(BaseModel):
    backlog: int
    assigned: int
    in_progress: int
    closed: int
    undelivered_notifications: int
