"""HITL review routes.

Routes:
    GET    /v1/reviews                  — Review queue (reviewers and admins)
    POST   /v1/reviews/{id}/assign      — Assign a reviewer
    POST   /v1/reviews/{id}/start       — Mark a review in progress
    POST   /v1/reviews/{id}/decision    — Record a decision and apply it to the deal
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from proof_escrow.api.auth import CurrentUser, get_current_user
from proof_escrow.api.deps import Services, get_app_settings, get_db_session, get_services
from proof_escrow.config import Settings
from proof_escrow.domain.enums import ReviewStatus, Role
from proof_escrow.domain.exceptions import PermissionDeniedError
from proof_escrow.logging_config import get_logger
from proof_escrow.schemas.reviews import (
    AssignReviewRequest,
    ReviewDecisionRequest,
    ReviewResponse,
)
from proof_escrow.services.review_service import ReviewService

router = APIRouter(prefix="/v1/reviews", tags=["Reviews"])
logger = get_logger(__name__)


def _require_reviewer(user: CurrentUser) -> None:
    if user.role not in (Role.REVIEWER, Role.ADMIN):
        raise PermissionDeniedError("Reviewer or admin role required")


@router.get(
    "",
    response_model=list[ReviewResponse],
    summary="List reviews",
)
async def list_reviews(
    status: ReviewStatus | None = Query(default=None),
    mine: bool = Query(default=False, description="Only reviews assigned to the caller"),
    limit: int = Query(default=50, ge=1, le=200),
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> list[ReviewResponse]:
    _require_reviewer(user)
    reviews = await ReviewService(session, settings).list_reviews(
        status=status.value if status else None,
        reviewer_id=user.id if mine else None,
        limit=limit,
    )
    return [ReviewResponse.model_validate(r) for r in reviews]


@router.post(
    "/{review_id}/assign",
    response_model=ReviewResponse,
    summary="Assign a reviewer",
)
async def assign_review(
    review_id: uuid.UUID,
    request: AssignReviewRequest,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> ReviewResponse:
    review = await ReviewService(session, settings).assign(
        review_id,
        request.reviewer_id,
        actor_id=user.id,
        actor_role=user.role,
        now=datetime.now(UTC),
    )
    return ReviewResponse.model_validate(review)


@router.post(
    "/{review_id}/start",
    response_model=ReviewResponse,
    summary="Start working on a review",
)
async def start_review(
    review_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> ReviewResponse:
    review = await ReviewService(session, settings).start_review(review_id, user.id, user.role)
    return ReviewResponse.model_validate(review)


@router.post(
    "/{review_id}/decision",
    response_model=ReviewResponse,
    summary="Decide a review",
)
async def decide_review(
    review_id: uuid.UUID,
    request: ReviewDecisionRequest,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ReviewResponse:
    """release / refund / manual_fail close the review; escalate requeues it."""
    _require_reviewer(user)
    review, outcome = await services.workflow.process_review_decision(
        review_id,
        request.decision,
        request.notes,
        reviewer_id=user.id,
        role=user.role,
        now=datetime.now(UTC),
    )
    logger.info(
        "review.decision_applied",
        review_id=str(review_id),
        deal_status=outcome.deal.status,
        applied=outcome.applied,
    )
    return ReviewResponse.model_validate(review)
