"""Analysis-service boundary routes.

Routes:
    POST   /v1/orchestrator/callback  — Verification verdict pushed by the service
    GET    /v1/orchestrator/pending   — Pending requests for pull-mode workers

The callback authenticates before reading the body and never fails on a
malformed verdict: anything that cannot be normalized is applied as an
``error`` result, which routes the deal to human review.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Request

from proof_escrow.api.auth import require_analysis_key, require_callback_secret
from proof_escrow.api.deps import Services, get_services
from proof_escrow.domain.exceptions import DealNotFoundError, DealValidationError
from proof_escrow.logging_config import get_logger
from proof_escrow.schemas.orchestrator import (
    CallbackResponse,
    PendingVerification,
    PendingVerificationsResponse,
)
from proof_escrow.services.dispatcher import extract_deal_id, extract_request_id, normalize

router = APIRouter(prefix="/v1/orchestrator", tags=["Orchestrator"])
logger = get_logger(__name__)


@router.post(
    "/callback",
    response_model=CallbackResponse,
    summary="Receive a verification result",
    dependencies=[Depends(require_callback_secret)],
)
async def verification_callback(
    request: Request,
    services: Services = Depends(get_services),
) -> CallbackResponse:
    try:
        raw = await request.json()
    except ValueError:
        raw = {}

    raw_deal_id = extract_deal_id(raw)
    if not raw_deal_id:
        raise DealValidationError("Missing deal_id in callback payload")
    try:
        deal_id = uuid.UUID(raw_deal_id)
    except ValueError as exc:
        raise DealNotFoundError(raw_deal_id) from exc

    result = normalize(raw)
    request_id = extract_request_id(raw)
    logger.info(
        "orchestrator.callback_received",
        deal_id=raw_deal_id,
        outcome=result.outcome.value,
        score=result.overall_score,
        request_id=request_id,
    )

    outcome = await services.workflow.handle_callback(
        deal_id, result, datetime.now(UTC), request_id=request_id
    )
    return CallbackResponse(
        success=True,
        deal_status=outcome.deal.status,
        verification_score=outcome.deal.verification_score,
        applied=outcome.applied,
    )


@router.get(
    "/pending",
    response_model=PendingVerificationsResponse,
    summary="List pending verification requests",
    dependencies=[Depends(require_analysis_key)],
)
async def pending_verifications(
    services: Services = Depends(get_services),
) -> PendingVerificationsResponse:
    requests = await services.verification.pending_requests()
    return PendingVerificationsResponse(
        pending_verifications=[PendingVerification(**r) for r in requests],
        count=len(requests),
    )
