"""Settlement trigger routes.

Routes:
    POST   /v1/settlement/release  — Pay out a Completed deal
    POST   /v1/settlement/refund   — Refund a Failed or Cancelled deal

Callers present either the internal secret or a user identity belonging
to a party of the deal. Both endpoints are idempotent per deal.
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from proof_escrow.api.auth import CurrentUser, get_optional_user, has_internal_secret
from proof_escrow.api.deps import Services, get_db_session, get_services
from proof_escrow.domain.exceptions import AuthenticationError, PermissionDeniedError
from proof_escrow.logging_config import get_logger
from proof_escrow.schemas.settlement import (
    PayoutResponse,
    RefundRequest,
    RefundResponse,
    ReleaseRequest,
)
from proof_escrow.services.deal_service import DealService

router = APIRouter(prefix="/v1/settlement", tags=["Settlement"])
logger = get_logger(__name__)


async def _authorize(
    session: AsyncSession,
    deal_id: uuid.UUID,
    internal: bool,
    user: CurrentUser | None,
) -> str:
    """Return the caller label, or raise if the caller may not settle this deal."""
    if internal:
        return "internal"
    if user is None:
        raise AuthenticationError("Internal secret or user identity required")
    deal = await DealService(session).get_deal(deal_id)
    if not user.is_admin and user.id not in (deal.advertiser_id, deal.creator_id):
        raise PermissionDeniedError("You are not a party to this deal")
    return user.id


@router.post(
    "/release",
    response_model=PayoutResponse,
    summary="Release escrow to the creator",
)
async def release(
    request: ReleaseRequest,
    internal: bool = Depends(has_internal_secret),
    user: CurrentUser | None = Depends(get_optional_user),
    services: Services = Depends(get_services),
    session: AsyncSession = Depends(get_db_session),
) -> PayoutResponse:
    caller = await _authorize(session, request.deal_id, internal, user)
    logger.info("settlement.release_requested", deal_id=str(request.deal_id), caller=caller)
    payout = await services.settlement.release_escrow(request.deal_id)
    return PayoutResponse.model_validate(payout)


@router.post(
    "/refund",
    response_model=RefundResponse,
    summary="Refund escrow to the advertiser",
)
async def refund(
    request: RefundRequest,
    internal: bool = Depends(has_internal_secret),
    user: CurrentUser | None = Depends(get_optional_user),
    services: Services = Depends(get_services),
    session: AsyncSession = Depends(get_db_session),
) -> RefundResponse:
    caller = await _authorize(session, request.deal_id, internal, user)
    logger.info(
        "settlement.refund_requested",
        deal_id=str(request.deal_id),
        reason=request.reason.value,
        caller=caller,
    )
    refund_row = await services.settlement.refund_escrow(request.deal_id, request.reason)
    return RefundResponse.model_validate(refund_row)
