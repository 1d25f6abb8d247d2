"""Deal REST API routes.

Routes:
    POST   /v1/deals                    — Advertiser creates a deal
    GET    /v1/deals/{id}               — Deal details with its proof spec
    POST   /v1/deals/{id}/accept        — Creator accepts
    POST   /v1/deals/{id}/fund          — Advertiser confirms funding
    POST   /v1/deals/{id}/submit-post   — Creator submits the post URL
    POST   /v1/deals/{id}/cancel        — Either party cancels
    PUT    /v1/deals/{id}/proof-spec    — Creator revises the proof spec
    GET    /v1/deals/{id}/events        — Audit trail
    GET    /v1/deals/{id}/schedule      — Verification schedule and progress
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from proof_escrow.api.auth import CurrentUser, get_current_user
from proof_escrow.api.deps import Services, get_app_settings, get_db_session, get_services
from proof_escrow.config import Settings
from proof_escrow.domain.enums import Role
from proof_escrow.domain.exceptions import PermissionDeniedError
from proof_escrow.infrastructure.database.orm_models import Deal, ProofSpec
from proof_escrow.logging_config import get_logger
from proof_escrow.schemas.deals import (
    CreateDealRequest,
    DealEventResponse,
    DealResponse,
    DealScheduleResponse,
    FundDealRequest,
    ProofSpecResponse,
    ScheduleResponse,
    SubmitPostRequest,
    UpdateProofSpecRequest,
)
from proof_escrow.services.deal_service import DealService

router = APIRouter(prefix="/v1/deals", tags=["Deals"])
logger = get_logger(__name__)


def _deal_response(deal: Deal, spec: ProofSpec | None) -> DealResponse:
    response = DealResponse.model_validate(deal)
    if spec is not None:
        response = response.model_copy(update={"proof_spec": ProofSpecResponse.model_validate(spec)})
    return response


async def _with_spec(session: AsyncSession, deal: Deal) -> DealResponse:
    spec = await DealService(session).get_proof_spec(deal.id)
    return _deal_response(deal, spec)


def _check_can_view(deal: Deal, user: CurrentUser) -> None:
    if user.role in (Role.ADMIN, Role.REVIEWER) or deal.public_opt_in:
        return
    if user.id not in (deal.advertiser_id, deal.creator_id):
        raise PermissionDeniedError("You are not a party to this deal")


# ---------------------------------------------------------------------------
# Create / Read
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=DealResponse,
    status_code=201,
    summary="Create a new deal",
)
async def create_deal(
    request: CreateDealRequest,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> DealResponse:
    """Create a deal in PendingAcceptance; the caller becomes its advertiser."""
    svc = DealService(session, settings)
    deal = await svc.create_deal(
        advertiser_id=user.id,
        amount=request.amount,
        deadline=request.deadline,
        now=datetime.now(UTC),
        platform=request.platform.value,
        currency=request.currency,
        account_url=request.account_url,
        public_opt_in=request.public_opt_in,
        proof_spec=request.proof_spec.model_dump(),
    )
    return await _with_spec(session, deal)


@router.get(
    "/{deal_id}",
    response_model=DealResponse,
    summary="Get deal details",
)
async def get_deal(
    deal_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
) -> DealResponse:
    deal = await DealService(session).get_deal(deal_id)
    _check_can_view(deal, user)
    return await _with_spec(session, deal)


# ---------------------------------------------------------------------------
# Lifecycle actions
# ---------------------------------------------------------------------------


@router.post(
    "/{deal_id}/accept",
    response_model=DealResponse,
    summary="Creator accepts the deal",
)
async def accept_deal(
    deal_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
    session: AsyncSession = Depends(get_db_session),
) -> DealResponse:
    """Transitions PendingAcceptance -> PendingFunding."""
    outcome = await services.workflow.accept(deal_id, user.id)
    return await _with_spec(session, outcome.deal)


@router.post(
    "/{deal_id}/fund",
    response_model=DealResponse,
    summary="Confirm deal funding",
)
async def fund_deal(
    deal_id: uuid.UUID,
    request: FundDealRequest,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
    session: AsyncSession = Depends(get_db_session),
) -> DealResponse:
    """Transitions PendingFunding (or Failed) -> PendingVerification."""
    outcome = await services.workflow.fund(
        deal_id,
        request.payment_method,
        tx_ref=request.tx_ref,
        actor_id=user.id,
    )
    return await _with_spec(session, outcome.deal)


@router.post(
    "/{deal_id}/submit-post",
    response_model=DealResponse,
    summary="Submit the post URL for verification",
)
async def submit_post(
    deal_id: uuid.UUID,
    request: SubmitPostRequest,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
    session: AsyncSession = Depends(get_db_session),
) -> DealResponse:
    """Transitions PendingVerification -> Verifying; the first check runs after the response."""
    now = datetime.now(UTC)
    outcome = await services.workflow.submit_post(
        deal_id, user.id, request.post_url, now, run_effects=False
    )
    background_tasks.add_task(services.workflow.run_effects, outcome, now)
    return await _with_spec(session, outcome.deal)


@router.post(
    "/{deal_id}/cancel",
    response_model=DealResponse,
    summary="Cancel the deal",
)
async def cancel_deal(
    deal_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
    session: AsyncSession = Depends(get_db_session),
) -> DealResponse:
    outcome = await services.workflow.cancel(deal_id, user.id, datetime.now(UTC))
    return await _with_spec(session, outcome.deal)


@router.put(
    "/{deal_id}/proof-spec",
    response_model=DealResponse,
    summary="Revise the proof spec",
)
async def update_proof_spec(
    deal_id: uuid.UUID,
    request: UpdateProofSpecRequest,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> DealResponse:
    svc = DealService(session, settings)
    spec = await svc.update_proof_spec(
        deal_id,
        user.id,
        request.model_dump(exclude={"reason"}, exclude_none=True),
        now=datetime.now(UTC),
        reason=request.reason,
    )
    deal = await svc.get_deal(deal_id)
    await session.refresh(deal)
    return _deal_response(deal, spec)


# ---------------------------------------------------------------------------
# Audit / schedule
# ---------------------------------------------------------------------------


@router.get(
    "/{deal_id}/events",
    response_model=list[DealEventResponse],
    summary="Get deal audit trail",
)
async def get_deal_events(
    deal_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
) -> list[DealEventResponse]:
    """Return all audit events for a deal, oldest first."""
    svc = DealService(session)
    _check_can_view(await svc.get_deal(deal_id), user)
    events = await svc.list_events(deal_id)
    return [DealEventResponse.model_validate(e) for e in events]


@router.get(
    "/{deal_id}/schedule",
    response_model=DealScheduleResponse,
    summary="Get the verification schedule",
)
async def get_deal_schedule(
    deal_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
) -> DealScheduleResponse:
    svc = DealService(session)
    _check_can_view(await svc.get_deal(deal_id), user)
    status = await svc.schedule_status(deal_id, datetime.now(UTC))
    status["schedules"] = [ScheduleResponse.model_validate(s) for s in status["schedules"]]
    return DealScheduleResponse(**status)
