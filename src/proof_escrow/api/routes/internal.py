"""Internal operations routes, guarded by X-Internal-Secret.

Routes:
    POST   /internal/cron/tick    — Run one scheduler tick (external cron trigger)
    GET    /internal/hitl/stats   — Review queue counters
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from proof_escrow.api.auth import require_internal_secret
from proof_escrow.api.deps import Services, get_app_settings, get_db_session, get_services
from proof_escrow.config import Settings
from proof_escrow.schemas.reviews import ReviewStatsResponse
from proof_escrow.services.review_service import ReviewService

router = APIRouter(
    prefix="/internal",
    tags=["Internal"],
    dependencies=[Depends(require_internal_secret)],
)


@router.post("/cron/tick", summary="Run one scheduler tick")
async def cron_tick(services: Services = Depends(get_services)) -> dict:
    report = await services.scheduler.run_tick()
    return report.to_dict()


@router.get("/hitl/stats", response_model=ReviewStatsResponse, summary="Review queue stats")
async def hitl_stats(
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> ReviewStatsResponse:
    return ReviewStatsResponse(**await ReviewService(session, settings).get_stats())
