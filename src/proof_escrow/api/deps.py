"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject database sessions,
the service graph, and configuration. Tests replace ``get_services`` and
``get_db_session`` through ``app.dependency_overrides``.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING

from proof_escrow.config import Settings, get_settings
from proof_escrow.infrastructure.analysis_client import HttpAnalysisClient
from proof_escrow.infrastructure.database.engine import (
    get_async_session,
    get_session_factory,
)
from proof_escrow.infrastructure.notifications import build_notifier
from proof_escrow.infrastructure.payments import build_payment_backend
from proof_escrow.orchestration.workflow import DealWorkflow
from proof_escrow.services.dispatcher import VerificationDispatcher
from proof_escrow.services.review_service import ReviewQueue
from proof_escrow.services.scheduler import VerificationScheduler
from proof_escrow.services.settlement_service import SettlementExecutor
from proof_escrow.services.verification_service import VerificationService

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from proof_escrow.domain.protocols import AnalysisService, Notifier, PaymentBackend


@dataclass
class Services:
    """The wired service graph shared by routes and the cron driver."""

    session_factory: async_sessionmaker[AsyncSession]
    dispatcher: VerificationDispatcher
    reviews: ReviewQueue
    verification: VerificationService
    settlement: SettlementExecutor
    workflow: DealWorkflow
    scheduler: VerificationScheduler


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    analysis: AnalysisService | None = None,
    payments: PaymentBackend | None = None,
    notifier: Notifier | None = None,
) -> Services:
    """Wire every service; collaborators default to the configured implementations."""
    dispatcher = VerificationDispatcher(
        analysis or HttpAnalysisClient.from_settings(settings), settings
    )
    reviews = ReviewQueue(session_factory, notifier or build_notifier(settings), settings)
    verification = VerificationService(session_factory, dispatcher, reviews, settings)
    settlement = SettlementExecutor(
        session_factory, payments or build_payment_backend(settings), settings
    )
    workflow = DealWorkflow(session_factory, verification, settlement, reviews, settings)
    scheduler = VerificationScheduler(
        session_factory, workflow, verification, settlement, reviews, settings
    )
    return Services(
        session_factory=session_factory,
        dispatcher=dispatcher,
        reviews=reviews,
        verification=verification,
        settlement=settlement,
        workflow=workflow,
        scheduler=scheduler,
    )


@lru_cache(maxsize=1)
def get_services() -> Services:
    """Return the process-wide service graph."""
    return build_services(get_settings(), get_session_factory())


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for a request."""
    async for session in get_async_session():
        yield session


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()
