"""Shared test fixtures for the Proof Escrow test suite.

Provides:
    - A throwaway SQLite database (aiosqlite) per test
    - The full service graph wired to in-memory collaborators
    - A DealFactory that drives deals to a given lifecycle status
    - Callback payload builders in both wire shapes
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio

from proof_escrow.api.deps import Services, build_services
from proof_escrow.config import Settings
from proof_escrow.domain.enums import PaymentMethod
from proof_escrow.domain.protocols import AnalysisSubmission
from proof_escrow.infrastructure.database.engine import (
    build_engine,
    build_session_factory,
    create_tables,
)
from proof_escrow.infrastructure.database.orm_models import Deal
from proof_escrow.infrastructure.database.repositories import (
    DealEventRepository,
    DealRepository,
    IdentityRepository,
)
from proof_escrow.infrastructure.notifications import LoggingNotifier
from proof_escrow.infrastructure.payments import SimulatedPaymentBackend
from proof_escrow.services.deal_service import DealService

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)

ADVERTISER = "adv-1"
CREATOR = "cre-1"
REVIEWER = "rev-1"
ADVERTISER_WALLET = "AdvWa11et1111111111111111111111111111111111"
CREATOR_WALLET = "CreWa11et1111111111111111111111111111111111"
POST_URL = "https://www.tiktok.com/@creator/video/7300000000000000000?lang=en"


# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------


class FakeAnalysis:
    """AnalysisService double that records requests instead of calling out."""

    def __init__(self) -> None:
        self.requests: list[dict] = []
        self.error: Exception | None = None

    async def submit(self, payload: dict) -> AnalysisSubmission:
        if self.error is not None:
            raise self.error
        self.requests.append(payload)
        return AnalysisSubmission(request_id=f"req-{len(self.requests)}")


def nested_callback(
    deal_id: uuid.UUID | str,
    score: float,
    confidence: float | None = None,
    status: str = "completed",
    request_id: str | None = None,
    requirements_failed: list[str] | None = None,
) -> dict[str, Any]:
    verification: dict[str, Any] = {
        "requirements_met": ["product visible"],
        "requirements_failed": requirements_failed or [],
    }
    if confidence is not None:
        verification["overall_confidence"] = confidence
    payload: dict[str, Any] = {
        "status": status,
        "data": {
            "deal_id": str(deal_id),
            "analysis": {"overall_score": score, "proof_verification": verification},
        },
    }
    if request_id:
        payload["requestId"] = request_id
    return payload


def legacy_callback(
    deal_id: uuid.UUID | str,
    status: str | None,
    score: float | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"deal_id": str(deal_id), "overall_score": score}
    if status is not None:
        payload["verification_status"] = status
    return payload


# ---------------------------------------------------------------------------
# Infrastructure fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:  # noqa: ANN001
    return Settings(
        _env_file=None,
        app_env="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'proof_escrow.db'}",
        analysis_api_key="analysis-key",
        analysis_callback_secret="callback-secret",
        internal_secret="internal-secret",
        worker_base_url="https://escrow.test",
        hitl_admin_emails="ops@example.com, reviewers@example.com",
        hitl_dashboard_url="https://admin.test/reviews",
        scheduler_enabled=False,
    )


@pytest_asyncio.fixture
async def engine(settings: Settings):  # noqa: ANN201
    engine = build_engine(settings.database_url)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):  # noqa: ANN001, ANN201
    return build_session_factory(engine)


@pytest.fixture
def analysis() -> FakeAnalysis:
    return FakeAnalysis()


@pytest.fixture
def payments() -> SimulatedPaymentBackend:
    return SimulatedPaymentBackend()


@pytest.fixture
def notifier() -> LoggingNotifier:
    return LoggingNotifier()


@pytest.fixture
def services(
    settings: Settings,
    session_factory,  # noqa: ANN001
    analysis: FakeAnalysis,
    payments: SimulatedPaymentBackend,
    notifier: LoggingNotifier,
) -> Services:
    return build_services(
        settings,
        session_factory,
        analysis=analysis,
        payments=payments,
        notifier=notifier,
    )


# ---------------------------------------------------------------------------
# Domain Fixtures
# ---------------------------------------------------------------------------


class DealFactory:
    """Drive deals through the workflow the way the API would."""

    def __init__(self, services: Services, settings: Settings) -> None:
        self._services = services
        self._settings = settings

    async def create(
        self,
        now: datetime = NOW,
        duration_hours: float = 24.0,
        deadline: datetime | None = None,
        creator_payouts_enabled: bool = True,
        public_opt_in: bool = False,
    ) -> uuid.UUID:
        async with self._services.session_factory() as session:
            deal = await DealService(session, self._settings).create_deal(
                advertiser_id=ADVERTISER,
                amount=Decimal("250.00"),
                deadline=deadline or now + timedelta(days=7),
                now=now,
                public_opt_in=public_opt_in,
                proof_spec={
                    "text_proof": "Show the product and say the promo code",
                    "duration_hours": duration_hours,
                    "visual_markers": ["brand logo"],
                },
            )
            identities = IdentityRepository(session)
            await identities.upsert(
                ADVERTISER, role="advertiser", solana_wallet_address=ADVERTISER_WALLET
            )
            await identities.upsert(
                CREATOR,
                role="creator",
                solana_wallet_address=CREATOR_WALLET,
                stripe_connect_account_id="acct_creator",
                stripe_payouts_enabled=creator_payouts_enabled,
            )
            await session.commit()
            return deal.id

    async def funded(
        self,
        method: PaymentMethod = PaymentMethod.SOLANA,
        tx_ref: str = "fund-tx-1",
        **kwargs: Any,
    ) -> uuid.UUID:
        deal_id = await self.create(**kwargs)
        await self._services.workflow.accept(deal_id, CREATOR)
        await self._services.workflow.fund(deal_id, method, tx_ref=tx_ref, actor_id=ADVERTISER)
        return deal_id

    async def verifying(
        self,
        now: datetime = NOW,
        post_url: str = POST_URL,
        run_effects: bool = True,
        **kwargs: Any,
    ) -> uuid.UUID:
        deal_id = await self.funded(now=now, **kwargs)
        await self._services.workflow.submit_post(
            deal_id, CREATOR, post_url, now, run_effects=run_effects
        )
        return deal_id

    async def get(self, deal_id: uuid.UUID) -> Deal:
        async with self._services.session_factory() as session:
            return await DealRepository(session).get_by_id(deal_id, refresh=True)

    async def event_types(self, deal_id: uuid.UUID) -> list[str]:
        async with self._services.session_factory() as session:
            return [e.event_type for e in await DealEventRepository(session).get_by_deal(deal_id)]


@pytest.fixture
def deals(services: Services, settings: Settings) -> DealFactory:
    return DealFactory(services, settings)
