#!/usr/bin/env python3
"""Proof Escrow — End-to-End Simulation.

Drives three deals through the full lifecycle on a simulated clock, with
AdvertiserBot, CreatorBot and a stand-in analysis service:

    Scenario 1: Happy Path
        - Advertiser creates and funds a 24h deal, creator posts
        - Analysis reports a passing score
        - The window closes on a scheduler tick -> Completed + payout

    Scenario 2: Failed Verification
        - Creator posts, analysis reports a failure
        - Deal fails immediately -> refund to the advertiser

    Scenario 3: Manual Review
        - Analysis returns a borderline score -> HITL review opened
        - A reviewer releases it; the deal waits out its window -> Completed

Usage:
    # Option A: Against the configured DATABASE_URL (tables must exist):
    uv run python simulation.py

    # Option B: Throwaway SQLite file, no Docker needed:
    uv run python simulation.py --sqlite

    # Run a specific scenario:
    uv run python simulation.py --sqlite --scenario 2
"""

from __future__ import annotations

import argparse
import asyncio
import tempfile
import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from proof_escrow.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from proof_escrow.api.deps import Services, build_services  # noqa: E402
from proof_escrow.config import get_settings  # noqa: E402
from proof_escrow.domain.enums import PaymentMethod, ReviewDecision, Role  # noqa: E402
from proof_escrow.domain.protocols import AnalysisSubmission  # noqa: E402
from proof_escrow.infrastructure.database.engine import (  # noqa: E402
    build_engine,
    build_session_factory,
    create_tables,
)
from proof_escrow.infrastructure.database.repositories import (  # noqa: E402
    IdentityRepository,
    ReviewRepository,
)
from proof_escrow.infrastructure.notifications import LoggingNotifier  # noqa: E402
from proof_escrow.infrastructure.payments import SimulatedPaymentBackend  # noqa: E402
from proof_escrow.services.deal_service import DealService  # noqa: E402
from proof_escrow.services.dispatcher import normalize  # noqa: E402

START = datetime.now(UTC).replace(microsecond=0)
POST_URL = "https://www.tiktok.com/@creator/video/7300000000000000001"


class SimClock:
    """Wall clock for the simulation; scenarios advance it explicitly."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class StubAnalysis:
    """Accepts dispatches and hands out request ids, like the real service would."""

    def __init__(self) -> None:
        self.requests: list[dict] = []

    async def submit(self, payload: dict) -> AnalysisSubmission:
        self.requests.append(payload)
        return AnalysisSubmission(request_id=f"sim-{len(self.requests)}")


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------
class AdvertiserBot:
    """Creates and funds deals."""

    def __init__(self, services: Services, clock: SimClock, advertiser_id: str = "advertiser-bot") -> None:
        self.services = services
        self.clock = clock
        self.id = advertiser_id

    async def create_deal(self, amount: Decimal, text_proof: str, duration_hours: float = 24) -> uuid.UUID:
        async with self.services.session_factory() as session:
            deal = await DealService(session, get_settings()).create_deal(
                advertiser_id=self.id,
                amount=amount,
                deadline=self.clock.now + timedelta(days=7),
                now=self.clock.now,
                proof_spec={"text_proof": text_proof, "duration_hours": duration_hours},
            )
            await IdentityRepository(session).upsert(
                self.id, role="advertiser", solana_wallet_address="SimAdvertiserWallet111111111111111111111111"
            )
            await session.commit()
        print(f"  📝 Deal {deal.id} created for {amount} USDC")
        return deal.id

    async def fund(self, deal_id: uuid.UUID) -> None:
        outcome = await self.services.workflow.fund(
            deal_id, PaymentMethod.SOLANA, tx_ref=f"sim-fund-{deal_id.hex[:8]}", actor_id=self.id
        )
        print(f"  💰 Funded -> {outcome.deal.status}")


class CreatorBot:
    """Accepts deals and submits posts."""

    def __init__(self, services: Services, clock: SimClock, creator_id: str = "creator-bot") -> None:
        self.services = services
        self.clock = clock
        self.id = creator_id

    async def register(self) -> None:
        async with self.services.session_factory() as session:
            await IdentityRepository(session).upsert(
                self.id, role="creator", solana_wallet_address="SimCreatorWallet11111111111111111111111111"
            )
            await session.commit()

    async def accept(self, deal_id: uuid.UUID) -> None:
        outcome = await self.services.workflow.accept(deal_id, self.id)
        print(f"  🤝 Accepted -> {outcome.deal.status}")

    async def post(self, deal_id: uuid.UUID) -> None:
        outcome = await self.services.workflow.submit_post(deal_id, self.id, POST_URL, self.clock.now)
        print(f"  📱 Post submitted -> {outcome.deal.status}")


async def deliver_callback(services: Services, deal_id: uuid.UUID, payload: dict, now: datetime) -> None:
    """Play the analysis service posting its result back."""
    outcome = await services.workflow.handle_callback(
        deal_id, normalize(payload), now, request_id=payload.get("requestId")
    )
    print(f"  🔎 Callback applied={outcome.applied} -> {outcome.deal.status}")


def analysis_result(deal_id: uuid.UUID, score: float, confidence: float, status: str = "completed") -> dict[str, Any]:
    return {
        "status": status,
        "requestId": "sim-1",
        "data": {
            "deal_id": str(deal_id),
            "analysis": {
                "overall_score": score,
                "proof_verification": {
                    "overall_confidence": confidence,
                    "requirements_met": ["product visible"] if score >= 60 else [],
                    "requirements_failed": [],
                },
            },
        },
    }


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


async def print_settlement(services: Services, deal_id: uuid.UUID) -> None:
    async with services.session_factory() as session:
        deal = await DealService(session).get_deal(deal_id)
    print(f"  Status: {deal.status}")
    if deal.verification_score is not None:
        print(f"  Score: {deal.verification_score:g}")
    if deal.failure_reason:
        print(f"  Failure: {deal.failure_reason}")


async def print_audit_trail(services: Services, deal_id: uuid.UUID) -> None:
    """Print the full audit trail for a deal."""
    async with services.session_factory() as session:
        events = await DealService(session).list_events(deal_id)
    print("\n  📜 Audit Trail:")
    for i, evt in enumerate(events, 1):
        old = evt.old_status or "—"
        print(f"    {i}. [{evt.event_type}] {old} → {evt.new_status} (by {evt.actor})")
    print()


# ===========================================================================
# Scenarios
# ===========================================================================
async def scenario_1_happy_path(services: Services, payments: SimulatedPaymentBackend) -> None:
    """Passing analysis, window closes on a tick, creator is paid."""
    banner("SCENARIO 1: Happy Path — 24h Sponsored Post")
    clock = SimClock(START)
    advertiser = AdvertiserBot(services, clock)
    creator = CreatorBot(services, clock)
    await creator.register()

    section("Step 1: Advertiser creates and creator accepts")
    deal_id = await advertiser.create_deal(Decimal("250.00"), "Shows the bottle and says SUMMER10")
    await creator.accept(deal_id)

    section("Step 2: Advertiser funds, creator posts")
    await advertiser.fund(deal_id)
    await creator.post(deal_id)

    section("Step 3: Analysis reports a pass")
    await deliver_callback(services, deal_id, analysis_result(deal_id, 92, 90), clock.advance(minutes=4))

    section("Step 4: Observation window closes")
    report = await services.scheduler.run_tick(clock.advance(hours=25))
    print(f"  ⏱️  Tick: dispatched={report.dispatched} completed={report.deals_completed}")
    await print_settlement(services, deal_id)
    print(f"  Transfers so far: {len(payments.transfers)}")

    await print_audit_trail(services, deal_id)


async def scenario_2_failed_verification(services: Services, payments: SimulatedPaymentBackend) -> None:
    """Failing analysis refunds the advertiser straight away."""
    banner("SCENARIO 2: Failed Verification — Refund")
    clock = SimClock(START)
    advertiser = AdvertiserBot(services, clock)
    creator = CreatorBot(services, clock)
    await creator.register()

    deal_id = await advertiser.create_deal(Decimal("80.00"), "Unboxes the headphones on camera")
    await creator.accept(deal_id)
    await advertiser.fund(deal_id)
    await creator.post(deal_id)

    section("Analysis reports a failure")
    await deliver_callback(
        services, deal_id, analysis_result(deal_id, 15, 85, status="failed"), clock.advance(minutes=3)
    )
    await print_settlement(services, deal_id)
    print(f"  Refunds so far: {len(payments.refunds)}")

    section("A late duplicate arrives")
    await deliver_callback(services, deal_id, analysis_result(deal_id, 99, 99), clock.advance(minutes=5))

    await print_audit_trail(services, deal_id)


async def scenario_3_manual_review(services: Services, payments: SimulatedPaymentBackend) -> None:
    """Borderline analysis goes to a reviewer who releases it."""
    banner("SCENARIO 3: Manual Review — Borderline Score")
    clock = SimClock(START)
    advertiser = AdvertiserBot(services, clock)
    creator = CreatorBot(services, clock)
    await creator.register()

    deal_id = await advertiser.create_deal(Decimal("120.00"), "Logo visible for at least 3 seconds")
    await creator.accept(deal_id)
    await advertiser.fund(deal_id)
    await creator.post(deal_id)

    section("Analysis is unsure")
    await deliver_callback(services, deal_id, analysis_result(deal_id, 68, 75), clock.advance(minutes=3))

    async with services.session_factory() as session:
        review = (await ReviewRepository(session).list_for_deal(deal_id))[0]
    print(f"  🧑‍⚖️  Review {review.id} opened: {review.reason_code} ({review.priority})")

    section("Reviewer releases")
    review, _ = await services.workflow.process_review_decision(
        review.id,
        ReviewDecision.RELEASE,
        "Logo is on screen from 0:04 to 0:09",
        reviewer_id="ops-admin",
        role=Role.ADMIN,
        now=clock.advance(hours=2),
    )
    print(f"  Review {review.status}, deal still held until the window closes")

    await services.scheduler.run_tick(clock.advance(hours=23))
    await print_settlement(services, deal_id)
    print(f"  Transfers so far: {len(payments.transfers)}")

    await print_audit_trail(services, deal_id)


SCENARIOS = {
    1: scenario_1_happy_path,
    2: scenario_2_failed_verification,
    3: scenario_3_manual_review,
}


# ===========================================================================
# Main
# ===========================================================================
async def run(scenario: int = 0, use_sqlite: bool = False) -> None:
    """Run one scenario, or all of them when ``scenario`` is 0."""
    settings = get_settings()
    database_url = settings.database_url
    if use_sqlite:
        database_url = f"sqlite+aiosqlite:///{Path(tempfile.mkdtemp()) / 'simulation.db'}"

    engine = build_engine(database_url)
    if use_sqlite:
        await create_tables(engine)
    logger.info("simulation.database_ready", url=database_url.split("@")[-1])

    payments = SimulatedPaymentBackend()
    services = build_services(
        settings,
        build_session_factory(engine),
        analysis=StubAnalysis(),
        payments=payments,
        notifier=LoggingNotifier(),
    )

    try:
        print("\n" + "🚀" * 35)
        print("  PROOF ESCROW — SIMULATION")
        print(f"  Database: {'SQLite (temp file)' if use_sqlite else 'configured DATABASE_URL'}")
        print("🚀" * 35 + "\n")

        if scenario == 0:
            for run_scenario in SCENARIOS.values():
                await run_scenario(services, payments)
        elif scenario in SCENARIOS:
            await SCENARIOS[scenario](services, payments)
        else:
            print(f"Unknown scenario {scenario}. Available: 1, 2, 3")
            return

        print("\n" + "=" * 70)
        print("  ✅ SIMULATION FINISHED")
        print("=" * 70 + "\n")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Proof Escrow Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1, 2, or 3). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use a throwaway SQLite file instead of DATABASE_URL (no Docker needed).",
    )
    args = parser.parse_args()
    asyncio.run(run(scenario=args.scenario, use_sqlite=args.sqlite))
