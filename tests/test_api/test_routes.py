"""REST API tests: auth guards, error mapping and the main lifecycle routes."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

import httpx
import pytest
import pytest_asyncio

from conftest import ADVERTISER, CREATOR, NOW, POST_URL, REVIEWER, nested_callback
from proof_escrow.api.deps import get_app_settings, get_db_session, get_services
from proof_escrow.main import create_app
from proof_escrow.services.dispatcher import normalize

CALLBACK_AUTH = {"Authorization": "Bearer callback-secret"}
INTERNAL = {"X-Internal-Secret": "internal-secret"}


def as_user(user_id: str, role: str) -> dict[str, str]:
    return {"X-User-Id": user_id, "X-User-Role": role}


@pytest_asyncio.fixture
async def client(services, settings):  # noqa: ANN001, ANN201
    app = create_app()

    async def session_override():  # noqa: ANN202
        async with services.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_services] = lambda: services
    app.dependency_overrides[get_app_settings] = lambda: settings
    app.dependency_overrides[get_db_session] = session_override

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


class TestDealRoutes:
    @pytest.mark.asyncio
    async def test_full_lifecycle_over_http(self, client, analysis) -> None:  # noqa: ANN001
        deadline = (datetime.now(UTC) + timedelta(days=7)).isoformat()
        response = await client.post(
            "/v1/deals",
            json={
                "amount": "250.00",
                "deadline": deadline,
                "proof_spec": {"text_proof": "Say the promo code", "duration_hours": 24},
            },
            headers=as_user(ADVERTISER, "advertiser"),
        )
        assert response.status_code == 201
        body = response.json()
        deal_id = body["id"]
        assert body["status"] == "PendingAcceptance"
        assert body["advertiser_id"] == ADVERTISER
        assert body["proof_spec"]["text_proof"] == "Say the promo code"

        response = await client.post(
            f"/v1/deals/{deal_id}/accept", headers=as_user(CREATOR, "creator")
        )
        assert response.status_code == 200
        assert response.json()["status"] == "PendingFunding"

        response = await client.post(
            f"/v1/deals/{deal_id}/fund",
            json={"payment_method": "solana", "tx_ref": "sig-1"},
            headers=as_user(ADVERTISER, "advertiser"),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "PendingVerification"

        response = await client.post(
            f"/v1/deals/{deal_id}/submit-post",
            json={"post_url": POST_URL},
            headers=as_user(CREATOR, "creator"),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "Verifying"
        assert len(analysis.requests) == 1

        response = await client.get(
            f"/v1/deals/{deal_id}/schedule", headers=as_user(ADVERTISER, "advertiser")
        )
        assert response.status_code == 200
        schedule = response.json()
        assert schedule["duration_elapsed"] is False
        assert schedule["schedules"][0]["check_type"] == "initial"

        response = await client.get(
            f"/v1/deals/{deal_id}/events", headers=as_user(CREATOR, "creator")
        )
        assert [e["event_type"] for e in response.json()] == [
            "DEAL_CREATED",
            "DEAL_ACCEPTED",
            "DEAL_FUNDED",
            "POST_SUBMITTED",
        ]

    @pytest.mark.asyncio
    async def test_missing_identity_is_401(self, client) -> None:  # noqa: ANN001
        response = await client.get(f"/v1/deals/{uuid.uuid4()}")
        assert response.status_code == 401
        assert response.json()["error"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_unknown_deal_is_404(self, client) -> None:  # noqa: ANN001
        response = await client.get(f"/v1/deals/{uuid.uuid4()}", headers=as_user(ADVERTISER, "advertiser"))
        assert response.status_code == 404
        assert response.json()["error"] == "DEAL_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_outsider_cannot_view_private_deal(self, client, deals) -> None:  # noqa: ANN001
        deal_id = await deals.create()
        response = await client.get(f"/v1/deals/{deal_id}", headers=as_user("someone", "creator"))
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_invalid_transition_is_409(self, client, deals, services) -> None:  # noqa: ANN001
        deal_id = await deals.create()
        await services.workflow.accept(deal_id, CREATOR)
        response = await client.post(
            f"/v1/deals/{deal_id}/submit-post",
            json={"post_url": POST_URL},
            headers=as_user(CREATOR, "creator"),
        )
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_bad_duration_is_400(self, client) -> None:  # noqa: ANN001
        response = await client.post(
            "/v1/deals",
            json={
                "amount": "10",
                "deadline": (datetime.now(UTC) + timedelta(days=2)).isoformat(),
                "proof_spec": {"duration_hours": 5},
            },
            headers=as_user(ADVERTISER, "advertiser"),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"


class TestCallbackRoutes:
    @pytest.mark.asyncio
    async def test_requires_bearer_secret(self, client) -> None:  # noqa: ANN001
        response = await client.post("/v1/orchestrator/callback", json={"deal_id": str(uuid.uuid4())})
        assert response.status_code == 401

        response = await client.post(
            "/v1/orchestrator/callback",
            json={"deal_id": str(uuid.uuid4())},
            headers={"Authorization": "Bearer wrong"},
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_deal_id_is_400(self, client) -> None:  # noqa: ANN001
        response = await client.post(
            "/v1/orchestrator/callback", json={"status": "completed"}, headers=CALLBACK_AUTH
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_non_json_body_is_400(self, client) -> None:  # noqa: ANN001
        response = await client.post(
            "/v1/orchestrator/callback",
            content=b"not json",
            headers={**CALLBACK_AUTH, "Content-Type": "application/json"},
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize("deal_id", ["not-a-uuid", str(uuid.UUID(int=7))])
    async def test_unknown_deal_is_404(self, client, deal_id) -> None:  # noqa: ANN001
        response = await client.post(
            "/v1/orchestrator/callback",
            json={"deal_id": deal_id, "verification_status": "verified", "overall_score": 90},
            headers=CALLBACK_AUTH,
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_callback_applies_result(self, client, deals) -> None:  # noqa: ANN001
        deal_id = await deals.verifying()
        response = await client.post(
            "/v1/orchestrator/callback",
            json=nested_callback(deal_id, 92, confidence=90, request_id="req-1"),
            headers=CALLBACK_AUTH,
        )
        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "deal_status": "Verifying",
            "verification_score": 92.0,
            "applied": True,
        }

    @pytest.mark.asyncio
    async def test_malformed_callback_is_acknowledged(self, client, deals) -> None:  # noqa: ANN001
        deal_id = await deals.verifying()
        payload = nested_callback(deal_id, 90, confidence=90)
        payload["data"]["analysis"]["proof_verification"]["requirements_failed"] = 5

        response = await client.post(
            "/v1/orchestrator/callback", json=payload, headers=CALLBACK_AUTH
        )

        assert response.status_code == 200
        assert response.json()["deal_status"] == "Verifying"
        assert response.json()["verification_score"] == 0.0

    @pytest.mark.asyncio
    async def test_retried_callback_is_not_reapplied(self, client, deals) -> None:  # noqa: ANN001
        deal_id = await deals.verifying()
        payload = nested_callback(deal_id, 70, confidence=80, request_id="req-1")

        first = await client.post("/v1/orchestrator/callback", json=payload, headers=CALLBACK_AUTH)
        retry = await client.post("/v1/orchestrator/callback", json=payload, headers=CALLBACK_AUTH)

        assert first.json()["applied"] is True
        assert retry.status_code == 200
        assert retry.json()["applied"] is False

    @pytest.mark.asyncio
    async def test_pending_requires_analysis_key(self, client, deals) -> None:  # noqa: ANN001
        deal_id = await deals.verifying()

        assert (await client.get("/v1/orchestrator/pending")).status_code == 401

        response = await client.get(
            "/v1/orchestrator/pending", headers={"X-API-Key": "analysis-key"}
        )
        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 1
        assert body["pending_verifications"][0]["requestId"] == str(deal_id)
        assert body["pending_verifications"][0]["callbackUrl"] == (
            "https://escrow.test/v1/orchestrator/callback"
        )


class TestSettlementRoutes:
    async def _completed(self, deals, services) -> uuid.UUID:  # noqa: ANN001
        deal_id = await deals.verifying()
        await services.workflow.handle_callback(
            deal_id,
            normalize(nested_callback(deal_id, 95, confidence=95)),
            NOW + timedelta(minutes=3),
            "req-1",
        )
        await services.scheduler.run_tick(NOW + timedelta(hours=25))
        return deal_id

    @pytest.mark.asyncio
    async def test_release_requires_credentials(self, client, deals, services) -> None:  # noqa: ANN001
        deal_id = await self._completed(deals, services)

        response = await client.post("/v1/settlement/release", json={"deal_id": str(deal_id)})
        assert response.status_code == 401

        response = await client.post(
            "/v1/settlement/release",
            json={"deal_id": str(deal_id)},
            headers=as_user("stranger", "advertiser"),
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, client, deals, services, payments) -> None:  # noqa: ANN001
        deal_id = await self._completed(deals, services)

        first = await client.post(
            "/v1/settlement/release", json={"deal_id": str(deal_id)}, headers=INTERNAL
        )
        second = await client.post(
            "/v1/settlement/release",
            json={"deal_id": str(deal_id)},
            headers=as_user(CREATOR, "creator"),
        )

        assert first.status_code == 200
        assert first.json()["status"] == "completed"
        assert first.json()["id"] == second.json()["id"]
        assert len(payments.transfers) == 1

    @pytest.mark.asyncio
    async def test_refund_of_verifying_deal_is_rejected(self, client, deals) -> None:  # noqa: ANN001
        deal_id = await deals.verifying()
        response = await client.post(
            "/v1/settlement/refund", json={"deal_id": str(deal_id)}, headers=INTERNAL
        )
        assert response.status_code == 400
        assert response.json()["error"] == "SETTLEMENT_ERROR"


class TestReviewRoutes:
    @pytest.mark.asyncio
    async def test_review_flow(self, client, deals, services) -> None:  # noqa: ANN001
        deal_id = await deals.verifying()
        await services.workflow.handle_callback(
            deal_id,
            normalize(nested_callback(deal_id, 70, confidence=80)),
            NOW + timedelta(minutes=3),
            "req-1",
        )

        response = await client.get("/v1/reviews", headers=as_user(CREATOR, "creator"))
        assert response.status_code == 403

        response = await client.get(
            "/v1/reviews", params={"status": "Open"}, headers=as_user(REVIEWER, "reviewer")
        )
        assert response.status_code == 200
        reviews = response.json()
        assert len(reviews) == 1
        review_id = reviews[0]["id"]
        assert reviews[0]["reason_code"] == "MANUAL_REVIEW_NEEDED"

        response = await client.post(
            f"/v1/reviews/{review_id}/assign",
            json={"reviewer_id": REVIEWER},
            headers=as_user(REVIEWER, "reviewer"),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "Assigned"

        response = await client.post(
            f"/v1/reviews/{review_id}/start", headers=as_user(REVIEWER, "reviewer")
        )
        assert response.json()["status"] == "InProgress"

        response = await client.post(
            f"/v1/reviews/{review_id}/decision",
            json={"decision": "manual_fail", "notes": "Logo never shown"},
            headers=as_user(REVIEWER, "reviewer"),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "Closed"
        assert (await deals.get(deal_id)).status == "Failed"

        response = await client.post(
            f"/v1/reviews/{review_id}/decision",
            json={"decision": "release", "notes": "second try"},
            headers=as_user(REVIEWER, "reviewer"),
        )
        assert response.status_code == 409

        response = await client.get("/internal/hitl/stats", headers=INTERNAL)
        assert response.json()["closed"] == 1


class TestInternalRoutes:
    @pytest.mark.asyncio
    async def test_tick_requires_secret(self, client) -> None:  # noqa: ANN001
        assert (await client.post("/internal/cron/tick")).status_code == 401

        response = await client.post("/internal/cron/tick", headers=INTERNAL)
        assert response.status_code == 200
        assert response.json()["errors"] == []
