"""Verification Dispatcher: talks to the external analysis service.

Outbound, it builds the analysis request for a deal and hands it to an
AnalysisService. Inbound, ``normalize`` turns whatever callback payload
arrived into a VerificationResult without ever raising.

Usage:
    dispatcher = VerificationDispatcher(HttpAnalysisClient.from_settings(settings), settings)
    outcome = await dispatcher.dispatch(deal, proof_spec, deal.post_url)
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from proof_escrow.domain.enums import VerificationOutcome
from proof_escrow.domain.exceptions import AnalysisServiceError, AnalysisTimeoutError
from proof_escrow.domain.post_url import account_handle, is_valid_post_url, strip_query
from proof_escrow.domain.verification import DispatchOutcome, VerificationResult
from proof_escrow.infrastructure.database.repositories import (
    DealRepository,
    ProofSpecRepository,
)
from proof_escrow.logging_config import get_logger
from proof_escrow.schemas.orchestrator import LegacyCallback, NestedCallback, callback_adapter

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from proof_escrow.config import Settings
    from proof_escrow.domain.protocols import AnalysisService
    from proof_escrow.infrastructure.database.orm_models import Deal, ProofSpec

logger = get_logger(__name__)

DEFAULT_TEXT_PROOF = (
    "Verify that the submitted content meets the specified requirements "
    "and aligns with the deal terms."
)

_NESTED_OUTCOMES = {
    "completed": VerificationOutcome.COMPLETED,
    "error": VerificationOutcome.ERROR,
}

_LEGACY_OUTCOMES = {
    "completed": VerificationOutcome.COMPLETED,
    "failed": VerificationOutcome.FAILED,
    "error": VerificationOutcome.ERROR,
}


def _clamp(value: float | None) -> float:
    if value is None or not math.isfinite(value):
        return 0.0
    return max(0.0, min(100.0, float(value)))


# ---------------------------------------------------------------------------
# Inbound normalization
# ---------------------------------------------------------------------------


def _guess_deal_id(raw: Any) -> str | None:
    if not isinstance(raw, dict):
        return None
    data = raw.get("data")
    if isinstance(data, dict) and data.get("deal_id"):
        return str(data["deal_id"])
    if raw.get("deal_id"):
        return str(raw["deal_id"])
    return None


def extract_deal_id(raw: Any) -> str | None:
    """Deal id of a callback payload in either shape, if it has one."""
    return _guess_deal_id(raw)


def extract_request_id(raw: Any) -> str | None:
    if not isinstance(raw, dict):
        return None
    request_id = raw.get("requestId") or raw.get("request_id")
    return str(request_id) if request_id else None


def _from_nested(payload: NestedCallback, raw: Any) -> VerificationResult:
    outcome = _NESTED_OUTCOMES.get((payload.status or "").lower(), VerificationOutcome.FAILED)
    analysis = payload.data.analysis
    score = _clamp(analysis.overall_score if analysis else None)
    verification = analysis.proof_verification if analysis else None

    confidence = score
    met: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    if verification is not None:
        if verification.overall_confidence is not None:
            confidence = _clamp(verification.overall_confidence)
        met = tuple(verification.requirements_met)
        failed = tuple(verification.requirements_failed)

    return VerificationResult(
        deal_id=payload.data.deal_id,
        outcome=outcome,
        overall_score=score,
        confidence=confidence,
        requirements_met=met,
        requirements_failed=failed,
        raw=raw,
        error="analysis service reported an error" if outcome == VerificationOutcome.ERROR else None,
    )


def _from_legacy(payload: LegacyCallback, raw: Any) -> VerificationResult:
    status = (payload.verification_status or "error").lower()
    outcome = _LEGACY_OUTCOMES.get(status, VerificationOutcome.ERROR)
    score = _clamp(payload.overall_score)
    confidence = _clamp(payload.confidence) if payload.confidence is not None else score

    error = None
    if outcome == VerificationOutcome.ERROR:
        error = f"legacy callback status {payload.verification_status!r}"

    return VerificationResult(
        deal_id=payload.deal_id,
        outcome=outcome,
        overall_score=score,
        confidence=confidence,
        requirements_met=tuple(payload.requirements_met),
        requirements_failed=tuple(payload.requirements_failed),
        raw=raw,
        error=error,
    )


def normalize(raw: Any) -> VerificationResult:
    """Map any callback payload onto a VerificationResult.

    Never raises: payloads that match neither known shape come back as an
    ``error`` outcome with score 0, carrying whatever deal id could be found.
    """
    try:
        payload = callback_adapter.validate_python(raw)
    except ValidationError as exc:
        logger.warning(
            "dispatcher.callback_unrecognized",
            errors=exc.error_count(),
            deal_id=_guess_deal_id(raw),
        )
        return VerificationResult.errored(
            _guess_deal_id(raw),
            raw,
            f"Unrecognized callback payload ({exc.error_count()} validation errors)",
        )
    except (TypeError, ValueError) as exc:
        logger.warning("dispatcher.callback_malformed", error=str(exc), deal_id=_guess_deal_id(raw))
        return VerificationResult.errored(_guess_deal_id(raw), raw, f"Malformed callback payload: {exc}")

    if isinstance(payload, NestedCallback):
        return _from_nested(payload, raw)
    return _from_legacy(payload, raw)


# ---------------------------------------------------------------------------
# Outbound dispatch
# ---------------------------------------------------------------------------


class VerificationDispatcher:
    """Builds and submits analysis requests."""

    def __init__(self, analysis: AnalysisService, settings: Settings) -> None:
        self._analysis = analysis
        self._settings = settings

    def build_request(
        self,
        deal: Deal,
        proof_spec: ProofSpec | None,
        post_url: str,
        request_id: str | None = None,
    ) -> dict:
        """Analysis request body for one deal, also used by the pull endpoint.

        Scheduled checks pass their schedule id as ``request_id`` so each
        callback can be matched to the run it answers.
        """
        text_proof = (proof_spec.text_proof if proof_spec else None) or DEFAULT_TEXT_PROOF
        requirements = proof_spec.requirements if proof_spec else []
        spec_body = {
            "text_proof": text_proof,
            "platform": deal.platform,
            "account_handle": account_handle(post_url, deal.account_url),
        }
        return {
            "url": strip_query(post_url),
            "callbackUrl": self._settings.callback_url,
            "requestId": request_id or str(deal.id),
            "metadata": {
                "deal_id": str(deal.id),
                "proof_spec": spec_body,
                "requirements": requirements,
            },
            "options": {
                "analysisType": "comprehensive",
                "proofSpec": spec_body,
            },
        }

    async def dispatch(
        self,
        deal: Deal,
        proof_spec: ProofSpec | None,
        post_url: str,
        request_id: str | None = None,
    ) -> DispatchOutcome:
        """Submit one verification request. Failures come back as data, not exceptions."""
        request = self.build_request(deal, proof_spec, post_url, request_id=request_id)
        try:
            submission = await self._analysis.submit(request)
        except AnalysisTimeoutError as exc:
            logger.warning("dispatcher.timeout", deal_id=str(deal.id), error=exc.message)
            return DispatchOutcome(success=False, error=exc.message, timed_out=True, request=request)
        except AnalysisServiceError as exc:
            logger.warning(
                "dispatcher.failed",
                deal_id=str(deal.id),
                error=exc.message,
                status_code=exc.status_code,
            )
            return DispatchOutcome(success=False, error=exc.message, request=request)

        logger.info("dispatcher.dispatched", deal_id=str(deal.id), request_id=submission.request_id)
        return DispatchOutcome(success=True, request_id=submission.request_id, request=request)

    async def fetch_due(self, session: AsyncSession, limit: int = 10) -> list[dict]:
        """Requests an analysis worker may pull instead of waiting for a push."""
        deal_repo = DealRepository(session)
        spec_repo = ProofSpecRepository(session)

        requests = []
        for deal in await deal_repo.list_verifying_with_post(limit):
            if not is_valid_post_url(deal.post_url):
                continue
            spec = await spec_repo.get_by_deal(deal.id)
            requests.append(self.build_request(deal, spec, deal.post_url))
        return requests
