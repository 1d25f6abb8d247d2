"""HTTP client for the external content-analysis service.

Analysis is slow (the service scrapes the post and runs models over it), so
the request timeout is minutes, not seconds. The service acknowledges the
request and posts the verdict to our callback URL later.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

from proof_escrow.domain.exceptions import AnalysisServiceError, AnalysisTimeoutError
from proof_escrow.domain.protocols import AnalysisSubmission
from proof_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from proof_escrow.config import Settings

logger = get_logger(__name__)


def analyze_endpoint(base_url: str) -> str:
    """Append ``/analyze`` unless the configured URL already points at it."""
    url = base_url.rstrip("/")
    if url.endswith("/analyze"):
        return url
    return f"{url}/analyze"


class HttpAnalysisClient:
    """AnalysisService implementation over httpx."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 600.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoint = analyze_endpoint(base_url)
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> HttpAnalysisClient:
        return cls(
            base_url=settings.analysis_url,
            api_key=settings.analysis_api_key,
            timeout_seconds=settings.analysis_timeout_seconds,
        )

    async def submit(self, payload: dict) -> AnalysisSubmission:
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self._api_key,
            "Authorization": f"Bearer {self._api_key}",
        }
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post(self._endpoint, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise AnalysisTimeoutError(self._timeout_seconds) from exc
        except httpx.HTTPError as exc:
            raise AnalysisServiceError(f"Analysis request failed: {exc}") from exc

        if response.status_code >= 400:
            raise AnalysisServiceError(
                f"Analysis service returned {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
            )

        request_id = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            request_id = body.get("requestId") or body.get("request_id") or body.get("id")

        logger.info(
            "analysis.submitted",
            endpoint=self._endpoint,
            status_code=response.status_code,
            request_id=request_id,
        )
        return AnalysisSubmission(request_id=str(request_id) if request_id else None)
