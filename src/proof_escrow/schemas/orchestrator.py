"""Schemas for the analysis-service boundary.

Inbound callbacks come in two historical shapes:

    nested:  {"status": "completed",
              "data": {"deal_id": ..., "analysis": {"overall_score": 85,
                       "proof_verification": {"requirements_met": [...],
                                              "requirements_failed": [...],
                                              "overall_confidence": 90}}}}
    legacy:  {"deal_id": ..., "verification_status": "completed",
              "overall_score": 85}

RawCallbackPayload is a tagged union over both; the tag is derived from
the payload's shape since neither carries an explicit version field.
"""

from __future__ import annotations

from typing import Annotated, Any, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    field_validator,
)


# Scores arrive as JSON numbers; NaN and Infinity literals are rejected
_CALLBACK_CONFIG = ConfigDict(extra="allow", allow_inf_nan=False)


def _as_strings(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (str, bytes)):
        return [str(value)]
    if not isinstance(value, (list, tuple)):
        raise ValueError(f"expected a list of requirements, got {type(value).__name__}")
    items = []
    for item in value:
        if isinstance(item, dict):
            item = item.get("requirement") or item.get("name") or item.get("description") or item
        items.append(str(item))
    return items


class ProofVerification(BaseModel):
    model_config = _CALLBACK_CONFIG

    requirements_met: list[str] = Field(default_factory=list)
    requirements_failed: list[str] = Field(default_factory=list)
    overall_confidence: float | None = None

    @field_validator("requirements_met", "requirements_failed", mode="before")
    @classmethod
    def coerce_requirements(cls, value: Any) -> list[str]:
        return _as_strings(value)


class Analysis(BaseModel):
    model_config = _CALLBACK_CONFIG

    overall_score: float | None = None
    proof_verification: ProofVerification | None = None


class NestedCallbackData(BaseModel):
    model_config = _CALLBACK_CONFIG

    deal_id: str
    analysis: Analysis | None = None


class NestedCallback(BaseModel):
    """Current payload shape."""

    model_config = _CALLBACK_CONFIG

    status: str | None = None
    requestId: str | None = None  # noqa: N815 - wire name
    data: NestedCallbackData


class LegacyCallback(BaseModel):
    """Flat payload sent by older analysis-service releases."""

    model_config = _CALLBACK_CONFIG

    deal_id: str
    verification_status: str | None = None
    overall_score: float | None = None
    confidence: float | None = None
    requirements_met: list[str] = Field(default_factory=list)
    requirements_failed: list[str] = Field(default_factory=list)
    request_id: str | None = None

    @field_validator("requirements_met", "requirements_failed", mode="before")
    @classmethod
    def coerce_requirements(cls, value: Any) -> list[str]:
        return _as_strings(value)


def callback_shape(value: Any) -> str | None:
    """Discriminator: which payload shape ``value`` looks like."""
    if isinstance(value, dict):
        if isinstance(value.get("data"), dict):
            return "nested"
        if "deal_id" in value:
            return "legacy"
        return None
    if isinstance(value, NestedCallback):
        return "nested"
    if isinstance(value, LegacyCallback):
        return "legacy"
    return None


RawCallbackPayload = Annotated[
    Union[
        Annotated[NestedCallback, Tag("nested")],
        Annotated[LegacyCallback, Tag("legacy")],
    ],
    Discriminator(callback_shape),
]

callback_adapter: TypeAdapter[NestedCallback | LegacyCallback] = TypeAdapter(RawCallbackPayload)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class CallbackResponse(BaseModel):
    """Acknowledgement returned to the analysis service."""

    success: bool = True
    deal_status: str | None = None
    verification_score: float | None = None
    applied: bool = Field(
        default=True,
        description="False when the callback was a duplicate or arrived after the deal moved on",
    )


class PendingVerification(BaseModel):
    """One verification request, in the same shape as a pushed dispatch."""

    url: str
    callbackUrl: str  # noqa: N815 - wire name
    requestId: str  # noqa: N815 - wire name
    metadata: dict
    options: dict


class PendingVerificationsResponse(BaseModel):
    pending_verifications: list[PendingVerification]
    count: int
    format_version: str = "2025-01-15"
