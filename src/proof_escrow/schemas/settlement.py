"""Pydantic schemas for settlement triggers."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from proof_escrow.domain.enums import RefundReason


class ReleaseRequest(BaseModel):
    deal_id: uuid.UUID


class RefundRequest(BaseModel):
    deal_id: uuid.UUID
    reason: RefundReason = Field(default=RefundReason.MANUAL)


class PayoutResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    deal_id: uuid.UUID
    recipient_id: str
    method: str
    status: str
    amount: Decimal
    currency: str
    destination: str | None
    tx_ref: str | None
    error: str | None
    created_at: datetime
    settled_at: datetime | None


class RefundResponse(PayoutResponse):
    reason: str


class SettlementRetryResponse(BaseModel):
    retried: int
    settled: int
