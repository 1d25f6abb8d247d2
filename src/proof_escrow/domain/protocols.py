"""Collaborator protocols.

Services receive these as constructor arguments; concrete implementations
live in proof_escrow.infrastructure. Protocols (structural subtyping) so
test doubles don't need to inherit from anything.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from decimal import Decimal

    from proof_escrow.domain.enums import PaymentMethod


@dataclass(frozen=True)
class AnalysisSubmission:
    """Acknowledgement returned by the analysis service."""

    request_id: str | None
    accepted: bool = True


@runtime_checkable
class AnalysisService(Protocol):
    """External AI content-analysis service."""

    async def submit(self, payload: dict) -> AnalysisSubmission:
        """Submit a verification request.

        Raises:
            AnalysisTimeoutError: If the service did not answer in time.
            AnalysisServiceError: On transport errors or non-2xx replies.
        """
        ...


@runtime_checkable
class PaymentBackend(Protocol):
    """Black-box transfer/refund executor (Stripe, Solana, or simulated)."""

    async def transfer(
        self,
        *,
        method: PaymentMethod,
        destination: str,
        amount: Decimal,
        currency: str,
        reference: str,
    ) -> str:
        """Pay ``amount`` to ``destination`` and return the provider tx reference.

        Raises:
            PaymentError: If the backend rejects the transfer.
        """
        ...

    async def refund(
        self,
        *,
        method: PaymentMethod,
        destination: str,
        amount: Decimal,
        currency: str,
        reference: str,
        funding_reference: str | None = None,
    ) -> str:
        """Return escrowed funds and return the provider tx reference.

        Raises:
            PaymentError: If the backend rejects the refund.
        """
        ...


@runtime_checkable
class Notifier(Protocol):
    """Outbound delivery of reviewer notifications."""

    async def send(self, *, to: list[str], subject: str, html: str, text: str) -> str | None:
        """Deliver one message; return the provider message id if any.

        Raises:
            NotificationError: If delivery failed after retries.
        """
        ...
