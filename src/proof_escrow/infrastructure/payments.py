"""Payment backends — move escrowed funds to the creator or back to the advertiser.

Two implementations:
    - SimulatedPaymentBackend: fake transaction references, no money moves.
      Used in development and tests.
    - StripePaymentBackend: Stripe Connect transfers and PaymentIntent
      refunds. Solana transfers are not wired here; deals funded over
      Solana need the simulated backend or a dedicated executor.

Both raise PaymentError when the transfer is rejected.
"""

from __future__ import annotations

import asyncio
import uuid
from decimal import Decimal
from typing import TYPE_CHECKING

from proof_escrow.domain.enums import PaymentMethod
from proof_escrow.domain.exceptions import PaymentError
from proof_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from proof_escrow.config import Settings
    from proof_escrow.domain.protocols import PaymentBackend

logger = get_logger(__name__)


def _fake_tx_ref(method: PaymentMethod) -> str:
    if method == PaymentMethod.SOLANA:
        return uuid.uuid4().hex + uuid.uuid4().hex[:24]
    return "tr_sim_" + uuid.uuid4().hex[:24]


class SimulatedPaymentBackend:
    """Generates fake transaction references instead of moving money."""

    def __init__(self, fail_with: str | None = None) -> None:
        self._fail_with = fail_with
        self.transfers: list[dict] = []
        self.refunds: list[dict] = []

    async def transfer(
        self,
        *,
        method: PaymentMethod,
        destination: str,
        amount: Decimal,
        currency: str,
        reference: str,
    ) -> str:
        if self._fail_with:
            raise PaymentError(self._fail_with)
        tx_ref = _fake_tx_ref(method)
        self.transfers.append(
            {"method": method, "destination": destination, "amount": amount, "reference": reference}
        )
        logger.info(
            "payment.transfer_simulated",
            tx_ref=tx_ref,
            method=method.value,
            amount=str(amount),
            currency=currency,
            destination=destination,
            reference=reference,
        )
        return tx_ref

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
        if self._fail_with:
            raise PaymentError(self._fail_with)
        tx_ref = _fake_tx_ref(method)
        self.refunds.append(
            {"method": method, "destination": destination, "amount": amount, "reference": reference}
        )
        logger.info(
            "payment.refund_simulated",
            tx_ref=tx_ref,
            method=method.value,
            amount=str(amount),
            currency=currency,
            destination=destination,
            funding_reference=funding_reference,
        )
        return tx_ref


class StripePaymentBackend:
    """Stripe Connect transfers and PaymentIntent refunds.

    The stripe SDK is synchronous; calls run in a worker thread.
    """

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    def _stripe(self):  # noqa: ANN202
        import stripe

        stripe.api_key = self._api_key
        return stripe

    @staticmethod
    def _minor_units(amount: Decimal) -> int:
        return int((amount * 100).quantize(Decimal("1")))

    async def transfer(
        self,
        *,
        method: PaymentMethod,
        destination: str,
        amount: Decimal,
        currency: str,
        reference: str,
    ) -> str:
        if method != PaymentMethod.STRIPE:
            raise PaymentError(f"Stripe backend cannot pay out {method.value} deals")

        stripe = self._stripe()
        try:
            transfer = await asyncio.to_thread(
                stripe.Transfer.create,
                amount=self._minor_units(amount),
                currency="usd" if currency.upper() == "USDC" else currency.lower(),
                destination=destination,
                transfer_group=reference,
                metadata={"deal_id": reference},
            )
        except stripe.StripeError as exc:
            logger.error("payment.stripe_transfer_failed", error=str(exc), reference=reference)
            raise PaymentError(f"Stripe transfer failed: {exc}") from exc

        logger.info("payment.stripe_transfer_created", tx_ref=transfer.id, reference=reference)
        return transfer.id

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
        if method != PaymentMethod.STRIPE:
            raise PaymentError(f"Stripe backend cannot refund {method.value} deals")
        if not funding_reference:
            raise PaymentError("Stripe refund needs the funding payment intent")

        stripe = self._stripe()
        try:
            refund = await asyncio.to_thread(
                stripe.Refund.create,
                payment_intent=funding_reference,
                metadata={"deal_id": reference},
            )
        except stripe.StripeError as exc:
            logger.error("payment.stripe_refund_failed", error=str(exc), reference=reference)
            raise PaymentError(f"Stripe refund failed: {exc}") from exc

        logger.info("payment.stripe_refund_created", tx_ref=refund.id, reference=reference)
        return refund.id


def build_payment_backend(settings: Settings) -> PaymentBackend:
    """Pick the backend from configuration."""
    if settings.payment_simulate or not settings.stripe_secret_key:
        return SimulatedPaymentBackend()
    return StripePaymentBackend(settings.stripe_secret_key)
