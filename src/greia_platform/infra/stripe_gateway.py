"""Stripe payment gateway for commission payouts.

The commission engine only sees the ``PaymentGateway`` protocol; tests
substitute a fake. ``StripeGateway`` passes the API key per call instead of
setting the SDK's module-level ``stripe.api_key``.
"""

import asyncio
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Protocol

import stripe

from greia_platform.app.config import get_settings
from greia_platform.domain.enums import GatewayOutcome
from greia_platform.domain.errors import PaymentGatewayError, ValidationError
from greia_platform.domain.schemas import GatewayEvent, PaymentIntentResult

logger = logging.getLogger(__name__)

# Webhook event type -> terminal outcome
EVENT_OUTCOMES = {
    "payment_intent.succeeded": GatewayOutcome.SUCCEEDED,
    "payment_intent.payment_failed": GatewayOutcome.FAILED,
    "payment_intent.canceled": GatewayOutcome.CANCELED,
}


class PaymentGateway(Protocol):
    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        destination: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> PaymentIntentResult: ...

    async def retrieve_intent(self, intent_id: str) -> str: ...

    def parse_webhook(self, payload: bytes, signature: str) -> Optional[GatewayEvent]: ...


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount (pounds) to Stripe's integer minor units."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeGateway:
    """PaymentGateway backed by Stripe Connect destination charges."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        self.api_key = api_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self.timeout_seconds = timeout_seconds or settings.payment_gateway_timeout_seconds
        self.payment_method = settings.stripe_payout_payment_method

    async def _call(self, fn, **kwargs):
        """Run a blocking SDK call off the event loop with a hard timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, api_key=self.api_key, **kwargs),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise PaymentGatewayError(
                f"Stripe did not respond within {self.timeout_seconds:.0f}s",
                timeout=True,
            )
        except stripe.StripeError as exc:
            message = getattr(exc, "user_message", None) or str(exc)
            raise PaymentGatewayError(message, decline_code=getattr(exc, "code", None))

    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        destination: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> PaymentIntentResult:
        params = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "transfer_data": {"destination": destination},
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        }
        if self.payment_method:
            params["payment_method"] = self.payment_method
            params["confirm"] = True

        intent = await self._call(stripe.PaymentIntent.create, **params)
        logger.info(
            "Stripe intent %s created for destination %s (status=%s)",
            intent.id, destination, intent.status,
        )
        return PaymentIntentResult(intent_id=intent.id, status=intent.status)

    async def retrieve_intent(self, intent_id: str) -> str:
        intent = await self._call(stripe.PaymentIntent.retrieve, id=intent_id)
        return intent.status

    def parse_webhook(self, payload: bytes, signature: str) -> Optional[GatewayEvent]:
        """Verify a webhook delivery and normalize it.

        Returns None for event types that carry no payment outcome.
        """
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError:
            raise ValidationError("Malformed webhook payload", field="payload")
        except stripe.SignatureVerificationError:
            raise ValidationError("Invalid webhook signature", field="stripe-signature")

        outcome = EVENT_OUTCOMES.get(event["type"])
        if outcome is None:
            logger.debug("Ignoring Stripe event %s (%s)", event["id"], event["type"])
            return None

        intent = event["data"]["object"]
        failure_reason = None
        last_error = intent.get("last_payment_error")
        if last_error:
            failure_reason = last_error.get("message")
        elif outcome == GatewayOutcome.CANCELED:
            failure_reason = intent.get("cancellation_reason") or "Payment canceled"

        return GatewayEvent(
            event_id=event["id"],
            event_type=event["type"],
            intent_id=intent["id"],
            outcome=outcome,
            metadata=dict(intent.get("metadata") or {}),
            transaction_ref=intent.get("latest_charge"),
            failure_reason=failure_reason,
        )


_gateway: Optional[StripeGateway] = None


def get_payment_gateway() -> PaymentGateway:
    """FastAPI dependency: process-wide Stripe gateway."""
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway()
    return _gateway
