"""Tests for StripeGateway request building and webhook normalisation."""

import hashlib
import hmac
import json
import time
from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe

from greia_platform.domain.enums import GatewayOutcome
from greia_platform.domain.errors import PaymentGatewayError, ValidationError
from greia_platform.infra.stripe_gateway import StripeGateway, to_minor_units

SECRET = "whsec_test_secret"


def _signed(event: dict, secret: str = SECRET) -> tuple[bytes, str]:
    payload = json.dumps(event).encode()
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return payload, f"t={timestamp},v1={signature}"


def _intent_event(event_type="payment_intent.succeeded", **intent_fields):
    intent = {
        "id": "pi_123",
        "object": "payment_intent",
        "metadata": {"commission_id": "c-1"},
        "latest_charge": "ch_123",
        "last_payment_error": None,
    }
    intent.update(intent_fields)
    return {
        "id": "evt_123",
        "object": "event",
        "type": event_type,
        "data": {"object": intent},
    }


@pytest.fixture
def gateway():
    return StripeGateway(api_key="sk_test_123", webhook_secret=SECRET, timeout_seconds=5)


class TestMinorUnits:
    @pytest.mark.parametrize(
        "amount,expected",
        [(Decimal("15000.00"), 1500000), (Decimal("0.05"), 5), (Decimal("10.005"), 1001)],
    )
    def test_to_minor_units(self, amount, expected):
        assert to_minor_units(amount) == expected


class TestCreatePaymentIntent:
    async def test_destination_charge_with_idempotency_key(self, gateway, monkeypatch):
        captured = {}

        def fake_create(**kwargs):
            captured.update(kwargs)
            return SimpleNamespace(id="pi_new", status="requires_payment_method")

        monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)

        result = await gateway.create_payment_intent(
            amount=Decimal("15000.00"),
            currency="gbp",
            destination="acct_agent",
            metadata={"commission_id": "c-1"},
            idempotency_key="commission-c-1-attempt-1",
        )

        assert result.intent_id == "pi_new"
        assert captured["amount"] == 1500000
        assert captured["transfer_data"] == {"destination": "acct_agent"}
        assert captured["idempotency_key"] == "commission-c-1-attempt-1"
        assert captured["api_key"] == "sk_test_123"

    async def test_stripe_error_becomes_gateway_error(self, gateway, monkeypatch):
        def fake_create(**kwargs):
            raise stripe.CardError("Your card was declined.", None, "card_declined")

        monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)

        with pytest.raises(PaymentGatewayError) as exc_info:
            await gateway.create_payment_intent(
                amount=Decimal("1.00"), currency="gbp", destination="acct_agent",
                metadata={}, idempotency_key="k",
            )
        assert exc_info.value.decline_code == "card_declined"
        assert "declined" in exc_info.value.message


class TestParseWebhook:
    def test_succeeded(self, gateway):
        payload, header = _signed(_intent_event())

        event = gateway.parse_webhook(payload, header)

        assert event.event_id == "evt_123"
        assert event.intent_id == "pi_123"
        assert event.outcome == GatewayOutcome.SUCCEEDED
        assert event.metadata == {"commission_id": "c-1"}
        assert event.transaction_ref == "ch_123"

    def test_failed_carries_reason(self, gateway):
        payload, header = _signed(_intent_event(
            "payment_intent.payment_failed",
            last_payment_error={"message": "Destination account is restricted"},
        ))

        event = gateway.parse_webhook(payload, header)

        assert event.outcome == GatewayOutcome.FAILED
        assert event.failure_reason == "Destination account is restricted"

    def test_canceled_without_error(self, gateway):
        payload, header = _signed(_intent_event("payment_intent.canceled", cancellation_reason="abandoned"))

        event = gateway.parse_webhook(payload, header)

        assert event.outcome == GatewayOutcome.CANCELED
        assert event.failure_reason == "abandoned"

    def test_unrelated_event_ignored(self, gateway):
        payload, header = _signed(_intent_event("payment_intent.created"))
        assert gateway.parse_webhook(payload, header) is None

    def test_bad_signature(self, gateway):
        payload, header = _signed(_intent_event(), secret="whsec_someone_else")
        with pytest.raises(ValidationError):
            gateway.parse_webhook(payload, header)
