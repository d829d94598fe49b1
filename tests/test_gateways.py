"""
Gateway adapters: status mapping, Chapa HTTP calls and time budgets
"""

import asyncio
import json
from decimal import Decimal
import httpx
import pytest
import stripe

from tourpay.core.exceptions import (
    ConfigurationError,
    GatewayError,
    GatewayTimeoutError,
    SecurityError,
    ValidationError,
)
from tourpay.gateways import ChapaGateway, StripeGateway, GatewayRegistry
from tourpay.gateways.base import Payer, get_header, to_minor_units
from tourpay.gateways.chapa_gateway import generate_tx_ref
from tourpay.gateways.stripe_gateway import intent_snapshot, map_intent_status
from tourpay.models.payment import PaymentGatewayType
from tourpay.schemas.gateway import EventKind, GatewayStatus, snapshot_adapter

from tests.factories import chapa_signature, stripe_event, stripe_signature

PAYER = Payer(email="payer@example.com", first_name="Abebe", last_name="Kebede")


def chapa(handler, timeout: float = 5, secret_key: str = "CHASECK_TEST-dummy") -> ChapaGateway:
    return ChapaGateway(
        secret_key=secret_key,
        webhook_secret="chapa_test_secret",
        base_url="https://api.chapa.co/v1",
        timeout=timeout,
        checkout_title="TourPay",
        transport=httpx.MockTransport(handler),
    )


class TestHelpers:

    def test_minor_units(self):
        assert to_minor_units(Decimal("500.00")) == 50000
        assert to_minor_units(Decimal("19.99")) == 1999

    def test_header_lookup_is_case_insensitive(self):
        assert get_header({"X-Chapa-Signature": "abc"}, "x-chapa-signature") == "abc"
        assert get_header({}, "stripe-signature") is None

    def test_tx_ref_shape(self):
        assert generate_tx_ref().startswith("CHAPA-")
        assert generate_tx_ref() != generate_tx_ref()

    def test_registry_rejects_unknown_gateway(self):
        with pytest.raises(ValueError):
            GatewayRegistry().get(PaymentGatewayType.STRIPE)

    def test_snapshot_union_discriminates(self):
        snapshot = snapshot_adapter.validate_python({"gateway": "chapa", "tx_ref": "CHAPA-1", "status": "success"})
        assert snapshot.tx_ref == "CHAPA-1"


class TestStripeMapping:

    @pytest.mark.parametrize("status,error,expected", [
        ("succeeded", None, GatewayStatus.SUCCEEDED),
        ("processing", None, GatewayStatus.PROCESSING),
        ("canceled", None, GatewayStatus.CANCELED),
        ("requires_payment_method", "Card declined", GatewayStatus.FAILED),
        ("requires_payment_method", None, GatewayStatus.PENDING),
        ("requires_action", None, GatewayStatus.PENDING),
    ])
    def test_intent_status(self, status, error, expected):
        assert map_intent_status(status, error) == expected

    def test_snapshot_from_webhook_json(self):
        intent = {
            "id": "pi_1",
            "status": "requires_payment_method",
            "amount": 1999,
            "currency": "usd",
            "last_payment_error": {"message": "Insufficient funds"},
            "latest_charge": {"id": "ch_1"},
        }
        snapshot = intent_snapshot(intent)
        assert snapshot.payment_intent_id == "pi_1"
        assert snapshot.last_payment_error == "Insufficient funds"
        assert snapshot.latest_charge == "ch_1"

    def test_parse_dispute(self):
        gateway = StripeGateway(secret_key="sk_test", webhook_secret="whsec_test_secret", timeout=5)
        body = json.dumps({
            "id": "evt_1",
            "type": "charge.dispute.created",
            "data": {"object": {"id": "dp_1", "object": "dispute", "payment_intent": "pi_9", "reason": "fraudulent"}},
        }).encode()

        event = gateway.parse_webhook(body, {"stripe-signature": stripe_signature(body)})

        assert event.kind == EventKind.DISPUTED
        assert event.external_ref == "pi_9"
        assert event.failure_reason == "fraudulent"

    def test_parse_succeeded(self):
        gateway = StripeGateway(secret_key="sk_test", webhook_secret="whsec_test_secret", timeout=5)
        body = stripe_event("payment_intent.succeeded", "pi_2", "succeeded")

        event = gateway.parse_webhook(body, {"Stripe-Signature": stripe_signature(body)})

        assert event.kind == EventKind.SUCCEEDED
        assert event.snapshot.amount == 50000

    def test_missing_webhook_secret(self):
        gateway = StripeGateway(secret_key="sk_test", webhook_secret="", timeout=5)
        with pytest.raises(ConfigurationError):
            gateway.parse_webhook(b"{}", {"stripe-signature": "t=1,v1=abc"})

    def test_garbage_signature_header(self):
        gateway = StripeGateway(secret_key="sk_test", webhook_secret="whsec_test_secret", timeout=5)
        with pytest.raises(SecurityError) as exc_info:
            gateway.parse_webhook(b"{}", {"stripe-signature": "garbage"})
        assert exc_info.value.status_code == 401

    def test_non_ascii_signature_header(self):
        gateway = StripeGateway(secret_key="sk_test", webhook_secret="whsec_test_secret", timeout=5)
        with pytest.raises(SecurityError) as exc_info:
            gateway.parse_webhook(b"{}", {"stripe-signature": "t=1,v1=" + "\u00e9" * 64})
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_refund_repeat_is_success(self, monkeypatch):
        def already_refunded(**params):
            assert params["idempotency_key"] == "refund-pi_7"
            raise stripe.InvalidRequestError(
                "Charge ch_7 has already been refunded.", None, code="charge_already_refunded"
            )

        monkeypatch.setattr(stripe.Refund, "create", already_refunded)
        gateway = StripeGateway(secret_key="sk_test", webhook_secret="whsec_test_secret", timeout=5)

        result = await gateway.refund("pi_7", Decimal("20.00"))

        assert result.already_refunded
        assert result.amount == Decimal("20.00")

    @pytest.mark.asyncio
    async def test_refund_rejection_is_gateway_error(self, monkeypatch):
        def rejected(**params):
            raise stripe.InvalidRequestError("No such payment_intent: pi_8", "payment_intent", code="resource_missing")

        monkeypatch.setattr(stripe.Refund, "create", rejected)
        gateway = StripeGateway(secret_key="sk_test", webhook_secret="whsec_test_secret", timeout=5)

        with pytest.raises(GatewayError):
            await gateway.refund("pi_8")

    @pytest.mark.asyncio
    async def test_missing_secret_key(self):
        gateway = StripeGateway(secret_key="", webhook_secret="whsec", timeout=5)
        with pytest.raises(ConfigurationError):
            await gateway.confirm("pi_1")


class TestChapaInitialize:

    @pytest.mark.asyncio
    async def test_returns_checkout_url(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "status": "success",
                "message": "Hosted Link",
                "data": {"checkout_url": "https://checkout.chapa.co/checkout/payment/abc"},
            })

        result = await chapa(handler).initialize(
            Decimal("500.00"), "ETB", PAYER, {"booking_number": "BK00000000001"},
            return_url="https://app.example/return", callback_url="https://api.example/callback",
        )

        assert result.checkout_url == "https://checkout.chapa.co/checkout/payment/abc"
        assert result.external_ref.startswith("CHAPA-")
        assert result.snapshot.tx_ref == result.external_ref
        assert seen["path"] == "/v1/transaction/initialize"
        assert seen["auth"] == "Bearer CHASECK_TEST-dummy"
        assert seen["body"]["tx_ref"] == result.external_ref
        assert seen["body"]["customization"] == {"title": "TourPay", "description": "Booking BK00000000001"}

    @pytest.mark.asyncio
    async def test_requires_payer_names(self):
        def handler(request):
            raise AssertionError("no request expected")

        with pytest.raises(ValidationError):
            await chapa(handler).initialize(Decimal("10"), "ETB", Payer(email="a@example.com"), {})

    @pytest.mark.asyncio
    async def test_rejection_surfaces_processor_message(self):
        def handler(request):
            return httpx.Response(400, json={"status": "failed", "message": "Invalid currency"})

        with pytest.raises(GatewayError) as exc_info:
            await chapa(handler).initialize(Decimal("10"), "XXX", PAYER, {})
        assert exc_info.value.processor_message == "Invalid currency"
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_transport_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(GatewayTimeoutError):
            await chapa(handler).initialize(Decimal("10"), "ETB", PAYER, {})

    @pytest.mark.asyncio
    async def test_time_budget_enforced(self):
        async def handler(request):
            await asyncio.sleep(1)
            return httpx.Response(200, json={"status": "success", "data": {}})

        with pytest.raises(GatewayTimeoutError) as exc_info:
            await chapa(handler, timeout=0.05).initialize(Decimal("10"), "ETB", PAYER, {})
        assert exc_info.value.status_code == 504

    @pytest.mark.asyncio
    async def test_missing_secret_key(self):
        with pytest.raises(ConfigurationError):
            await chapa(lambda request: httpx.Response(200), secret_key="").verify("CHAPA-1")


class TestChapaVerifyAndRefund:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("chapa_status,expected", [
        ("success", GatewayStatus.SUCCEEDED),
        ("failed", GatewayStatus.FAILED),
        ("pending", GatewayStatus.PENDING),
        ("something-new", GatewayStatus.PENDING),
    ])
    async def test_verify_maps_status(self, chapa_status, expected):
        def handler(request):
            assert request.url.path == "/v1/transaction/verify/CHAPA-1"
            return httpx.Response(200, json={
                "status": "success",
                "message": "Payment details",
                "data": {"tx_ref": "CHAPA-1", "status": chapa_status, "amount": "500.00", "currency": "ETB"},
            })

        result = await chapa(handler).check("CHAPA-1")

        assert result.status == expected
        assert result.snapshot.amount == Decimal("500.00")

    @pytest.mark.asyncio
    async def test_refund(self):
        def handler(request):
            assert request.url.path == "/v1/refund/CHAPA-1"
            assert json.loads(request.content)["amount"] == "100.00"
            return httpx.Response(200, json={"status": "success", "data": {"ref_id": "RF-1", "amount": "100.00"}})

        result = await chapa(handler).refund("CHAPA-1", Decimal("100.00"))

        assert result.refund_id == "RF-1"
        assert result.amount == Decimal("100.00")
        assert not result.already_refunded

    @pytest.mark.asyncio
    async def test_refund_repeat_is_success(self):
        def handler(request):
            return httpx.Response(400, json={"status": "failed", "message": "Transaction already refunded"})

        result = await chapa(handler).refund("CHAPA-1")

        assert result.already_refunded

    def test_webhook_without_tx_ref_has_no_snapshot(self):
        body = json.dumps({"event": "charge.success", "status": "success"}).encode()
        event = chapa(lambda request: httpx.Response(200)).parse_webhook(
            body, {"x-chapa-signature": chapa_signature(body)}
        )
        assert event.external_ref is None
        assert event.snapshot is None
