"""
Stripe adapter (embedded payment flow)

The client confirms the PaymentIntent with Stripe.js; the server creates it,
reads it back, refunds it and authenticates Stripe's webhooks.
"""

from decimal import Decimal
from typing import Any, Dict, Mapping, Optional
import asyncio
import json
import logging

import stripe

from tourpay.core.exceptions import ConfigurationError, GatewayError, SecurityError
from tourpay.gateways.base import (
    PaymentGateway,
    Payer,
    GatewayInitResult,
    GatewayResult,
    RefundResult,
    get_header,
    to_minor_units,
)
from tourpay.models.payment import PaymentGatewayType
from tourpay.schemas.gateway import EventKind, GatewayStatus, StripeSnapshot, WebhookEvent

logger = logging.getLogger(__name__)

EVENT_KINDS = {
    "payment_intent.succeeded": EventKind.SUCCEEDED,
    "payment_intent.payment_failed": EventKind.FAILED,
    "payment_intent.canceled": EventKind.CANCELED,
    "payment_intent.processing": EventKind.PROCESSING,
    "charge.dispute.created": EventKind.DISPUTED,
}

ALREADY_REFUNDED_CODES = {"charge_already_refunded"}


def _field(source: Any, key: str) -> Any:
    if isinstance(source, dict):
        return source.get(key)
    return getattr(source, key, None)


def _error_message(error: Any) -> Optional[str]:
    if not error:
        return None
    return _field(error, "message") or _field(error, "code") or "payment failed"


def map_intent_status(status: str, last_payment_error: Any = None) -> GatewayStatus:
    if status == "succeeded":
        return GatewayStatus.SUCCEEDED
    if status == "processing":
        return GatewayStatus.PROCESSING
    if status == "canceled":
        return GatewayStatus.CANCELED
    if status == "requires_payment_method" and last_payment_error:
        return GatewayStatus.FAILED
    return GatewayStatus.PENDING


def intent_snapshot(intent: Any) -> StripeSnapshot:
    """Snapshot from a PaymentIntent, either a StripeObject or webhook JSON"""
    latest_charge = _field(intent, "latest_charge")
    if latest_charge is not None and not isinstance(latest_charge, str):
        latest_charge = _field(latest_charge, "id")
    return StripeSnapshot(
        payment_intent_id=_field(intent, "id"),
        status=_field(intent, "status") or "unknown",
        amount=_field(intent, "amount"),
        currency=_field(intent, "currency"),
        last_payment_error=_error_message(_field(intent, "last_payment_error")),
        latest_charge=latest_charge,
    )


class StripeGateway(PaymentGateway):
    gateway_type = PaymentGatewayType.STRIPE

    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str],
        timeout: float,
        tolerance: int = 300,
    ):
        super().__init__(timeout)
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    def _require_secret_key(self):
        if not self.secret_key:
            logger.error("Stripe secret key is not configured")
            raise ConfigurationError("STRIPE_SECRET_KEY")

    async def _request(self, operation: str, func, *args, **params) -> Any:
        self._require_secret_key()
        try:
            return await self._bounded(
                operation,
                lambda: asyncio.to_thread(func, *args, api_key=self.secret_key, **params)
            )
        except stripe.StripeError as e:
            message = e.user_message or str(e)
            logger.error(
                f"Stripe {operation} failed: {message}",
                extra={"gateway": "stripe", "operation": operation, "stripe_code": e.code}
            )
            raise GatewayError("stripe", message)

    async def initialize(
        self,
        amount: Decimal,
        currency: str,
        payer: Payer,
        metadata: Dict[str, str],
        return_url: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> GatewayInitResult:
        params: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if payer.email:
            params["receipt_email"] = payer.email

        intent = await self._request("initialize", stripe.PaymentIntent.create, **params)
        return GatewayInitResult(
            external_ref=intent.id,
            client_secret=intent.client_secret,
            snapshot=intent_snapshot(intent),
            raw=str(intent),
        )

    async def confirm(self, external_ref: str) -> GatewayResult:
        intent = await self._request("confirm", stripe.PaymentIntent.retrieve, external_ref)
        snapshot = intent_snapshot(intent)
        return GatewayResult(
            status=map_intent_status(snapshot.status, snapshot.last_payment_error),
            snapshot=snapshot,
            raw=str(intent),
            failure_reason=snapshot.last_payment_error,
        )

    async def verify(self, external_ref: str) -> GatewayResult:
        return await self.confirm(external_ref)

    async def refund(self, external_ref: str, amount: Optional[Decimal] = None) -> RefundResult:
        params: Dict[str, Any] = {
            "payment_intent": external_ref,
            "idempotency_key": f"refund-{external_ref}",
        }
        if amount is not None:
            params["amount"] = to_minor_units(amount)

        self._require_secret_key()
        try:
            refund = await self._bounded(
                "refund",
                lambda: asyncio.to_thread(stripe.Refund.create, api_key=self.secret_key, **params)
            )
        except stripe.InvalidRequestError as e:
            if e.code in ALREADY_REFUNDED_CODES:
                logger.info(f"Stripe reports {external_ref} already refunded")
                return RefundResult(refund_id=None, status="succeeded", amount=amount, already_refunded=True)
            raise GatewayError("stripe", e.user_message or str(e))
        except stripe.StripeError as e:
            logger.error(f"Stripe refund failed for {external_ref}: {e}")
            raise GatewayError("stripe", e.user_message or str(e))

        refunded_minor = _field(refund, "amount")
        return RefundResult(
            refund_id=refund.id,
            status=_field(refund, "status") or "pending",
            amount=Decimal(refunded_minor) / 100 if refunded_minor is not None else amount,
        )

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        if not self.webhook_secret:
            logger.error("Stripe webhook secret is not configured")
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET")

        signature = get_header(headers, "stripe-signature")
        if not signature:
            raise SecurityError("missing Stripe-Signature header")
        if not signature.isascii():
            raise SecurityError("Stripe-Signature header is not ASCII")

        try:
            stripe.Webhook.construct_event(
                raw_body, signature, self.webhook_secret, tolerance=self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise SecurityError(f"invalid Stripe signature: {e}")
        except ValueError as e:
            raise SecurityError(f"malformed Stripe payload: {e}", status_code=400)

        try:
            payload = json.loads(raw_body)
            event_type = payload["type"]
            obj = payload["data"]["object"]
        except (ValueError, KeyError, TypeError) as e:
            raise SecurityError(f"malformed Stripe event: {e}", status_code=400)

        kind = EVENT_KINDS.get(event_type, EventKind.OTHER)
        raw = raw_body.decode("utf-8", errors="replace") if isinstance(raw_body, bytes) else raw_body

        if kind == EventKind.DISPUTED:
            return WebhookEvent(
                gateway="stripe",
                event_id=payload.get("id"),
                event_type=event_type,
                kind=kind,
                external_ref=obj.get("payment_intent"),
                failure_reason=obj.get("reason"),
                raw=raw,
            )

        if obj.get("object") != "payment_intent":
            return WebhookEvent(
                gateway="stripe",
                event_id=payload.get("id"),
                event_type=event_type,
                kind=EventKind.OTHER,
                raw=raw,
            )

        snapshot = intent_snapshot(obj)
        return WebhookEvent(
            gateway="stripe",
            event_id=payload.get("id"),
            event_type=event_type,
            kind=kind,
            external_ref=snapshot.payment_intent_id,
            failure_reason=snapshot.last_payment_error,
            snapshot=snapshot,
            raw=raw,
        )
