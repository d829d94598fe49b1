"""
Chapa adapter (hosted checkout redirect flow)
"""

from decimal import Decimal
from typing import Any, Dict, Mapping, Optional
import hashlib
import hmac
import json
import logging
import secrets
import time

import httpx

from tourpay.core.exceptions import (
    ConfigurationError,
    GatewayError,
    GatewayTimeoutError,
    SecurityError,
    ValidationError,
)
from tourpay.gateways.base import (
    PaymentGateway,
    Payer,
    GatewayInitResult,
    GatewayResult,
    RefundResult,
    get_header,
)
from tourpay.models.payment import PaymentGatewayType
from tourpay.schemas.gateway import ChapaSnapshot, EventKind, GatewayStatus, WebhookEvent

logger = logging.getLogger(__name__)

EVENT_KINDS = {
    "charge.success": EventKind.SUCCEEDED,
    "charge.failed": EventKind.FAILED,
    "charge.cancelled": EventKind.CANCELED,
    "charge.canceled": EventKind.CANCELED,
}

STATUS_MAP = {
    "success": GatewayStatus.SUCCEEDED,
    "failed": GatewayStatus.FAILED,
    "cancelled": GatewayStatus.CANCELED,
    "canceled": GatewayStatus.CANCELED,
    "pending": GatewayStatus.PENDING,
}

SIGNATURE_HEADERS = ("x-chapa-signature", "chapa-signature")


def generate_tx_ref() -> str:
    return f"CHAPA-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def sign_payload(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def _decimal(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except ArithmeticError:
        return None


class ChapaGateway(PaymentGateway):
    gateway_type = PaymentGatewayType.CHAPA

    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str],
        base_url: str,
        timeout: float,
        checkout_title: str = "TourPay",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout)
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.base_url = base_url.rstrip("/")
        self.checkout_title = checkout_title
        self.transport = transport

    async def _send(self, operation: str, method: str, path: str, payload: Optional[Dict] = None) -> Dict[str, Any]:
        """
        One authenticated call to the Chapa API.

        Returns the decoded body; a non-success body raises GatewayError with
        Chapa's message unless the caller handles it.
        """
        if not self.secret_key:
            logger.error("Chapa secret key is not configured")
            raise ConfigurationError("CHAPA_SECRET_KEY")

        async def call():
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self.transport,
                headers={"Authorization": f"Bearer {self.secret_key}"},
            ) as client:
                response = await client.request(method, path, json=payload)
                try:
                    body = response.json()
                except ValueError:
                    body = {"status": "failed", "message": response.text}
                if response.is_error and body.get("status") == "success":
                    body["status"] = "failed"
                return body

        try:
            return await self._bounded(operation, call)
        except httpx.TimeoutException:
            logger.error("Chapa call timed out", extra={"gateway": "chapa", "operation": operation})
            raise GatewayTimeoutError("chapa", operation)
        except httpx.HTTPError as e:
            logger.error(f"Chapa {operation} transport error: {e}")
            raise GatewayError("chapa", str(e))

    @staticmethod
    def _message(body: Dict[str, Any]) -> str:
        message = body.get("message")
        if isinstance(message, dict):
            return json.dumps(message)
        return message or "unknown error"

    async def initialize(
        self,
        amount: Decimal,
        currency: str,
        payer: Payer,
        metadata: Dict[str, str],
        return_url: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> GatewayInitResult:
        if not (payer.email and payer.first_name and payer.last_name):
            raise ValidationError(
                "Chapa payments require payer email, first name and last name",
                field="email"
            )

        tx_ref = generate_tx_ref()
        payload = {
            "amount": str(amount),
            "currency": currency,
            "email": payer.email,
            "first_name": payer.first_name,
            "last_name": payer.last_name,
            "tx_ref": tx_ref,
            "callback_url": callback_url,
            "return_url": return_url,
            "customization": {
                "title": self.checkout_title,
                "description": metadata.get("description") or f"Booking {metadata.get('booking_number', '')}".strip(),
            },
            "meta": metadata,
        }
        if payer.phone_number:
            payload["phone_number"] = payer.phone_number

        body = await self._send("initialize", "POST", "/transaction/initialize", payload)
        if body.get("status") != "success":
            message = self._message(body)
            logger.error(f"Chapa initialize rejected: {message}", extra={"tx_ref": tx_ref})
            raise GatewayError("chapa", message)

        checkout_url = (body.get("data") or {}).get("checkout_url")
        return GatewayInitResult(
            external_ref=tx_ref,
            checkout_url=checkout_url,
            snapshot=ChapaSnapshot(
                tx_ref=tx_ref,
                status="pending",
                checkout_url=checkout_url,
                amount=_decimal(amount),
                currency=currency,
                message=self._message(body),
            ),
            raw=json.dumps(body),
        )

    async def verify(self, external_ref: str) -> GatewayResult:
        body = await self._send("verify", "GET", f"/transaction/verify/{external_ref}")
        data = body.get("data") or {}
        if body.get("status") != "success" and not data:
            raise GatewayError("chapa", self._message(body))

        gateway_status = str(data.get("status") or "pending").lower()
        status = STATUS_MAP.get(gateway_status, GatewayStatus.PENDING)
        return GatewayResult(
            status=status,
            snapshot=ChapaSnapshot(
                tx_ref=data.get("tx_ref") or external_ref,
                status=gateway_status,
                reference=data.get("reference"),
                amount=_decimal(data.get("amount")),
                currency=data.get("currency"),
                message=self._message(body),
            ),
            raw=json.dumps(body),
            failure_reason=self._message(body) if status == GatewayStatus.FAILED else None,
        )

    async def confirm(self, external_ref: str) -> GatewayResult:
        return await self.verify(external_ref)

    async def check(self, external_ref: str) -> GatewayResult:
        return await self.verify(external_ref)

    async def refund(self, external_ref: str, amount: Optional[Decimal] = None) -> RefundResult:
        payload: Dict[str, Any] = {"reason": "requested_by_admin"}
        if amount is not None:
            payload["amount"] = str(amount)

        body = await self._send("refund", "POST", f"/refund/{external_ref}", payload)
        message = self._message(body)
        if body.get("status") != "success":
            if "already" in message.lower() and "refund" in message.lower():
                logger.info(f"Chapa reports {external_ref} already refunded")
                return RefundResult(refund_id=None, status="succeeded", amount=amount, already_refunded=True, raw=body)
            raise GatewayError("chapa", message)

        data = body.get("data") or {}
        return RefundResult(
            refund_id=data.get("ref_id") or data.get("reference"),
            status=str(data.get("status") or "succeeded"),
            amount=_decimal(data.get("amount")) or amount,
            raw=body,
        )

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        if not self.webhook_secret:
            logger.error("Chapa webhook secret is not configured")
            raise ConfigurationError("CHAPA_WEBHOOK_SECRET")

        signature = get_header(headers, *SIGNATURE_HEADERS)
        if not signature:
            raise SecurityError("missing Chapa signature header")
        if not signature.isascii():
            raise SecurityError("Chapa signature header is not ASCII")

        expected = sign_payload(raw_body, self.webhook_secret)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            raise SecurityError("Chapa signature mismatch")

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise SecurityError(f"malformed Chapa payload: {e}", status_code=400)
        if not isinstance(payload, dict):
            raise SecurityError("malformed Chapa payload: not an object", status_code=400)

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        tx_ref = payload.get("tx_ref") or data.get("tx_ref")
        event_type = str(payload.get("event") or "")
        kind = EVENT_KINDS.get(event_type, EventKind.OTHER)
        gateway_status = str(payload.get("status") or data.get("status") or "").lower()

        snapshot = None
        if tx_ref:
            snapshot = ChapaSnapshot(
                tx_ref=tx_ref,
                status=gateway_status or "unknown",
                reference=payload.get("reference") or data.get("reference"),
                amount=_decimal(payload.get("amount") or data.get("amount")),
                currency=payload.get("currency") or data.get("currency"),
            )

        return WebhookEvent(
            gateway="chapa",
            event_id=payload.get("reference") or data.get("reference"),
            event_type=event_type or "unknown",
            kind=kind,
            external_ref=tx_ref,
            failure_reason=f"Chapa reported {event_type}" if kind in (EventKind.FAILED, EventKind.CANCELED) else None,
            snapshot=snapshot,
            raw=raw_body.decode("utf-8", errors="replace"),
        )
