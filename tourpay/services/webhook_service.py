"""
Webhook ingestion and reconciliation

Turns an authenticated gateway delivery into at most one payment transition.
Deliveries may be duplicated, reordered or forged; the answer tells the
gateway whether to retry.
"""

from typing import Mapping, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tourpay.core.exceptions import ConfigurationError, SecurityError
from tourpay.core.metrics import metrics_collector
from tourpay.gateways import gateway_registry
from tourpay.gateways.base import GatewayRegistry
from tourpay.models.payment import PaymentGatewayType, PaymentStatus
from tourpay.schemas.gateway import EventKind, WebhookAck, WebhookEvent
from tourpay.services.audit_service import audit_service
from tourpay.services.notification_service import notification_service
from tourpay.services.payment_service import payment_service as default_payment_service, PaymentService

logger = logging.getLogger(__name__)

EVENT_TO_PAYMENT_STATUS = {
    EventKind.SUCCEEDED: PaymentStatus.COMPLETED,
    EventKind.FAILED: PaymentStatus.FAILED,
    EventKind.CANCELED: PaymentStatus.FAILED,
    EventKind.PROCESSING: PaymentStatus.PROCESSING,
}


class WebhookService:

    def __init__(
        self,
        gateways: Optional[GatewayRegistry] = None,
        payments: Optional[PaymentService] = None,
    ):
        self.gateways = gateways or gateway_registry
        self.payments = payments or default_payment_service

    async def ingest(
        self,
        db: AsyncSession,
        raw_body: bytes,
        headers: Mapping[str, str],
        gateway: PaymentGatewayType,
    ) -> WebhookAck:
        gateway = PaymentGatewayType(gateway)
        adapter = self.gateways.get(gateway)

        try:
            event = adapter.parse_webhook(raw_body, headers)
        except ConfigurationError as e:
            logger.error(f"{gateway.value} webhook rejected: {e.setting} is not configured")
            metrics_collector.record_webhook(gateway.value, "misconfigured")
            return WebhookAck(status_code=500, body={"received": False, "error": e.message})
        except SecurityError as e:
            logger.warning(
                f"{gateway.value} webhook verification failed: {e.reason}",
                extra={"gateway": gateway.value, "reason": e.reason, "status_code": e.status_code}
            )
            metrics_collector.record_webhook(gateway.value, "rejected")
            await audit_service.record_standalone(
                "webhook.verification_failed",
                "webhook",
                outcome="failure",
                details={"gateway": gateway.value, "reason": e.reason, "status_code": e.status_code}
            )
            return WebhookAck(status_code=e.status_code, body={"received": False, "error": e.message})

        try:
            return await self._reconcile(db, gateway, event)
        except SQLAlchemyError:
            logger.exception(
                f"{gateway.value} webhook could not be applied",
                extra={"gateway": gateway.value, "event_type": event.event_type, "external_ref": event.external_ref}
            )
            metrics_collector.record_webhook(gateway.value, "error")
            return WebhookAck(status_code=500, body={"received": False, "error": "Internal error"})

    async def _reconcile(self, db: AsyncSession, gateway: PaymentGatewayType, event: WebhookEvent) -> WebhookAck:
        details = {
            "gateway": gateway.value,
            "event_id": event.event_id,
            "event_type": event.event_type,
            "kind": event.kind.value,
            "external_ref": event.external_ref,
            "verified": True,
        }

        if event.kind == EventKind.OTHER:
            logger.info(f"Ignoring {gateway.value} event {event.event_type}", extra=details)
            metrics_collector.record_webhook(gateway.value, "ignored")
            await audit_service.record_standalone("webhook.ignored", "webhook", details=details)
            return WebhookAck(status_code=200, body={"received": True, "ignored": True})

        payment = None
        if event.external_ref:
            payment = await self.payments.find_by_external_ref(db, gateway, event.external_ref)

        if payment is None:
            # A retry cannot make the reference findable
            logger.warning(f"{gateway.value} webhook for unknown reference", extra=details)
            metrics_collector.record_webhook(gateway.value, "unknown_reference")
            await audit_service.record_standalone(
                "webhook.unknown_reference", "webhook", outcome="ignored", details=details
            )
            return WebhookAck(status_code=200, body={"received": True, "matched": False})

        if event.kind == EventKind.DISPUTED:
            metrics_collector.record_webhook(gateway.value, "disputed")
            await audit_service.record_standalone(
                "payment.disputed", "payment", entity_id=payment.id, details={**details, "reason": event.failure_reason}
            )
            notification_service.admin_alert(
                "Payment disputed",
                {
                    "payment_id": str(payment.id),
                    "booking_id": str(payment.booking_id) if payment.booking_id else None,
                    "external_ref": payment.external_ref,
                    "gateway": gateway.value,
                    "reason": event.failure_reason,
                }
            )
            return WebhookAck(status_code=200, body={"received": True, "disputed": True})

        outcome = await self.payments.apply_gateway_status(
            db,
            payment.id,
            EVENT_TO_PAYMENT_STATUS[event.kind],
            snapshot=event.snapshot,
            raw=event.raw,
            failure_reason=event.failure_reason,
            source=f"webhook:{event.event_type}",
            audit_details=details,
        )

        if not outcome.changed:
            # Duplicate or out-of-order delivery still counts as handled
            await audit_service.record_standalone(
                "webhook.no_op",
                "payment",
                entity_id=payment.id,
                outcome="ignored",
                details={**details, "payment_status": PaymentStatus(outcome.payment.status).value}
            )

        metrics_collector.record_webhook(gateway.value, "applied" if outcome.changed else "no_op")
        return WebhookAck(
            status_code=200,
            body={
                "received": True,
                "applied": outcome.changed,
                "payment_status": PaymentStatus(outcome.payment.status).value,
            }
        )


webhook_service = WebhookService()
