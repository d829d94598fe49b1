"""
Notification service

Fire-and-forget: messages are queued into the notifications outbox after the
business transaction has committed. A failure here is logged and never
propagates to the booking or payment flow.
"""

from typing import Any, Dict, Optional, Set
from uuid import UUID
import asyncio
import logging

from tourpay.core.database import db_manager
from tourpay.models.booking import Booking
from tourpay.models.payment import Payment
from tourpay.models.notification import Notification, NotificationType

logger = logging.getLogger(__name__)


class NotificationService:
    """Queues user messages and admin alerts"""

    def __init__(self):
        self._pending: Set[asyncio.Task] = set()

    def dispatch(
        self,
        notification_type: NotificationType,
        subject: str,
        content: str,
        user_id: Optional[UUID] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> asyncio.Task:
        """Schedule a notification without waiting for it"""
        task = asyncio.create_task(
            self._enqueue(notification_type, subject, content, user_id, payload)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self):
        """Wait for every scheduled notification (shutdown, tests)"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _enqueue(
        self,
        notification_type: NotificationType,
        subject: str,
        content: str,
        user_id: Optional[UUID],
        payload: Optional[Dict[str, Any]],
    ):
        try:
            async with db_manager.atomic_transaction() as session:
                session.add(Notification(
                    user_id=user_id,
                    type=notification_type,
                    subject=subject,
                    content=content,
                    payload=payload,
                ))
            logger.info(
                "Notification queued",
                extra={"notification_type": notification_type.value, "user_id": str(user_id) if user_id else None}
            )
        except Exception:
            logger.exception(f"Failed to queue {notification_type.value} notification")

    def booking_confirmed(self, booking: Booking):
        self.dispatch(
            NotificationType.BOOKING_CONFIRMED,
            f"Booking {booking.booking_number} confirmed",
            f"Your booking {booking.booking_number} from {booking.start_date} to {booking.end_date} is confirmed.",
            user_id=booking.user_id,
            payload={"booking_id": str(booking.id), "booking_number": booking.booking_number},
        )

    def booking_cancelled(self, booking: Booking):
        self.dispatch(
            NotificationType.BOOKING_CANCELLED,
            f"Booking {booking.booking_number} cancelled",
            f"Your booking {booking.booking_number} has been cancelled.",
            user_id=booking.user_id,
            payload={"booking_id": str(booking.id), "booking_number": booking.booking_number},
        )

    def payment_failed(self, payment: Payment, booking: Optional[Booking] = None):
        reference = booking.booking_number if booking else payment.external_ref
        self.dispatch(
            NotificationType.PAYMENT_FAILED,
            f"Payment for {reference} failed",
            f"We could not process your payment for {reference}: {payment.failure_reason or 'payment failed'}.",
            user_id=payment.user_id,
            payload={"payment_id": str(payment.id), "booking_id": str(payment.booking_id) if payment.booking_id else None},
        )

    def payment_refunded(self, payment: Payment, booking: Optional[Booking] = None):
        reference = booking.booking_number if booking else payment.external_ref
        self.dispatch(
            NotificationType.PAYMENT_REFUNDED,
            f"Refund for {reference}",
            f"{payment.refund_amount} {payment.currency} has been refunded for {reference}.",
            user_id=payment.user_id,
            payload={"payment_id": str(payment.id), "refund_amount": str(payment.refund_amount)},
        )

    def admin_alert(self, subject: str, payload: Dict[str, Any]):
        logger.warning(f"Admin alert: {subject}", extra={"alert": payload})
        self.dispatch(
            NotificationType.ADMIN_ALERT,
            subject,
            subject,
            payload=payload,
        )


notification_service = NotificationService()
