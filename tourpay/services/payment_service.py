"""
Payment aggregate manager

Gateway I/O always happens between two short transactions and never while
one is open: guards are checked, the processor is called, then the guards
are re-checked under the booking lock before anything is written.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID
import logging

from sqlalchemy import select, func, and_, true
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tourpay.config import settings
from tourpay.core.database import db_manager
from tourpay.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from tourpay.core.metrics import metrics_collector
from tourpay.core.state_machine import next_booking_status, next_payment_status
from tourpay.gateways import gateway_registry
from tourpay.gateways.base import GatewayRegistry, Payer
from tourpay.models.booking import Booking, BookingStatus
from tourpay.models.payment import Payment, PaymentStatus, PaymentGatewayType
from tourpay.schemas.gateway import GatewayStatus, GatewaySnapshot
from tourpay.schemas.payment import PaymentCreate, PaymentQuery, PaymentStats, RefundRequest
from tourpay.schemas.response import PaginationMeta
from tourpay.services.audit_service import audit_service
from tourpay.services.booking_service import stamp_status
from tourpay.services.notification_service import notification_service

logger = logging.getLogger(__name__)

DUPLICATE_CHARGE_REASON = "duplicate charge"

GATEWAY_TO_PAYMENT_STATUS = {
    GatewayStatus.SUCCEEDED: PaymentStatus.COMPLETED,
    GatewayStatus.FAILED: PaymentStatus.FAILED,
    GatewayStatus.CANCELED: PaymentStatus.FAILED,
    GatewayStatus.PROCESSING: PaymentStatus.PROCESSING,
}

UNPAYABLE_BOOKING_STATUSES = (BookingStatus.CANCELLED, BookingStatus.COMPLETED, BookingStatus.REFUNDED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PaymentInitiation:
    payment: Payment
    client_secret: Optional[str] = None
    checkout_url: Optional[str] = None


@dataclass
class PaymentOutcome:
    """Result of applying a gateway-reported status to a payment"""
    payment: Payment
    booking: Optional[Booking]
    changed: bool
    previous_status: PaymentStatus
    duplicate_charge: bool = False


class PaymentService:

    def __init__(self, gateways: Optional[GatewayRegistry] = None):
        self.gateways = gateways or gateway_registry
        self.db_manager = db_manager
        self.logger = logging.getLogger(__name__)

    async def _completed_payment_id(
        self,
        db: AsyncSession,
        booking_id: UUID,
        exclude_payment_id: Optional[UUID] = None
    ) -> Optional[UUID]:
        query = select(Payment.id).where(
            Payment.booking_id == booking_id,
            Payment.status == PaymentStatus.COMPLETED,
        )
        if exclude_payment_id is not None:
            query = query.where(Payment.id != exclude_payment_id)
        result = await db.execute(query.limit(1))
        return result.scalar_one_or_none()

    async def _reload(self, db: AsyncSession, model, row_id: UUID):
        result = await db.execute(
            select(model).where(model.id == row_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _lock_for_payment(self, db: AsyncSession, payment_id: UUID) -> Tuple[Payment, Optional[Booking]]:
        """
        Lock the payment's booking and load both rows fresh.

        booking_id never changes, so it is read before the lock is taken.
        """
        result = await db.execute(select(Payment.booking_id).where(Payment.id == payment_id))
        row = result.first()
        if row is None:
            raise NotFoundError("Payment", payment_id)

        booking_id = row[0]
        if booking_id is not None:
            await self.db_manager.lock_row(db, Booking, booking_id, "lock_version")

        payment = await self._reload(db, Payment, payment_id)
        booking = await self._reload(db, Booking, booking_id) if booking_id is not None else None
        return payment, booking

    async def create_payment(self, db: AsyncSession, data: PaymentCreate, user_id: UUID) -> PaymentInitiation:
        """
        Open a payment at the chosen gateway and record it as PENDING.

        A gateway failure or timeout leaves nothing persisted.
        """
        gateway_type = PaymentGatewayType(data.gateway)
        adapter = self.gateways.get(gateway_type)

        async with self.db_manager.transaction(db):
            booking = await db.get(Booking, data.booking_id)
            if not booking:
                raise NotFoundError("Booking", data.booking_id)
            if booking.user_id != user_id:
                raise ForbiddenError("You do not have permission to pay for this booking")
            self._check_payable(booking)
            if await self._completed_payment_id(db, booking.id):
                raise ConflictError("Booking has already been paid", details={"booking_id": str(booking.id)})
            booking_number = booking.booking_number

        metadata = {
            **data.metadata,
            "booking_id": str(data.booking_id),
            "booking_number": booking_number,
            "user_id": str(user_id),
        }
        init = await adapter.initialize(
            data.amount,
            data.currency,
            Payer(
                email=data.email,
                first_name=data.first_name,
                last_name=data.last_name,
                phone_number=data.phone_number,
            ),
            metadata,
            return_url=data.return_url or f"{settings.CLIENT_URL}/bookings/{data.booking_id}",
            callback_url=data.callback_url,
        )

        async with self.db_manager.transaction(db):
            await self.db_manager.lock_row(db, Booking, data.booking_id, "lock_version")
            booking = await self._reload(db, Booking, data.booking_id)
            self._check_payable(booking)
            if await self._completed_payment_id(db, booking.id):
                self.logger.error(
                    "Booking was paid while a new gateway payment was being opened",
                    extra={"booking_id": str(booking.id), "external_ref": init.external_ref}
                )
                raise ConflictError("Booking has already been paid", details={"booking_id": str(booking.id)})

            payment = Payment(
                user_id=user_id,
                booking_id=booking.id,
                amount=data.amount,
                currency=data.currency,
                gateway=gateway_type,
                external_ref=init.external_ref,
                status=PaymentStatus.PENDING,
                gateway_snapshot=init.snapshot.model_dump(mode="json"),
                gateway_raw=init.raw,
            )
            db.add(payment)
            try:
                await db.flush()
            except IntegrityError:
                raise ConflictError("Gateway reference already recorded", details={"external_ref": init.external_ref})

            audit_service.record(
                db,
                "payment.created",
                "payment",
                payment.id,
                actor_id=user_id,
                new_value={"status": PaymentStatus.PENDING},
                details={
                    "booking_id": booking.id,
                    "gateway": gateway_type,
                    "external_ref": init.external_ref,
                    "amount": data.amount,
                    "currency": data.currency,
                }
            )

        self.logger.info(
            "Payment initialised",
            extra={
                "payment_id": str(payment.id),
                "gateway": gateway_type.value,
                "external_ref": payment.external_ref,
                "user_id": str(user_id),
            }
        )
        return PaymentInitiation(payment=payment, client_secret=init.client_secret, checkout_url=init.checkout_url)

    @staticmethod
    def _check_payable(booking: Booking):
        if booking.status in UNPAYABLE_BOOKING_STATUSES:
            raise ValidationError(f"Cannot pay for booking with status: {booking.status.value}", field="booking_id")

    async def confirm_or_verify_payment(self, db: AsyncSession, payment_id: UUID, user_id: UUID) -> Payment:
        """
        Poll the gateway for a payment the caller owns and apply the result.

        A gateway timeout propagates and leaves the payment untouched.
        """
        async with self.db_manager.transaction(db):
            payment = await db.get(Payment, payment_id)
            if not payment:
                raise NotFoundError("Payment", payment_id)
            if payment.user_id != user_id:
                raise ForbiddenError("You do not have permission to access this payment")
            gateway_type = PaymentGatewayType(payment.gateway)
            external_ref = payment.external_ref
            current = PaymentStatus(payment.status)

        if current in (PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.REFUNDED):
            return payment

        result = await self.gateways.get(gateway_type).check(external_ref)
        target = GATEWAY_TO_PAYMENT_STATUS.get(result.status)
        if target is None:
            return payment

        outcome = await self.apply_gateway_status(
            db,
            payment_id,
            target,
            snapshot=result.snapshot,
            raw=result.raw,
            failure_reason=result.failure_reason,
            source=f"{gateway_type.value}.{'verify' if gateway_type == PaymentGatewayType.CHAPA else 'confirm'}",
            actor_id=user_id,
        )
        return outcome.payment

    async def apply_gateway_status(
        self,
        db: AsyncSession,
        payment_id: UUID,
        target: PaymentStatus,
        snapshot: Optional[GatewaySnapshot] = None,
        raw: Optional[str] = None,
        failure_reason: Optional[str] = None,
        source: str = "gateway",
        actor_id: Optional[UUID] = None,
        audit_details: Optional[Dict[str, Any]] = None,
    ) -> PaymentOutcome:
        """
        Apply a gateway-reported status idempotently.

        Runs in its own transaction holding the booking lock. Disallowed
        transitions (duplicates, out-of-order deliveries) are no-ops.
        Entering COMPLETED confirms the booking; entering FAILED cancels a
        still-PENDING booking. A second success for an already-paid booking
        is recorded as a FAILED duplicate charge and raised to admins.
        """
        duplicate_of = None
        booking_changed_from = None

        async with self.db_manager.transaction(db):
            payment, booking = await self._lock_for_payment(db, payment_id)
            previous = PaymentStatus(payment.status)
            target = PaymentStatus(target)

            if target == PaymentStatus.COMPLETED and previous != PaymentStatus.COMPLETED and booking is not None:
                duplicate_of = await self._completed_payment_id(db, booking.id, exclude_payment_id=payment.id)
                if duplicate_of is not None:
                    target = PaymentStatus.FAILED
                    failure_reason = DUPLICATE_CHARGE_REASON

            new_status = next_payment_status(previous, target)
            if new_status is None:
                self.logger.info(
                    "Payment transition ignored",
                    extra={
                        "payment_id": str(payment_id),
                        "current_status": previous.value,
                        "requested_status": target.value,
                        "source": source,
                    }
                )
                changed = False
            else:
                changed = True
                now = _utcnow()
                payment.status = new_status
                if snapshot is not None:
                    payment.gateway_snapshot = snapshot.model_dump(mode="json")
                if raw is not None:
                    payment.gateway_raw = raw
                if new_status == PaymentStatus.COMPLETED:
                    payment.processed_at = now
                elif new_status == PaymentStatus.FAILED:
                    payment.failed_at = now
                    payment.failure_reason = (failure_reason or "payment failed")[:500]

                if booking is not None:
                    booking_changed_from = self._cascade_to_booking(booking, new_status, duplicate_of is not None)

                audit_service.record(
                    db,
                    "payment.status_changed",
                    "payment",
                    payment.id,
                    actor_id=actor_id,
                    old_value={"status": previous},
                    new_value={"status": new_status},
                    details={
                        **(audit_details or {}),
                        "source": source,
                        "failure_reason": payment.failure_reason if new_status == PaymentStatus.FAILED else None,
                        "duplicate_of": duplicate_of,
                    }
                )
                if booking_changed_from is not None:
                    audit_service.record(
                        db,
                        "booking.status_changed",
                        "booking",
                        booking.id,
                        actor_id=actor_id,
                        old_value={"status": booking_changed_from},
                        new_value={"status": booking.status},
                        details={"source": source, "payment_id": payment.id}
                    )

        outcome = PaymentOutcome(
            payment=payment,
            booking=booking,
            changed=changed,
            previous_status=previous,
            duplicate_charge=duplicate_of is not None,
        )
        self._after_outcome(outcome, target, booking_changed_from, source)
        return outcome

    @staticmethod
    def _cascade_to_booking(booking: Booking, payment_status: PaymentStatus, duplicate: bool) -> Optional[BookingStatus]:
        """Mirror a payment transition onto its booking; returns the old booking status if it moved"""
        old_status = BookingStatus(booking.status)
        if payment_status == PaymentStatus.COMPLETED:
            target = BookingStatus.CONFIRMED
        elif payment_status == PaymentStatus.FAILED and not duplicate and old_status == BookingStatus.PENDING:
            target = BookingStatus.CANCELLED
        else:
            return None

        new_status = next_booking_status(old_status, target)
        if new_status is None:
            return None
        stamp_status(booking, new_status)
        if new_status == BookingStatus.CANCELLED:
            booking.cancellation_reason = "Payment failed"
        return old_status

    def _after_outcome(
        self,
        outcome: PaymentOutcome,
        requested: PaymentStatus,
        booking_changed_from: Optional[BookingStatus],
        source: str,
    ):
        """Metrics and notifications, only after the transaction committed"""
        payment = outcome.payment

        if outcome.duplicate_charge:
            notification_service.admin_alert(
                "Duplicate charge detected",
                {
                    "payment_id": str(payment.id),
                    "booking_id": str(payment.booking_id),
                    "external_ref": payment.external_ref,
                    "gateway": PaymentGatewayType(payment.gateway).value,
                    "amount": str(payment.amount),
                    "source": source,
                }
            )

        if not outcome.changed:
            if requested == PaymentStatus.COMPLETED and outcome.previous_status == PaymentStatus.FAILED:
                notification_service.admin_alert(
                    "Gateway reported success for a failed payment",
                    {"payment_id": str(payment.id), "external_ref": payment.external_ref, "source": source}
                )
            return

        metrics_collector.record_transition("payment", outcome.previous_status.value, PaymentStatus(payment.status).value)
        if booking_changed_from is not None:
            metrics_collector.record_transition(
                "booking", booking_changed_from.value, BookingStatus(outcome.booking.status).value
            )

        if payment.status == PaymentStatus.COMPLETED and outcome.booking is not None:
            if outcome.booking.status != BookingStatus.CONFIRMED:
                notification_service.admin_alert(
                    "Payment completed for a booking that cannot be confirmed",
                    {
                        "payment_id": str(payment.id),
                        "booking_id": str(outcome.booking.id),
                        "booking_status": BookingStatus(outcome.booking.status).value,
                    }
                )
            else:
                notification_service.booking_confirmed(outcome.booking)
        elif payment.status == PaymentStatus.FAILED and not outcome.duplicate_charge:
            notification_service.payment_failed(payment, outcome.booking)

        self.logger.info(
            "Payment status changed",
            extra={
                "payment_id": str(payment.id),
                "old_status": outcome.previous_status.value,
                "new_status": PaymentStatus(payment.status).value,
                "source": source,
            }
        )

    async def refund_payment(
        self,
        db: AsyncSession,
        payment_id: UUID,
        data: RefundRequest,
        actor_id: UUID
    ) -> Payment:
        """
        Refund a COMPLETED payment (admin).

        The gateway refund is idempotent, so a retry after a lost response
        cannot refund twice.
        """
        async with self.db_manager.transaction(db):
            payment = await db.get(Payment, payment_id)
            if not payment:
                raise NotFoundError("Payment", payment_id)
            if payment.status != PaymentStatus.COMPLETED:
                raise ConflictError(
                    f"Only completed payments can be refunded (status: {PaymentStatus(payment.status).value})",
                    details={"payment_id": str(payment_id)}
                )
            paid = Decimal(payment.amount)
            amount = Decimal(data.amount) if data.amount is not None else paid
            if amount > paid:
                raise ValidationError("Refund amount cannot exceed the paid amount", field="amount")
            gateway_type = PaymentGatewayType(payment.gateway)
            external_ref = payment.external_ref

        result = await self.gateways.get(gateway_type).refund(
            external_ref, None if amount == paid else amount
        )

        async with self.db_manager.transaction(db):
            payment, booking = await self._lock_for_payment(db, payment_id)
            previous = PaymentStatus(payment.status)
            if next_payment_status(previous, PaymentStatus.REFUNDED) is None:
                raise ConflictError(
                    f"Only completed payments can be refunded (status: {previous.value})",
                    details={"payment_id": str(payment_id)}
                )

            payment.status = PaymentStatus.REFUNDED
            payment.refund_amount = amount
            payment.refund_reason = data.reason
            payment.refunded_at = _utcnow()

            booking_changed_from = None
            if booking is not None:
                old_booking_status = BookingStatus(booking.status)
                new_booking_status = next_booking_status(old_booking_status, BookingStatus.REFUNDED)
                if new_booking_status is not None:
                    stamp_status(booking, new_booking_status)
                    booking_changed_from = old_booking_status

            audit_service.record(
                db,
                "payment.refunded",
                "payment",
                payment.id,
                actor_id=actor_id,
                old_value={"status": previous},
                new_value={"status": PaymentStatus.REFUNDED, "refund_amount": amount},
                details={
                    "reason": data.reason,
                    "refund_id": result.refund_id,
                    "gateway_refund_status": result.status,
                    "already_refunded": result.already_refunded,
                }
            )
            if booking_changed_from is not None:
                audit_service.record(
                    db,
                    "booking.status_changed",
                    "booking",
                    booking.id,
                    actor_id=actor_id,
                    old_value={"status": booking_changed_from},
                    new_value={"status": BookingStatus.REFUNDED},
                    details={"source": "refund", "payment_id": payment.id}
                )

        metrics_collector.record_transition("payment", previous.value, PaymentStatus.REFUNDED.value)
        if booking_changed_from is not None:
            metrics_collector.record_transition("booking", booking_changed_from.value, BookingStatus.REFUNDED.value)
        self.logger.info(
            "Payment refunded",
            extra={"payment_id": str(payment_id), "refund_amount": str(amount), "actor_id": str(actor_id)}
        )
        notification_service.payment_refunded(payment, booking)
        return payment

    async def get_payment(self, db: AsyncSession, payment_id: UUID, user_id: Optional[UUID] = None) -> Payment:
        async with self.db_manager.transaction(db):
            payment = await db.get(Payment, payment_id)
        if not payment:
            raise NotFoundError("Payment", payment_id)
        if user_id is not None and payment.user_id != user_id:
            raise ForbiddenError("You do not have permission to access this payment")
        return payment

    async def find_by_external_ref(
        self,
        db: AsyncSession,
        gateway: PaymentGatewayType,
        external_ref: str
    ) -> Optional[Payment]:
        async with self.db_manager.transaction(db):
            result = await db.execute(
                select(Payment).where(
                    Payment.gateway == PaymentGatewayType(gateway),
                    Payment.external_ref == external_ref,
                )
            )
            return result.scalar_one_or_none()

    async def list_payments(self, db: AsyncSession, query: PaymentQuery) -> Tuple[List[Payment], PaginationMeta]:
        conditions = []
        if query.status:
            conditions.append(Payment.status == PaymentStatus(query.status))
        if query.gateway:
            conditions.append(Payment.gateway == PaymentGatewayType(query.gateway))
        if query.booking_id:
            conditions.append(Payment.booking_id == query.booking_id)
        if query.user_id:
            conditions.append(Payment.user_id == query.user_id)
        where = and_(*conditions) if conditions else true()

        async with self.db_manager.transaction(db):
            total = (await db.execute(select(func.count(Payment.id)).where(where))).scalar_one()
            result = await db.execute(
                select(Payment)
                .where(where)
                .order_by(Payment.created_at.desc(), Payment.id)
                .offset((query.page - 1) * query.per_page)
                .limit(query.per_page)
            )
            payments = list(result.scalars().all())

        return payments, PaginationMeta.build(query.page, query.per_page, total)

    async def payment_stats(self, db: AsyncSession, user_id: Optional[UUID] = None) -> PaymentStats:
        stmt = select(
            Payment.status,
            Payment.gateway,
            func.count(Payment.id),
            func.coalesce(func.sum(Payment.amount), 0),
            func.coalesce(func.sum(Payment.refund_amount), 0),
        ).group_by(Payment.status, Payment.gateway)
        if user_id is not None:
            stmt = stmt.where(Payment.user_id == user_id)

        async with self.db_manager.transaction(db):
            rows = (await db.execute(stmt)).all()

        by_status = {status.value: 0 for status in PaymentStatus}
        by_gateway = {gateway.value: 0 for gateway in PaymentGatewayType}
        collected = Decimal("0.00")
        refunded = Decimal("0.00")
        for status, gateway, count, amount, refund_amount in rows:
            status = PaymentStatus(status)
            by_status[status.value] += count
            by_gateway[PaymentGatewayType(gateway).value] += count
            if status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
                collected += Decimal(str(amount))
            refunded += Decimal(str(refund_amount))

        return PaymentStats(
            total_payments=sum(by_status.values()),
            by_status=by_status,
            by_gateway=by_gateway,
            total_collected=collected.quantize(Decimal("0.01")),
            total_refunded=refunded.quantize(Decimal("0.01")),
        )


payment_service = PaymentService()
