"""
Booking aggregate manager

Owns every write to bookings apart from the payment cascades. Creation and
date/party changes run check-then-write under the tour's reservation lock,
so the capacity invariant holds across concurrent requests and instances.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional, Tuple
from uuid import UUID
import logging
import secrets
import time

from sqlalchemy import select, update, func, or_, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tourpay.config import settings
from tourpay.core.database import db_manager
from tourpay.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from tourpay.core.metrics import metrics_collector
from tourpay.core.state_machine import next_booking_status
from tourpay.models.booking import Booking, BookingStatus
from tourpay.models.tour import Tour
from tourpay.models.user import User
from tourpay.schemas.booking import (
    BookingCreate,
    BookingUpdate,
    BookingCancel,
    BookingStatusUpdate,
    BookingQuery,
    BookingStatsQuery,
    BookingStats,
)
from tourpay.schemas.response import PaginationMeta
from tourpay.services.audit_service import audit_service
from tourpay.services.capacity_ledger import lock_tour, check_capacity
from tourpay.services.notification_service import notification_service
from tourpay.services.promotion_service import promotion_service

logger = logging.getLogger(__name__)

BOOKING_NUMBER_PREFIX = "BK"

SORT_COLUMNS = {
    "created_at": Booking.created_at,
    "start_date": Booking.start_date,
    "total_price": Booking.total_price,
    "status": Booking.status,
}

# Timestamp column stamped when a booking enters a status
STATUS_TIMESTAMPS = {
    BookingStatus.CONFIRMED: "confirmed_at",
    BookingStatus.CANCELLED: "cancelled_at",
    BookingStatus.COMPLETED: "completed_at",
    BookingStatus.REFUNDED: "refunded_at",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _today() -> date:
    return _utcnow().date()


def candidate_booking_number(
    clock: Callable[[], float] = time.time,
    rng: Callable[[int], int] = secrets.randbelow,
) -> str:
    """BK + last 8 digits of the epoch milliseconds + 3 random digits"""
    millis = str(int(clock() * 1000))[-8:]
    return f"{BOOKING_NUMBER_PREFIX}{millis}{rng(1000):03d}"


async def generate_booking_number(
    exists: Callable[[str], Awaitable[bool]],
    max_attempts: Optional[int] = None,
    clock: Callable[[], float] = time.time,
    rng: Callable[[int], int] = secrets.randbelow,
) -> str:
    """
    Draw booking numbers until one is unused.

    Gives up with ConflictError after max_attempts collisions.
    """
    max_attempts = max_attempts or settings.BOOKING_NUMBER_MAX_ATTEMPTS
    for attempt in range(1, max_attempts + 1):
        number = candidate_booking_number(clock, rng)
        if not await exists(number):
            return number
        logger.warning(f"Booking number collision on attempt {attempt}: {number}")

    raise ConflictError(
        "Could not allocate a unique booking number, please retry",
        details={"attempts": max_attempts}
    )


def _patched(patch: dict, key: str, current):
    value = patch.get(key)
    return current if value is None else value


def append_note(notes: Optional[str], line: str) -> str:
    return f"{notes}\n\n{line}" if notes else line


def stamp_status(booking: Booking, status: BookingStatus, when: Optional[datetime] = None):
    """Set the status and the matching *_at column"""
    booking.status = status
    column = STATUS_TIMESTAMPS.get(status)
    if column:
        setattr(booking, column, when or _utcnow())


class BookingService:

    def __init__(self):
        self.db_manager = db_manager
        self.logger = logging.getLogger(__name__)

    async def _booking_number_exists(self, db: AsyncSession, number: str) -> bool:
        result = await db.execute(select(Booking.id).where(Booking.booking_number == number))
        return result.first() is not None

    async def _lock_booking(self, db: AsyncSession, booking_id: UUID) -> Booking:
        """Lock the booking row for this transaction and load it fresh"""
        if not await self.db_manager.lock_row(db, Booking, booking_id, "lock_version"):
            raise NotFoundError("Booking", booking_id)
        result = await db.execute(
            select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def create_booking(self, db: AsyncSession, data: BookingCreate, user_id: UUID) -> Booking:
        """
        Create a PENDING booking.

        Tour lock, capacity check, promo evaluation, insert and promo
        redemption form one transaction.
        """
        requested = data.adults + data.children

        async with metrics_collector.track_booking_operation("create_booking"):
            async with self.db_manager.transaction(db):
                tour = await lock_tour(db, data.tour_id)
                if not tour.is_bookable:
                    raise ValidationError("Tour is not available for booking", field="tour_id")

                capacity = await check_capacity(db, tour, data.start_date, data.end_date, requested)
                if not capacity.allowed:
                    raise ValidationError(
                        f"Only {capacity.remaining_capacity} spots available for these dates",
                        field="participants",
                        details={"remaining_capacity": capacity.remaining_capacity}
                    )

                discount = Decimal("0.00")
                promo_code = None
                if data.promo_code:
                    promo = await promotion_service.validate(db, data.promo_code, tour.id, data.total_price)
                    if not promo.valid:
                        raise ValidationError(promo.message or "Invalid promo code", field="promo_code")
                    discount = promo.discount_amount
                    promo_code = promo.promo_code.code

                booking_number = await generate_booking_number(
                    lambda number: self._booking_number_exists(db, number)
                )

                booking = Booking(
                    booking_number=booking_number,
                    user_id=user_id,
                    tour_id=tour.id,
                    start_date=data.start_date,
                    end_date=data.end_date,
                    adults=data.adults,
                    children=data.children,
                    total_price=data.total_price,
                    discount_amount=discount,
                    promo_code=promo_code,
                    participants=[p.model_dump(mode="json", exclude_none=True) for p in data.participants],
                    notes=data.notes,
                    special_requests=data.special_requests,
                    status=BookingStatus.PENDING,
                )
                db.add(booking)
                try:
                    await db.flush()
                except IntegrityError:
                    raise ConflictError("Booking number already taken, please retry")

                if promo_code:
                    await promotion_service.redeem(db, promo_code)

                audit_service.record(
                    db,
                    "booking.created",
                    "booking",
                    booking.id,
                    actor_id=user_id,
                    new_value={"status": BookingStatus.PENDING, "participants": requested},
                    details={
                        "booking_number": booking_number,
                        "tour_id": tour.id,
                        "start_date": data.start_date,
                        "end_date": data.end_date,
                        "promo_code": promo_code,
                        "discount_amount": discount,
                        "remaining_capacity": capacity.remaining_capacity - requested,
                    }
                )

        self.logger.info(
            "Booking created",
            extra={"booking_id": str(booking.id), "booking_number": booking.booking_number, "user_id": str(user_id)}
        )
        return booking

    async def update_booking(
        self,
        db: AsyncSession,
        booking_id: UUID,
        data: BookingUpdate,
        user_id: UUID
    ) -> Booking:
        """
        Owner-only partial update of a PENDING booking.

        Date or party size changes are re-checked against capacity, excluding
        the booking's own seats.
        """
        patch = data.model_dump(exclude_unset=True)

        async with self.db_manager.transaction(db):
            # tour_id never changes, so it is safe to read before locking
            result = await db.execute(select(Booking.tour_id).where(Booking.id == booking_id))
            tour_id = result.scalar_one_or_none()
            if tour_id is None:
                raise NotFoundError("Booking", booking_id)

            tour = await lock_tour(db, tour_id)
            booking = await self._lock_booking(db, booking_id)

            if booking.user_id != user_id:
                raise ForbiddenError("You do not have permission to update this booking")
            if booking.status != BookingStatus.PENDING:
                raise ValidationError(f"Cannot update booking with status: {booking.status.value}")

            start_date = _patched(patch, "start_date", booking.start_date)
            end_date = _patched(patch, "end_date", booking.end_date)
            adults = _patched(patch, "adults", booking.adults)
            children = _patched(patch, "children", booking.children)

            if end_date <= start_date:
                raise ValidationError("End date must be after start date", field="end_date")

            participants = booking.participants
            if "participants" in patch and data.participants is not None:
                participants = [p.model_dump(mode="json", exclude_none=True) for p in data.participants]
            if len(participants or []) < adults:
                raise ValidationError(
                    "Number of participants must match or exceed number of adults",
                    field="participants"
                )

            reservation_changed = (
                start_date != booking.start_date
                or end_date != booking.end_date
                or adults + children != booking.party_size
            )
            if reservation_changed:
                capacity = await check_capacity(
                    db, tour, start_date, end_date, adults + children, exclude_booking_id=booking.id
                )
                if not capacity.allowed:
                    raise ValidationError(
                        f"Only {capacity.remaining_capacity} spots available for these dates",
                        field="participants",
                        details={"remaining_capacity": capacity.remaining_capacity}
                    )

            old_value = {
                "start_date": booking.start_date,
                "end_date": booking.end_date,
                "adults": booking.adults,
                "children": booking.children,
            }
            booking.start_date = start_date
            booking.end_date = end_date
            booking.adults = adults
            booking.children = children
            booking.participants = participants
            if "notes" in patch:
                booking.notes = data.notes
            if "special_requests" in patch:
                booking.special_requests = data.special_requests

            audit_service.record(
                db,
                "booking.updated",
                "booking",
                booking.id,
                actor_id=user_id,
                old_value=old_value,
                new_value={
                    "start_date": start_date,
                    "end_date": end_date,
                    "adults": adults,
                    "children": children,
                },
                details={"fields": sorted(patch)}
            )

        self.logger.info("Booking updated", extra={"booking_id": str(booking_id), "user_id": str(user_id)})
        return booking

    async def cancel_booking(
        self,
        db: AsyncSession,
        booking_id: UUID,
        data: BookingCancel,
        user_id: UUID
    ) -> Booking:
        """
        Owner cancellation from PENDING or CONFIRMED.

        Never refunds; a refund stays an explicit admin operation. The refund
        request flag is kept in the audit trail for follow-up.
        """
        async with self.db_manager.transaction(db):
            booking = await self._lock_booking(db, booking_id)

            if booking.user_id != user_id:
                raise ForbiddenError("You do not have permission to cancel this booking")

            old_status = booking.status
            if next_booking_status(old_status, BookingStatus.CANCELLED) is None:
                raise ValidationError(f"Cannot cancel booking with status: {old_status.value}")

            stamp_status(booking, BookingStatus.CANCELLED)
            booking.cancellation_reason = data.reason
            booking.notes = append_note(booking.notes, f"Cancellation reason: {data.reason}")

            audit_service.record(
                db,
                "booking.cancelled",
                "booking",
                booking.id,
                actor_id=user_id,
                old_value={"status": old_status},
                new_value={"status": BookingStatus.CANCELLED},
                details={"reason": data.reason, "request_refund": data.request_refund}
            )

        metrics_collector.record_transition("booking", old_status.value, BookingStatus.CANCELLED.value)
        if data.request_refund:
            self.logger.info(
                "Refund requested on cancellation",
                extra={"booking_id": str(booking_id), "user_id": str(user_id)}
            )
        notification_service.booking_cancelled(booking)
        return booking

    async def update_booking_status(
        self,
        db: AsyncSession,
        booking_id: UUID,
        data: BookingStatusUpdate,
        actor_id: UUID
    ) -> Booking:
        """Administrative override; any status may be set"""
        target = BookingStatus(data.status)

        async with self.db_manager.transaction(db):
            booking = await self._lock_booking(db, booking_id)
            old_status = booking.status

            stamp_status(booking, next_booking_status(old_status, target, admin_override=True))
            if data.reason:
                booking.notes = append_note(booking.notes, f"Status Update: {data.reason}")

            audit_service.record(
                db,
                "booking.status_overridden",
                "booking",
                booking.id,
                actor_id=actor_id,
                old_value={"status": old_status},
                new_value={"status": target},
                details={"reason": data.reason}
            )

        self.logger.info(
            "Booking status updated by admin",
            extra={
                "booking_id": str(booking_id),
                "actor_id": str(actor_id),
                "old_status": old_status.value,
                "new_status": target.value,
                "reason": data.reason,
            }
        )
        metrics_collector.record_transition("booking", old_status.value, target.value)
        return booking

    async def complete_elapsed_bookings(
        self,
        db: AsyncSession,
        today: Optional[date] = None,
        actor_id: Optional[UUID] = None
    ) -> int:
        """Move CONFIRMED bookings whose trip has ended to COMPLETED"""
        today = today or _today()
        now = _utcnow()

        completed = 0
        async with self.db_manager.transaction(db):
            result = await db.execute(
                select(Booking.id).where(Booking.status == BookingStatus.CONFIRMED, Booking.end_date < today)
            )
            for booking_id in result.scalars().all():
                # Conditional so a booking refunded meanwhile is left alone
                moved = await db.execute(
                    update(Booking)
                    .where(Booking.id == booking_id, Booking.status == BookingStatus.CONFIRMED)
                    .values(
                        status=BookingStatus.COMPLETED,
                        completed_at=now,
                        lock_version=Booking.lock_version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if moved.rowcount == 1:
                    completed += 1
                    audit_service.record(
                        db,
                        "booking.completed",
                        "booking",
                        booking_id,
                        actor_id=actor_id,
                        old_value={"status": BookingStatus.CONFIRMED},
                        new_value={"status": BookingStatus.COMPLETED},
                        details={"today": today}
                    )

        for _ in range(completed):
            metrics_collector.record_transition("booking", BookingStatus.CONFIRMED.value, BookingStatus.COMPLETED.value)
        self.logger.info(f"Completed {completed} elapsed bookings", extra={"today": today.isoformat()})
        return completed

    async def get_booking(self, db: AsyncSession, booking_id: UUID, user_id: Optional[UUID] = None) -> Booking:
        """Load a booking; when user_id is given it must own it"""
        async with self.db_manager.transaction(db):
            booking = await db.get(Booking, booking_id)

        if not booking:
            raise NotFoundError("Booking", booking_id)
        if user_id is not None and booking.user_id != user_id:
            raise ForbiddenError("You do not have permission to view this booking")
        return booking

    async def list_bookings(self, db: AsyncSession, query: BookingQuery) -> Tuple[List[Booking], PaginationMeta]:
        conditions = []
        if query.status:
            conditions.append(Booking.status == BookingStatus(query.status))
        if query.tour_id:
            conditions.append(Booking.tour_id == query.tour_id)
        if query.user_id:
            conditions.append(Booking.user_id == query.user_id)
        if query.start_date_from:
            conditions.append(Booking.start_date >= query.start_date_from)
        if query.start_date_to:
            conditions.append(Booking.start_date <= query.start_date_to)
        if query.min_price is not None:
            conditions.append(Booking.total_price >= query.min_price)
        if query.max_price is not None:
            conditions.append(Booking.total_price <= query.max_price)
        if query.booking_number:
            conditions.append(Booking.booking_number.contains(query.booking_number.upper()))

        base = select(Booking)
        if query.search:
            pattern = f"%{query.search}%"
            base = (
                base.join(Tour, Tour.id == Booking.tour_id)
                .join(User, User.id == Booking.user_id)
            )
            conditions.append(or_(
                Booking.booking_number.ilike(pattern),
                Tour.title.ilike(pattern),
                User.full_name.ilike(pattern),
                User.email.ilike(pattern),
            ))

        where = and_(*conditions) if conditions else None
        if where is not None:
            base = base.where(where)

        column = SORT_COLUMNS[query.sort_by]
        order = column.asc() if query.sort_order == "asc" else column.desc()

        async with self.db_manager.transaction(db):
            total = (await db.execute(
                select(func.count()).select_from(base.order_by(None).subquery())
            )).scalar_one()
            result = await db.execute(
                base.order_by(order, Booking.id)
                .offset((query.page - 1) * query.per_page)
                .limit(query.per_page)
            )
            bookings = list(result.scalars().all())

        return bookings, PaginationMeta.build(query.page, query.per_page, total)

    async def booking_stats(self, db: AsyncSession, query: BookingStatsQuery) -> BookingStats:
        conditions = []
        if query.start_date:
            conditions.append(Booking.start_date >= query.start_date)
        if query.end_date:
            conditions.append(Booking.start_date <= query.end_date)
        if query.tour_id:
            conditions.append(Booking.tour_id == query.tour_id)
        if query.user_id:
            conditions.append(Booking.user_id == query.user_id)

        stmt = select(
            Booking.status,
            func.count(Booking.id),
            func.coalesce(func.sum(Booking.adults + Booking.children), 0),
            func.coalesce(func.sum(Booking.total_price), 0),
            func.coalesce(func.sum(Booking.discount_amount), 0),
        ).group_by(Booking.status)
        if conditions:
            stmt = stmt.where(*conditions)

        async with self.db_manager.transaction(db):
            rows = (await db.execute(stmt)).all()

        by_status = {status.value: 0 for status in BookingStatus}
        total_participants = 0
        revenue = Decimal("0.00")
        total_discount = Decimal("0.00")
        for status, count, participants, gross, discount in rows:
            status = BookingStatus(status)
            by_status[status.value] = count
            if status in (BookingStatus.PENDING, BookingStatus.CANCELLED):
                continue
            total_participants += int(participants)
            if status in (BookingStatus.CONFIRMED, BookingStatus.COMPLETED):
                revenue += Decimal(str(gross)) - Decimal(str(discount))
                total_discount += Decimal(str(discount))

        return BookingStats(
            total_bookings=sum(by_status.values()),
            by_status=by_status,
            total_participants=total_participants,
            total_revenue=revenue.quantize(Decimal("0.01")),
            total_discount=total_discount.quantize(Decimal("0.01")),
        )


booking_service = BookingService()
