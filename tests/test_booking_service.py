"""
Booking aggregate: creation, capacity, changes and cancellation
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4
import pydantic
import pytest
from sqlalchemy import select

from tourpay.core.database import async_session
from tourpay.core.exceptions import ForbiddenError, NotFoundError, ValidationError
from tourpay.models import AuditLog, Booking, BookingStatus, Notification, NotificationType, PromoCode
from tourpay.schemas.booking import (
    BookingCancel,
    BookingCreate,
    BookingQuery,
    BookingStatsQuery,
    BookingStatusUpdate,
    BookingUpdate,
)
from tourpay.services.booking_service import booking_service
from tourpay.services.capacity_ledger import committed_participants
from tourpay.services.notification_service import notification_service

from tests.factories import (
    booking_create,
    booking_payload,
    create_promo,
    insert_booking,
    load,
    participants,
    today,
)


async def _create(user, tour, **kwargs) -> Booking:
    async with async_session() as db:
        return await booking_service.create_booking(db, booking_create(tour.id, **kwargs), user.id)


class TestBookingCreate:

    @pytest.mark.asyncio
    async def test_creates_pending_booking(self, test_user, test_tour):
        booking = await _create(test_user, test_tour, adults=2, children=1)

        stored = await load(Booking, booking.id)
        assert stored.status == BookingStatus.PENDING
        assert stored.booking_number.startswith("BK")
        assert stored.party_size == 3
        assert stored.discount_amount == Decimal("0.00")
        assert len(stored.participants) == 2

        async with async_session() as db:
            result = await db.execute(select(AuditLog).where(AuditLog.entity_id == str(booking.id)))
            actions = [entry.action for entry in result.scalars()]
        assert actions == ["booking.created"]

    @pytest.mark.asyncio
    async def test_overbooking_rejected_with_remaining_capacity(self, test_user, other_user, test_tour):
        start = today() + timedelta(days=30)
        await insert_booking(other_user, test_tour, start, start + timedelta(days=3), adults=9)

        with pytest.raises(ValidationError) as exc_info:
            await _create(test_user, test_tour, adults=2)

        assert exc_info.value.message == "Only 1 spots available for these dates"
        assert exc_info.value.details["remaining_capacity"] == 1

    @pytest.mark.asyncio
    async def test_last_seat_can_be_taken(self, test_user, other_user, test_tour):
        start = today() + timedelta(days=30)
        await insert_booking(other_user, test_tour, start, start + timedelta(days=3), adults=9)

        booking = await _create(test_user, test_tour, adults=1)
        assert booking.status == BookingStatus.PENDING

    @pytest.mark.asyncio
    async def test_overlap_boundaries_are_inclusive(self, test_user, other_user, test_tour):
        start = today() + timedelta(days=30)
        # Existing trip ends on the day the new one starts
        await insert_booking(other_user, test_tour, start - timedelta(days=3), start, adults=10)

        with pytest.raises(ValidationError):
            await _create(test_user, test_tour, adults=1)

    @pytest.mark.asyncio
    async def test_disjoint_dates_do_not_compete(self, test_user, other_user, test_tour):
        start = today() + timedelta(days=30)
        await insert_booking(other_user, test_tour, start + timedelta(days=10), start + timedelta(days=12), adults=10)

        booking = await _create(test_user, test_tour, adults=4)
        assert booking.adults == 4

    @pytest.mark.asyncio
    async def test_cancelled_and_refunded_bookings_free_capacity(self, test_user, other_user, test_tour):
        start = today() + timedelta(days=30)
        end = start + timedelta(days=3)
        await insert_booking(other_user, test_tour, start, end, adults=6, status=BookingStatus.CANCELLED)
        await insert_booking(other_user, test_tour, start, end, adults=4, status=BookingStatus.REFUNDED)

        async with async_session() as db:
            assert await committed_participants(db, test_tour.id, start, end) == 0

        booking = await _create(test_user, test_tour, adults=5, children=5)
        assert booking.party_size == 10

    @pytest.mark.asyncio
    async def test_draft_tour_not_bookable(self, test_user, draft_tour):
        with pytest.raises(ValidationError, match="not available for booking"):
            await _create(test_user, draft_tour)

    @pytest.mark.asyncio
    async def test_unknown_tour(self, test_user):
        with pytest.raises(NotFoundError):
            async with async_session() as db:
                await booking_service.create_booking(db, booking_create(uuid4()), test_user.id)

    @pytest.mark.asyncio
    async def test_promo_discount_is_computed_and_redeemed(self, test_user, test_tour):
        promo = await create_promo(max_discount=Decimal("50"), usage_limit=5)
        data = BookingCreate(**{
            **booking_payload(test_tour.id, total_price="1000.00", promo_code="summer10"),
            "discount_amount": "999.00",
        })

        async with async_session() as db:
            booking = await booking_service.create_booking(db, data, test_user.id)

        assert booking.discount_amount == Decimal("50.00")
        assert booking.promo_code == "SUMMER10"
        assert (await load(PromoCode, promo.id)).usage_count == 1

    @pytest.mark.asyncio
    async def test_invalid_promo_rejects_booking(self, test_user, test_tour):
        await create_promo(is_active=False)

        with pytest.raises(ValidationError, match="no longer active"):
            await _create(test_user, test_tour, promo_code="SUMMER10")

        async with async_session() as db:
            result = await db.execute(select(Booking))
            assert result.scalars().all() == []

    @pytest.mark.asyncio
    async def test_promo_without_usage_left(self, test_user, test_tour):
        await create_promo(usage_limit=1, usage_count=1)

        with pytest.raises(ValidationError, match="usage limit reached"):
            await _create(test_user, test_tour, promo_code="SUMMER10")


class TestBookingCreateSchema:

    def test_end_before_start(self):
        payload = booking_payload(uuid4())
        payload["end_date"] = payload["start_date"]
        with pytest.raises(pydantic.ValidationError, match="End date must be after start date"):
            BookingCreate(**payload)

    def test_start_in_the_past(self):
        payload = booking_payload(uuid4(), days_ahead=-2)
        with pytest.raises(pydantic.ValidationError, match="Start date must be in the future"):
            BookingCreate(**payload)

    def test_participants_cover_adults(self):
        payload = booking_payload(uuid4(), adults=3)
        payload["participants"] = participants(2)
        with pytest.raises(pydantic.ValidationError, match="must match or exceed number of adults"):
            BookingCreate(**payload)

    def test_promo_code_normalised(self):
        data = BookingCreate(**booking_payload(uuid4(), promo_code=" summer10 "))
        assert data.promo_code == "SUMMER10"


class TestBookingUpdate:

    @pytest.mark.asyncio
    async def test_growing_party_excludes_own_seats(self, test_user, test_tour):
        booking = await _create(test_user, test_tour, adults=6)

        async with async_session() as db:
            updated = await booking_service.update_booking(
                db, booking.id, BookingUpdate(adults=10, participants=participants(10)), test_user.id
            )
        assert updated.adults == 10

    @pytest.mark.asyncio
    async def test_growth_beyond_capacity_rejected(self, test_user, other_user, test_tour):
        booking = await _create(test_user, test_tour, adults=4)
        start = today() + timedelta(days=30)
        await insert_booking(other_user, test_tour, start, start + timedelta(days=3), adults=5)

        with pytest.raises(ValidationError) as exc_info:
            async with async_session() as db:
                await booking_service.update_booking(
                    db, booking.id, BookingUpdate(adults=6, participants=participants(6)), test_user.id
                )
        assert exc_info.value.details["remaining_capacity"] == 5
        assert (await load(Booking, booking.id)).adults == 4

    @pytest.mark.asyncio
    async def test_only_owner_may_update(self, test_user, other_user, test_tour):
        booking = await _create(test_user, test_tour)

        with pytest.raises(ForbiddenError):
            async with async_session() as db:
                await booking_service.update_booking(db, booking.id, BookingUpdate(notes="mine now"), other_user.id)

    @pytest.mark.asyncio
    async def test_only_pending_bookings_change(self, test_user, test_tour):
        start = today() + timedelta(days=30)
        booking = await insert_booking(test_user, test_tour, start, start + timedelta(days=2))

        with pytest.raises(ValidationError, match="Cannot update booking with status: confirmed"):
            async with async_session() as db:
                await booking_service.update_booking(db, booking.id, BookingUpdate(notes="late"), test_user.id)


class TestBookingCancel:

    @pytest.mark.asyncio
    async def test_cancel_records_reason(self, test_user, test_tour):
        booking = await _create(test_user, test_tour)

        async with async_session() as db:
            cancelled = await booking_service.cancel_booking(
                db, booking.id, BookingCancel(reason="Change of travel plans"), test_user.id
            )
        assert cancelled.status == BookingStatus.CANCELLED

        stored = await load(Booking, booking.id)
        assert stored.status == BookingStatus.CANCELLED
        assert stored.cancelled_at is not None
        assert stored.cancellation_reason == "Change of travel plans"
        assert "Cancellation reason: Change of travel plans" in stored.notes

        await notification_service.drain()
        async with async_session() as db:
            result = await db.execute(select(Notification).where(Notification.user_id == test_user.id))
            assert [n.type for n in result.scalars()] == [NotificationType.BOOKING_CANCELLED]

    @pytest.mark.asyncio
    async def test_cancel_twice_rejected(self, test_user, test_tour):
        booking = await _create(test_user, test_tour)
        cancel = BookingCancel(reason="Change of travel plans")
        async with async_session() as db:
            await booking_service.cancel_booking(db, booking.id, cancel, test_user.id)

        with pytest.raises(ValidationError, match="Cannot cancel booking with status: cancelled"):
            async with async_session() as db:
                await booking_service.cancel_booking(db, booking.id, cancel, test_user.id)

    @pytest.mark.asyncio
    async def test_cancel_requires_owner(self, test_user, other_user, test_tour):
        booking = await _create(test_user, test_tour)

        with pytest.raises(ForbiddenError):
            async with async_session() as db:
                await booking_service.cancel_booking(
                    db, booking.id, BookingCancel(reason="Not my booking at all"), other_user.id
                )


class TestAdminOperations:

    @pytest.mark.asyncio
    async def test_status_override_appends_note(self, test_user, test_admin, test_tour):
        booking = await _create(test_user, test_tour)

        async with async_session() as db:
            await booking_service.update_booking_status(
                db,
                booking.id,
                BookingStatusUpdate(status=BookingStatus.CONFIRMED, reason="Paid at the office"),
                test_admin.id,
            )

        stored = await load(Booking, booking.id)
        assert stored.status == BookingStatus.CONFIRMED
        assert stored.confirmed_at is not None
        assert stored.notes.endswith("Status Update: Paid at the office")

    @pytest.mark.asyncio
    async def test_complete_elapsed_bookings(self, test_user, test_tour):
        past = today() - timedelta(days=10)
        elapsed = await insert_booking(test_user, test_tour, past, past + timedelta(days=3))
        pending = await insert_booking(test_user, test_tour, past, past + timedelta(days=3), status=BookingStatus.PENDING)
        ongoing = await insert_booking(test_user, test_tour, past, today() + timedelta(days=1))

        async with async_session() as db:
            completed = await booking_service.complete_elapsed_bookings(db)

        assert completed == 1
        assert (await load(Booking, elapsed.id)).status == BookingStatus.COMPLETED
        assert (await load(Booking, pending.id)).status == BookingStatus.PENDING
        assert (await load(Booking, ongoing.id)).status == BookingStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_list_filters_and_paginates(self, test_user, other_user, test_tour):
        for _ in range(3):
            await _create(test_user, test_tour, adults=1)
        await _create(other_user, test_tour, adults=1)

        async with async_session() as db:
            bookings, pagination = await booking_service.list_bookings(
                db, BookingQuery(user_id=test_user.id, per_page=2)
            )
        assert len(bookings) == 2
        assert all(b.user_id == test_user.id for b in bookings)
        assert pagination.total == 3
        assert pagination.total_pages == 2
        assert pagination.has_next

    @pytest.mark.asyncio
    async def test_search_by_tour_title(self, test_user, test_tour):
        await _create(test_user, test_tour, adults=1)

        async with async_session() as db:
            found, _ = await booking_service.list_bookings(db, BookingQuery(search="simien"))
            missing, _ = await booking_service.list_bookings(db, BookingQuery(search="danakil"))
        assert len(found) == 1
        assert missing == []

    @pytest.mark.asyncio
    async def test_stats(self, test_user, test_tour):
        start = today() + timedelta(days=30)
        end = start + timedelta(days=2)
        await insert_booking(test_user, test_tour, start, end, adults=2, total_price=Decimal("400.00"))
        await insert_booking(test_user, test_tour, start, end, adults=3, status=BookingStatus.PENDING)
        await insert_booking(test_user, test_tour, start, end, adults=1, status=BookingStatus.CANCELLED)

        async with async_session() as db:
            stats = await booking_service.booking_stats(db, BookingStatsQuery(tour_id=test_tour.id))

        assert stats.total_bookings == 3
        assert stats.by_status["confirmed"] == 1
        assert stats.by_status["pending"] == 1
        assert stats.by_status["cancelled"] == 1
        assert stats.total_participants == 2
        assert stats.total_revenue == Decimal("400.00")
