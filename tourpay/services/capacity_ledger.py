"""
Capacity ledger

Counts the seats already committed to a tour over a date range. Callers hold
the per-tour reservation lock (lock_tour) for the whole check-then-write unit,
otherwise two requests can both see spare capacity.
"""

from dataclasses import dataclass
from datetime import date
from typing import Optional
from uuid import UUID
import logging

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from tourpay.core.database import db_manager
from tourpay.core.exceptions import NotFoundError
from tourpay.models.booking import Booking, ACTIVE_BOOKING_STATUSES
from tourpay.models.tour import Tour

logger = logging.getLogger(__name__)


@dataclass
class CapacityCheck:
    allowed: bool
    remaining_capacity: int
    committed: int


async def lock_tour(session: AsyncSession, tour_id: UUID) -> Tour:
    """
    Take the tour's reservation lock inside the current transaction and
    return the tour.

    Must be the first statement of the transaction.
    """
    locked = await db_manager.lock_row(session, Tour, tour_id, "reservation_version")
    if not locked:
        raise NotFoundError("Tour", tour_id)

    result = await session.execute(
        select(Tour).where(Tour.id == tour_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def committed_participants(
    session: AsyncSession,
    tour_id: UUID,
    start_date: date,
    end_date: date,
    exclude_booking_id: Optional[UUID] = None,
) -> int:
    """Adults plus children of active bookings overlapping [start_date, end_date]"""
    query = select(
        func.coalesce(func.sum(Booking.adults + Booking.children), 0)
    ).where(
        Booking.tour_id == tour_id,
        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        Booking.start_date <= end_date,
        Booking.end_date >= start_date,
    )
    if exclude_booking_id is not None:
        query = query.where(Booking.id != exclude_booking_id)

    result = await session.execute(query)
    return int(result.scalar_one())


async def check_capacity(
    session: AsyncSession,
    tour: Tour,
    start_date: date,
    end_date: date,
    requested: int,
    exclude_booking_id: Optional[UUID] = None,
) -> CapacityCheck:
    committed = await committed_participants(
        session, tour.id, start_date, end_date, exclude_booking_id
    )
    allowed = committed + requested <= tour.max_group_size
    remaining = max(0, tour.max_group_size - committed)

    logger.debug(
        "Capacity check",
        extra={
            "tour_id": str(tour.id),
            "committed": committed,
            "requested": requested,
            "max_group_size": tour.max_group_size,
            "allowed": allowed,
        }
    )
    return CapacityCheck(allowed=allowed, remaining_capacity=remaining, committed=committed)
