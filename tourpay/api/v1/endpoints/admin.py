"""
Admin management endpoints
"""

from typing import Any, Optional
from datetime import date
from decimal import Decimal
from uuid import UUID
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tourpay.core.database import get_session
from tourpay.core.security import require_admin
from tourpay.models.booking import BookingStatus
from tourpay.models.payment import PaymentGatewayType, PaymentStatus
from tourpay.models.user import User
from tourpay.schemas.booking import (
    BookingQuery,
    BookingResponse,
    BookingStats,
    BookingStatsQuery,
    BookingStatusUpdate,
)
from tourpay.schemas.payment import PaymentQuery, PaymentResponse, PaymentStats
from tourpay.schemas.response import PaginatedResponse
from tourpay.services.booking_service import booking_service
from tourpay.services.payment_service import payment_service

router = APIRouter()


@router.get("/bookings", response_model=PaginatedResponse[BookingResponse])
async def list_bookings(
    page: int = Query(1, ge=1),
    per_page: int = Query(10, ge=1, le=100),
    booking_status: Optional[BookingStatus] = Query(None, alias="status"),
    tour_id: Optional[UUID] = Query(None),
    user_id: Optional[UUID] = Query(None),
    start_date_from: Optional[date] = Query(None),
    start_date_to: Optional[date] = Query(None),
    booking_number: Optional[str] = Query(None),
    min_price: Optional[Decimal] = Query(None, ge=0),
    max_price: Optional[Decimal] = Query(None, ge=0),
    search: Optional[str] = Query(None, description="Matches booking number, tour title, user name and email"),
    sort_by: str = Query("created_at", pattern="^(created_at|start_date|total_price|status)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    admin_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session)
) -> Any:
    query = BookingQuery(
        page=page,
        per_page=per_page,
        status=booking_status,
        tour_id=tour_id,
        user_id=user_id,
        start_date_from=start_date_from,
        start_date_to=start_date_to,
        booking_number=booking_number,
        min_price=min_price,
        max_price=max_price,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    bookings, pagination = await booking_service.list_bookings(db, query)
    return PaginatedResponse(
        data=[BookingResponse.model_validate(b) for b in bookings],
        pagination=pagination
    )


@router.get("/bookings/stats", response_model=BookingStats)
async def booking_stats(
    start_date: Optional[date] = Query(None, description="Earliest booking start date"),
    end_date: Optional[date] = Query(None, description="Latest booking start date"),
    tour_id: Optional[UUID] = Query(None),
    user_id: Optional[UUID] = Query(None),
    admin_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session)
) -> Any:
    query = BookingStatsQuery(start_date=start_date, end_date=end_date, tour_id=tour_id, user_id=user_id)
    return await booking_service.booking_stats(db, query)


@router.post("/bookings/complete-elapsed")
async def complete_elapsed_bookings(
    admin_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session)
) -> Any:
    """
    Move confirmed bookings whose end date has passed to COMPLETED
    """
    completed = await booking_service.complete_elapsed_bookings(db, actor_id=admin_user.id)
    return {"completed": completed}


@router.patch("/bookings/{booking_id}/status", response_model=BookingResponse)
async def update_booking_status(
    booking_id: UUID,
    status_update: BookingStatusUpdate,
    admin_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session)
) -> Any:
    """
    Administrative status override. Any target is accepted, terminal statuses included;
    the actor, old and new status and reason are audited.
    """
    return await booking_service.update_booking_status(db, booking_id, status_update, admin_user.id)


@router.get("/payments", response_model=PaginatedResponse[PaymentResponse])
async def list_payments(
    page: int = Query(1, ge=1),
    per_page: int = Query(10, ge=1, le=100),
    payment_status: Optional[PaymentStatus] = Query(None, alias="status"),
    gateway: Optional[PaymentGatewayType] = Query(None),
    booking_id: Optional[UUID] = Query(None),
    user_id: Optional[UUID] = Query(None),
    admin_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session)
) -> Any:
    query = PaymentQuery(
        page=page,
        per_page=per_page,
        status=payment_status,
        gateway=gateway,
        booking_id=booking_id,
        user_id=user_id,
    )
    payments, pagination = await payment_service.list_payments(db, query)
    return PaginatedResponse(
        data=[PaymentResponse.model_validate(p) for p in payments],
        pagination=pagination
    )


@router.get("/payments/stats", response_model=PaymentStats)
async def payment_stats(
    user_id: Optional[UUID] = Query(None),
    admin_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session)
) -> Any:
    return await payment_service.payment_stats(db, user_id)
