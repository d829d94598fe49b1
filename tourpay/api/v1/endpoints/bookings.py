"""
Booking endpoints
"""

from typing import Any, Optional
from datetime import date
from decimal import Decimal
from uuid import UUID
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from tourpay.config import settings
from tourpay.core.database import get_session, db_manager
from tourpay.core.security import get_current_user, RateLimiter
from tourpay.models.booking import BookingStatus
from tourpay.models.user import User
from tourpay.schemas.booking import (
    BookingCreate,
    BookingUpdate,
    BookingCancel,
    BookingQuery,
    BookingResponse,
)
from tourpay.schemas.promo import PromoValidateRequest, PromoValidationResponse
from tourpay.schemas.response import PaginatedResponse
from tourpay.services.booking_service import booking_service
from tourpay.services.promotion_service import promotion_service

router = APIRouter()

booking_rate_limit = RateLimiter("bookings", settings.RATE_LIMIT_BOOKING_PER_MINUTE)


@router.post("/", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking_data: BookingCreate,
    current_user: User = Depends(booking_rate_limit),
    db: AsyncSession = Depends(get_session)
) -> Any:
    """
    Reserve tour capacity for a date range. The booking starts PENDING until paid.
    """
    return await booking_service.create_booking(db, booking_data, current_user.id)


@router.get("/", response_model=PaginatedResponse[BookingResponse])
async def list_my_bookings(
    page: int = Query(1, ge=1),
    per_page: int = Query(10, ge=1, le=100),
    booking_status: Optional[BookingStatus] = Query(None, alias="status"),
    sort_by: str = Query("created_at", pattern="^(created_at|start_date|total_price|status)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session)
) -> Any:
    query = BookingQuery(
        page=page,
        per_page=per_page,
        status=booking_status,
        sort_by=sort_by,
        sort_order=sort_order,
        user_id=current_user.id,
    )
    bookings, pagination = await booking_service.list_bookings(db, query)
    return PaginatedResponse(
        data=[BookingResponse.model_validate(b) for b in bookings],
        pagination=pagination
    )


@router.post("/promo/validate", response_model=PromoValidationResponse)
async def validate_promo_code(
    request: PromoValidateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session)
) -> Any:
    """
    Preview a promo code against an order total without consuming it
    """
    async with db_manager.transaction(db):
        result = await promotion_service.validate(db, request.code, request.tour_id, request.total_amount)
    return PromoValidationResponse(
        valid=result.valid,
        message=result.message,
        discount_amount=result.discount_amount,
        code=result.promo_code.code if result.promo_code else None,
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session)
) -> Any:
    owner_id = None if current_user.is_admin else current_user.id
    return await booking_service.get_booking(db, booking_id, owner_id)


@router.patch("/{booking_id}", response_model=BookingResponse)
async def update_booking(
    booking_id: UUID,
    booking_data: BookingUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session)
) -> Any:
    return await booking_service.update_booking(db, booking_id, booking_data, current_user.id)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: UUID,
    cancel_data: BookingCancel,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session)
) -> Any:
    """
    Cancel a pending or confirmed booking. Refunds are handled separately by an admin.
    """
    return await booking_service.cancel_booking(db, booking_id, cancel_data, current_user.id)
