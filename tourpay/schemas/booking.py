"""
Booking schemas
"""

from pydantic import EmailStr, Field, field_validator, model_validator
from typing import List, Optional, Dict, Literal
from uuid import UUID
from datetime import date, datetime, timezone
from decimal import Decimal

from tourpay.schemas.base import BaseSchema, RecordSchema
from tourpay.models.booking import BookingStatus
from tourpay.config import settings


def _today() -> date:
    return datetime.now(timezone.utc).date()


class ParticipantSchema(BaseSchema):
    """One traveller on a booking"""
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=30)
    age: Optional[int] = Field(None, ge=0)
    passport_number: Optional[str] = Field(None, max_length=50)
    nationality: Optional[str] = Field(None, max_length=100)
    dietary_requirements: Optional[str] = Field(None, max_length=500)
    medical_conditions: Optional[str] = Field(None, max_length=500)


class BookingCreate(BaseSchema):
    """
    Booking creation request.

    discount_amount is accepted for client compatibility but never trusted;
    the discount is always recomputed from the promo code.
    """
    tour_id: UUID
    start_date: date
    end_date: date
    adults: int = Field(..., ge=1, le=settings.MAX_PARTICIPANTS_PER_TYPE)
    children: int = Field(0, ge=0, le=settings.MAX_PARTICIPANTS_PER_TYPE)
    total_price: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    discount_amount: Optional[Decimal] = Field(None, ge=0)
    promo_code: Optional[str] = Field(None, max_length=50)
    participants: List[ParticipantSchema] = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=1000)
    special_requests: Optional[str] = Field(None, max_length=1000)

    @field_validator('promo_code')
    @classmethod
    def normalize_promo_code(cls, v):
        if v is None:
            return v
        v = v.strip().upper()
        return v or None

    @model_validator(mode='after')
    def validate_booking(self):
        if self.end_date <= self.start_date:
            raise ValueError('End date must be after start date')
        if self.start_date <= _today():
            raise ValueError('Start date must be in the future')
        if len(self.participants) < self.adults:
            raise ValueError('Number of participants must match or exceed number of adults')
        return self


class BookingUpdate(BaseSchema):
    """Partial booking update; only PENDING bookings accept it"""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    adults: Optional[int] = Field(None, ge=1, le=settings.MAX_PARTICIPANTS_PER_TYPE)
    children: Optional[int] = Field(None, ge=0, le=settings.MAX_PARTICIPANTS_PER_TYPE)
    participants: Optional[List[ParticipantSchema]] = None
    notes: Optional[str] = Field(None, max_length=1000)
    special_requests: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode='after')
    def validate_dates(self):
        if self.start_date and self.end_date and self.end_date <= self.start_date:
            raise ValueError('End date must be after start date')
        if self.start_date and self.start_date <= _today():
            raise ValueError('Start date must be in the future')
        return self


class BookingCancel(BaseSchema):
    reason: str = Field(..., min_length=10, max_length=500)
    request_refund: bool = True


class BookingStatusUpdate(BaseSchema):
    """Admin status override"""
    status: BookingStatus
    reason: Optional[str] = Field(None, max_length=500)


class BookingQuery(BaseSchema):
    """Filters, sorting and pagination for booking listings"""
    page: int = Field(1, ge=1)
    per_page: int = Field(10, ge=1, le=100)
    sort_by: Literal["created_at", "start_date", "total_price", "status"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"
    status: Optional[BookingStatus] = None
    tour_id: Optional[UUID] = None
    user_id: Optional[UUID] = None
    start_date_from: Optional[date] = None
    start_date_to: Optional[date] = None
    min_price: Optional[Decimal] = None
    max_price: Optional[Decimal] = None
    booking_number: Optional[str] = None
    search: Optional[str] = None


class BookingStatsQuery(BaseSchema):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    tour_id: Optional[UUID] = None
    user_id: Optional[UUID] = None


class BookingResponse(RecordSchema):
    """Booking response schema"""
    booking_number: str
    user_id: UUID
    tour_id: UUID
    start_date: date
    end_date: date
    adults: int
    children: int
    total_price: Decimal
    discount_amount: Decimal
    promo_code: Optional[str] = None
    participants: List[ParticipantSchema] = []
    notes: Optional[str] = None
    special_requests: Optional[str] = None
    status: BookingStatus
    cancellation_reason: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class BookingStats(BaseSchema):
    total_bookings: int
    by_status: Dict[str, int]
    total_participants: int
    total_revenue: Decimal
    total_discount: Decimal
