"""
Booking model
"""

from sqlalchemy import Column, String, ForeignKey, Enum, Numeric, DateTime, Date, Integer, Text, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
import enum

from tourpay.models.base import BaseModel


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    REFUNDED = "refunded"


# Statuses that hold tour capacity
ACTIVE_BOOKING_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)


class Booking(BaseModel):
    """
    Tour reservation for a date range and party size
    """
    __tablename__ = "bookings"

    booking_number = Column(String(20), unique=True, nullable=False, index=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    tour_id = Column(UUID(as_uuid=True), ForeignKey("tours.id"), nullable=False, index=True)
    start_date = Column(Date, nullable=False, index=True)
    end_date = Column(Date, nullable=False)
    adults = Column(Integer, nullable=False)
    children = Column(Integer, default=0, nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)
    discount_amount = Column(Numeric(10, 2), default=0, nullable=False)
    promo_code = Column(String(50))
    participants = Column(JSON, default=list, nullable=False)
    notes = Column(Text)
    special_requests = Column(Text)
    status = Column(
        Enum(BookingStatus),
        default=BookingStatus.PENDING,
        nullable=False,
        index=True
    )
    cancellation_reason = Column(String(500))
    confirmed_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    refunded_at = Column(DateTime(timezone=True))

    # Bumped to lock the row for payment cascades
    lock_version = Column(Integer, default=0, nullable=False)

    # Relationships
    user = relationship("User", back_populates="bookings")
    tour = relationship("Tour", back_populates="bookings")
    payments = relationship("Payment", back_populates="booking")

    @property
    def party_size(self) -> int:
        return self.adults + self.children

    def __repr__(self):
        return f"<Booking(id={self.id}, number={self.booking_number}, status={self.status}, total={self.total_price})>"
