"""
Notification model
"""

from sqlalchemy import Column, String, ForeignKey, Enum, Text, DateTime, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
import enum

from tourpay.models.base import BaseModel


class NotificationType(str, enum.Enum):
    BOOKING_CONFIRMED = "booking_confirmed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REFUNDED = "payment_refunded"
    BOOKING_CANCELLED = "booking_cancelled"
    ADMIN_ALERT = "admin_alert"


class NotificationStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class Notification(BaseModel):
    """
    Outbox row for a user or admin message.

    Delivery is handled by a separate worker; user_id is null for admin alerts.
    """
    __tablename__ = "notifications"

    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True, index=True)
    type = Column(
        Enum(NotificationType),
        nullable=False,
        index=True
    )
    subject = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    payload = Column(JSON)
    status = Column(
        Enum(NotificationStatus),
        default=NotificationStatus.PENDING,
        nullable=False,
        index=True
    )
    sent_at = Column(DateTime(timezone=True))

    # Relationships
    user = relationship("User", back_populates="notifications")

    def __repr__(self):
        return f"<Notification(id={self.id}, user_id={self.user_id}, type={self.type}, status={self.status})>"
