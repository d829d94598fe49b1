"""
Payment model for gateway transactions
"""

from sqlalchemy import Column, String, Numeric, Enum, DateTime, ForeignKey, Text, JSON, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
import enum

from tourpay.models.base import BaseModel


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentGatewayType(str, enum.Enum):
    STRIPE = "stripe"
    CHAPA = "chapa"


class Payment(BaseModel):
    """
    One attempt to collect money for a booking through a single gateway.

    gateway_snapshot holds the typed view of the last gateway response,
    gateway_raw the verbatim payload kept for audit only.
    """
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("gateway", "external_ref", name="uq_payments_gateway_external_ref"),
    )

    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    booking_id = Column(UUID(as_uuid=True), ForeignKey("bookings.id"), index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    gateway = Column(Enum(PaymentGatewayType), nullable=False)
    external_ref = Column(String(255), nullable=False, index=True)
    status = Column(
        Enum(PaymentStatus),
        default=PaymentStatus.PENDING,
        nullable=False,
        index=True
    )
    failure_reason = Column(String(500))

    # Gateway payloads
    gateway_snapshot = Column(JSON)
    gateway_raw = Column(Text)

    # Timestamps
    processed_at = Column(DateTime(timezone=True))
    failed_at = Column(DateTime(timezone=True))
    refunded_at = Column(DateTime(timezone=True))

    # Refund details
    refund_amount = Column(Numeric(10, 2))
    refund_reason = Column(String(500))

    # Relationships
    user = relationship("User", back_populates="payments")
    booking = relationship("Booking", back_populates="payments")

    @property
    def snapshot(self):
        """Last gateway response as a StripeSnapshot or ChapaSnapshot"""
        from tourpay.schemas.gateway import snapshot_adapter

        if not self.gateway_snapshot:
            return None
        return snapshot_adapter.validate_python(self.gateway_snapshot)

    def __repr__(self):
        return (
            f"<Payment(id={self.id}, gateway={self.gateway}, ref={self.external_ref}, "
            f"amount={self.amount}, status={self.status})>"
        )
