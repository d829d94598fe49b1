"""
Promo code model
"""

from sqlalchemy import Column, String, Integer, Numeric, Boolean, DateTime, Enum, Text
import enum

from tourpay.models.base import BaseModel


class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class PromoCode(BaseModel):
    """
    Promotional discount code.

    usage_count is only ever incremented by the conditional redeem update,
    never read-modify-written.
    """
    __tablename__ = "promo_codes"

    code = Column(String(50), unique=True, nullable=False, index=True)
    description = Column(Text)
    discount_type = Column(Enum(DiscountType), nullable=False)
    discount_value = Column(Numeric(10, 2), nullable=False)
    max_discount = Column(Numeric(10, 2))
    valid_from = Column(DateTime(timezone=True), nullable=False)
    valid_until = Column(DateTime(timezone=True), nullable=False)
    usage_limit = Column(Integer)
    usage_count = Column(Integer, default=0, nullable=False)
    min_order_amount = Column(Numeric(10, 2))
    applicable_to_tours = Column(Boolean, default=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    def __repr__(self):
        return f"<PromoCode(code={self.code}, type={self.discount_type}, value={self.discount_value})>"
