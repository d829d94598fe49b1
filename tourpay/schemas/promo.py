"""
Promo code schemas
"""

from pydantic import Field, field_validator
from typing import Optional
from uuid import UUID
from decimal import Decimal

from tourpay.schemas.base import BaseSchema


class PromoValidateRequest(BaseSchema):
    code: str = Field(..., min_length=1, max_length=50)
    tour_id: Optional[UUID] = None
    total_amount: Decimal = Field(..., gt=0)

    @field_validator('code')
    @classmethod
    def normalize_code(cls, v):
        return v.strip().upper()


class PromoValidationResponse(BaseSchema):
    valid: bool
    message: Optional[str] = None
    discount_amount: Decimal = Decimal("0.00")
    code: Optional[str] = None
