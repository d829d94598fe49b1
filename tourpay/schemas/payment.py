"""
Payment schemas for request/response models
"""

from typing import Optional, Dict, Any
from datetime import datetime
from decimal import Decimal
from pydantic import EmailStr, Field, field_validator
import uuid

from tourpay.schemas.base import BaseSchema, RecordSchema
from tourpay.models.payment import PaymentStatus, PaymentGatewayType


class PaymentCreate(BaseSchema):
    """
    Payment initialisation request.

    Chapa's hosted checkout needs the payer's email and name; Stripe only
    needs the amount.
    """
    booking_id: uuid.UUID
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    currency: str = Field("USD", pattern=r"^[A-Za-z]{3}$")
    gateway: PaymentGatewayType = PaymentGatewayType.STRIPE
    email: Optional[EmailStr] = None
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    phone_number: Optional[str] = Field(None, max_length=30)
    return_url: Optional[str] = None
    callback_url: Optional[str] = None
    metadata: Dict[str, str] = {}

    @field_validator('currency')
    @classmethod
    def upper_currency(cls, v):
        return v.upper()


class PaymentResponse(RecordSchema):
    user_id: uuid.UUID
    booking_id: Optional[uuid.UUID] = None
    amount: Decimal
    currency: str
    gateway: PaymentGatewayType
    external_ref: str
    status: PaymentStatus
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    refund_amount: Optional[Decimal] = None
    refund_reason: Optional[str] = None


class PaymentInitResponse(BaseSchema):
    """Created payment plus what the client needs to finish paying"""
    payment: PaymentResponse
    client_secret: Optional[str] = None
    checkout_url: Optional[str] = None


class RefundRequest(BaseSchema):
    """Admin refund; amount defaults to the full paid amount"""
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=10, decimal_places=2)
    reason: Optional[str] = Field(None, max_length=500)


class PaymentQuery(BaseSchema):
    page: int = Field(1, ge=1)
    per_page: int = Field(10, ge=1, le=100)
    status: Optional[PaymentStatus] = None
    gateway: Optional[PaymentGatewayType] = None
    booking_id: Optional[uuid.UUID] = None
    user_id: Optional[uuid.UUID] = None


class PaymentStats(BaseSchema):
    total_payments: int
    by_status: Dict[str, int]
    by_gateway: Dict[str, int]
    total_collected: Decimal
    total_refunded: Decimal


class StripeConfigResponse(BaseSchema):
    publishable_key: str
