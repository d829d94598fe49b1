"""
Payment endpoints
"""

from typing import Any, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from tourpay.config import settings
from tourpay.core.database import get_session
from tourpay.core.exceptions import ConfigurationError
from tourpay.core.security import get_current_user, require_admin, RateLimiter
from tourpay.models.payment import PaymentStatus
from tourpay.models.user import User
from tourpay.schemas.payment import (
    PaymentCreate,
    PaymentResponse,
    PaymentInitResponse,
    PaymentQuery,
    RefundRequest,
    StripeConfigResponse,
)
from tourpay.schemas.response import PaginatedResponse
from tourpay.services.payment_service import payment_service

router = APIRouter()

payment_rate_limit = RateLimiter("payments", settings.RATE_LIMIT_PAYMENT_PER_MINUTE)


@router.post("/", response_model=PaymentInitResponse, status_code=status.HTTP_201_CREATED)
async def create_payment(
    payment_data: PaymentCreate,
    current_user: User = Depends(payment_rate_limit),
    db: AsyncSession = Depends(get_session)
) -> Any:
    """
    Open a payment for a booking.

    Stripe returns a client secret for Stripe.js; Chapa returns a checkout URL
    to redirect the payer to.
    """
    initiation = await payment_service.create_payment(db, payment_data, current_user.id)
    return PaymentInitResponse(
        payment=PaymentResponse.model_validate(initiation.payment),
        client_secret=initiation.client_secret,
        checkout_url=initiation.checkout_url,
    )


@router.get("/stripe/config", response_model=StripeConfigResponse)
async def stripe_config(current_user: User = Depends(get_current_user)) -> Any:
    if not settings.STRIPE_PUBLISHABLE_KEY:
        raise ConfigurationError("STRIPE_PUBLISHABLE_KEY")
    return StripeConfigResponse(publishable_key=settings.STRIPE_PUBLISHABLE_KEY)


@router.get("/history", response_model=PaginatedResponse[PaymentResponse])
async def payment_history(
    page: int = Query(1, ge=1),
    per_page: int = Query(10, ge=1, le=100),
    payment_status: Optional[PaymentStatus] = Query(None, alias="status"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session)
) -> Any:
    query = PaymentQuery(page=page, per_page=per_page, status=payment_status, user_id=current_user.id)
    payments, pagination = await payment_service.list_payments(db, query)
    return PaginatedResponse(
        data=[PaymentResponse.model_validate(p) for p in payments],
        pagination=pagination
    )


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session)
) -> Any:
    owner_id = None if current_user.is_admin else current_user.id
    return await payment_service.get_payment(db, payment_id, owner_id)


@router.post("/{payment_id}/confirm", response_model=PaymentResponse)
async def confirm_payment(
    payment_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session)
) -> Any:
    """
    Ask the gateway for the payment's current status and apply it
    """
    return await payment_service.confirm_or_verify_payment(db, payment_id, current_user.id)


@router.post("/{payment_id}/refund", response_model=PaymentResponse)
async def refund_payment(
    payment_id: UUID,
    refund_request: RefundRequest,
    admin_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session)
) -> Any:
    return await payment_service.refund_payment(db, payment_id, refund_request, admin_user.id)
