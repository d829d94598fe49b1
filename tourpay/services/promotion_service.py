"""
Promotion evaluator
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from uuid import UUID
import logging

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from tourpay.core.exceptions import ValidationError
from tourpay.models.promo_code import PromoCode, DiscountType

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


@dataclass
class PromoValidationResult:
    valid: bool
    message: Optional[str] = None
    discount_amount: Decimal = Decimal("0.00")
    promo_code: Optional[PromoCode] = None


def normalize_code(code: str) -> str:
    return code.strip().upper()


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; stored values are UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def compute_discount(promo: PromoCode, total_amount: Decimal) -> Decimal:
    """Discount in currency units, quantised to cents"""
    total_amount = Decimal(total_amount)
    if promo.discount_type == DiscountType.PERCENTAGE:
        discount = total_amount * Decimal(promo.discount_value) / Decimal(100)
        if promo.max_discount is not None and discount > Decimal(promo.max_discount):
            discount = Decimal(promo.max_discount)
    else:
        discount = Decimal(promo.discount_value)
    return discount.quantize(CENTS, rounding=ROUND_HALF_UP)


class PromotionService:
    """Validates codes and redeems them exactly once per booking"""

    async def validate(
        self,
        session: AsyncSession,
        code: str,
        tour_id: Optional[UUID],
        total_amount: Decimal,
        now: Optional[datetime] = None,
    ) -> PromoValidationResult:
        """
        Check a code against a prospective order.

        Checks run in a fixed order and stop at the first failure. Usage is
        not consumed here; see redeem.
        """
        now = now or datetime.now(timezone.utc)
        result = await session.execute(
            select(PromoCode).where(PromoCode.code == normalize_code(code))
        )
        promo = result.scalar_one_or_none()

        if not promo:
            return PromoValidationResult(valid=False, message="Invalid promo code")

        if not promo.is_active:
            return PromoValidationResult(valid=False, message="Promo code is no longer active")

        if now < _aware(promo.valid_from) or now > _aware(promo.valid_until):
            return PromoValidationResult(valid=False, message="Promo code has expired or is not yet valid")

        if promo.usage_limit is not None and promo.usage_count >= promo.usage_limit:
            return PromoValidationResult(valid=False, message="Promo code usage limit reached")

        if promo.min_order_amount is not None and Decimal(total_amount) < Decimal(promo.min_order_amount):
            return PromoValidationResult(
                valid=False,
                message=f"Minimum order amount of {Decimal(promo.min_order_amount).quantize(CENTS)} required"
            )

        if tour_id and not promo.applicable_to_tours:
            return PromoValidationResult(valid=False, message="Promo code not applicable to tours")

        return PromoValidationResult(
            valid=True,
            discount_amount=compute_discount(promo, total_amount),
            promo_code=promo,
        )

    async def redeem(self, session: AsyncSession, code: str) -> None:
        """
        Consume one use of a code inside the caller's transaction.

        The increment is a single conditional UPDATE, so concurrent
        redemptions can never push usage_count past usage_limit.
        """
        result = await session.execute(
            update(PromoCode)
            .where(
                PromoCode.code == normalize_code(code),
                PromoCode.is_active.is_(True),
                or_(
                    PromoCode.usage_limit.is_(None),
                    PromoCode.usage_count < PromoCode.usage_limit,
                ),
            )
            .values(usage_count=PromoCode.usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(f"Promo code {normalize_code(code)} could not be redeemed")
            raise ValidationError("Promo code usage limit reached", field="promo_code")


promotion_service = PromotionService()
