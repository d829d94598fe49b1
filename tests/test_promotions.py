"""
Promo code evaluation and redemption
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4
import pytest

from tourpay.core.database import db_manager
from tourpay.core.exceptions import ValidationError
from tourpay.models import PromoCode, DiscountType
from tourpay.services.promotion_service import compute_discount, normalize_code, promotion_service

from tests.factories import create_promo, load


def _promo(**kwargs) -> PromoCode:
    values = dict(discount_type=DiscountType.PERCENTAGE, discount_value=Decimal("10"), max_discount=None)
    values.update(kwargs)
    return PromoCode(**values)


class TestComputeDiscount:

    def test_percentage_clamped_to_max_discount(self):
        promo = _promo(max_discount=Decimal("50"))
        assert compute_discount(promo, Decimal("1000")) == Decimal("50.00")

    def test_percentage_below_cap(self):
        promo = _promo(max_discount=Decimal("50"))
        assert compute_discount(promo, Decimal("300")) == Decimal("30.00")

    def test_fixed_amount(self):
        promo = _promo(discount_type=DiscountType.FIXED, discount_value=Decimal("25"))
        assert compute_discount(promo, Decimal("300")) == Decimal("25.00")

    def test_rounds_half_up_to_cents(self):
        promo = _promo(discount_value=Decimal("12.5"))
        assert compute_discount(promo, Decimal("0.99")) == Decimal("0.12")
        assert compute_discount(promo, Decimal("1.00")) == Decimal("0.13")

    def test_normalize_code(self):
        assert normalize_code("  summer10 ") == "SUMMER10"


class TestValidate:

    @pytest.mark.asyncio
    async def test_valid_code(self, db_session):
        await create_promo(max_discount=Decimal("50"))
        async with db_manager.transaction(db_session):
            result = await promotion_service.validate(db_session, "summer10", uuid4(), Decimal("1000"))
        assert result.valid
        assert result.discount_amount == Decimal("50.00")
        assert result.promo_code.code == "SUMMER10"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides,message", [
        ({"is_active": False}, "Promo code is no longer active"),
        ({"valid_until": datetime.now(timezone.utc) - timedelta(hours=1)}, "Promo code has expired or is not yet valid"),
        ({"valid_from": datetime.now(timezone.utc) + timedelta(days=1)}, "Promo code has expired or is not yet valid"),
        ({"usage_limit": 3, "usage_count": 3}, "Promo code usage limit reached"),
        ({"min_order_amount": Decimal("800")}, "Minimum order amount of 800.00 required"),
        ({"applicable_to_tours": False}, "Promo code not applicable to tours"),
    ])
    async def test_rejections(self, db_session, overrides, message):
        await create_promo(**overrides)
        async with db_manager.transaction(db_session):
            result = await promotion_service.validate(db_session, "SUMMER10", uuid4(), Decimal("500"))
        assert not result.valid
        assert result.message == message
        assert result.discount_amount == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_unknown_code(self, db_session):
        async with db_manager.transaction(db_session):
            result = await promotion_service.validate(db_session, "NOPE", uuid4(), Decimal("500"))
        assert not result.valid
        assert result.message == "Invalid promo code"

    @pytest.mark.asyncio
    async def test_inactive_reported_before_expiry(self, db_session):
        await create_promo(is_active=False, valid_until=datetime.now(timezone.utc) - timedelta(days=1))
        async with db_manager.transaction(db_session):
            result = await promotion_service.validate(db_session, "SUMMER10", uuid4(), Decimal("500"))
        assert result.message == "Promo code is no longer active"


class TestRedeem:

    @pytest.mark.asyncio
    async def test_redeem_increments_usage(self, db_session):
        promo = await create_promo(usage_limit=2)
        async with db_manager.transaction(db_session):
            await promotion_service.redeem(db_session, "summer10")
        assert (await load(PromoCode, promo.id)).usage_count == 1

    @pytest.mark.asyncio
    async def test_redeem_never_exceeds_limit(self, db_session):
        promo = await create_promo(usage_limit=1)
        async with db_manager.transaction(db_session):
            await promotion_service.redeem(db_session, "SUMMER10")

        with pytest.raises(ValidationError, match="usage limit reached"):
            async with db_manager.transaction(db_session):
                await promotion_service.redeem(db_session, "SUMMER10")

        assert (await load(PromoCode, promo.id)).usage_count == 1
