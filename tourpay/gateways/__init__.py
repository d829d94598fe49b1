"""
Payment gateway adapters
"""

from tourpay.config import settings
from tourpay.gateways.base import (
    PaymentGateway,
    GatewayRegistry,
    Payer,
    GatewayInitResult,
    GatewayResult,
    RefundResult,
)
from tourpay.gateways.stripe_gateway import StripeGateway
from tourpay.gateways.chapa_gateway import ChapaGateway


def build_registry() -> GatewayRegistry:
    """Registry with one adapter per configured processor"""
    return GatewayRegistry({
        StripeGateway.gateway_type: StripeGateway(
            secret_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            tolerance=settings.STRIPE_WEBHOOK_TOLERANCE,
        ),
        ChapaGateway.gateway_type: ChapaGateway(
            secret_key=settings.CHAPA_SECRET_KEY,
            webhook_secret=settings.CHAPA_WEBHOOK_SECRET,
            base_url=settings.CHAPA_BASE_URL,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            checkout_title=settings.APP_NAME,
        ),
    })


gateway_registry = build_registry()

__all__ = [
    "PaymentGateway",
    "GatewayRegistry",
    "Payer",
    "GatewayInitResult",
    "GatewayResult",
    "RefundResult",
    "StripeGateway",
    "ChapaGateway",
    "build_registry",
    "gateway_registry",
]
