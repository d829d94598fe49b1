"""
Payment gateway adapter interface

The Booking and Payment managers only ever talk to PaymentGateway; each
processor gets one adapter. Every outbound call is bounded by
GATEWAY_TIMEOUT_SECONDS and must never run inside an open database
transaction.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional
import asyncio
import logging

from tourpay.core.exceptions import GatewayTimeoutError
from tourpay.core.metrics import metrics_collector
from tourpay.models.payment import PaymentGatewayType
from tourpay.schemas.gateway import GatewayStatus, GatewaySnapshot, WebhookEvent

logger = logging.getLogger(__name__)


@dataclass
class Payer:
    """Who is paying; Chapa needs all of this, Stripe only the email"""
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None


@dataclass
class GatewayInitResult:
    external_ref: str
    snapshot: GatewaySnapshot
    raw: str
    client_secret: Optional[str] = None
    checkout_url: Optional[str] = None


@dataclass
class GatewayResult:
    status: GatewayStatus
    snapshot: GatewaySnapshot
    raw: str
    failure_reason: Optional[str] = None


@dataclass
class RefundResult:
    refund_id: Optional[str]
    status: str
    amount: Optional[Decimal] = None
    already_refunded: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


class PaymentGateway(ABC):
    """
    Adapter contract shared by all processors
    """

    gateway_type: PaymentGatewayType

    def __init__(self, timeout: float):
        self.timeout = timeout

    @abstractmethod
    async def initialize(
        self,
        amount: Decimal,
        currency: str,
        payer: Payer,
        metadata: Dict[str, str],
        return_url: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> GatewayInitResult:
        """Open a payment at the processor"""

    @abstractmethod
    async def confirm(self, external_ref: str) -> GatewayResult:
        """Fetch the processor's view after an embedded (client-side) payment"""

    @abstractmethod
    async def verify(self, external_ref: str) -> GatewayResult:
        """Fetch the processor's view after a hosted-checkout redirect"""

    @abstractmethod
    async def refund(self, external_ref: str, amount: Optional[Decimal] = None) -> RefundResult:
        """Refund a captured payment; repeating the call must be safe"""

    @abstractmethod
    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        """
        Authenticate and parse a webhook delivery.

        Raises SecurityError (401) on a bad or missing signature, SecurityError
        with status 400 on a malformed body and ConfigurationError when the
        webhook secret is not configured.
        """

    async def check(self, external_ref: str) -> GatewayResult:
        """confirm or verify, whichever this processor's flow uses"""
        return await self.confirm(external_ref)

    async def _bounded(self, operation: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Run one outbound call under the gateway time budget"""
        gateway = self.gateway_type.value
        async with metrics_collector.track_gateway_call(gateway, operation):
            try:
                return await asyncio.wait_for(call(), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.error(
                    "Gateway call timed out",
                    extra={"gateway": gateway, "operation": operation, "timeout": self.timeout}
                )
                raise GatewayTimeoutError(gateway, operation)


class GatewayRegistry:
    """Maps a gateway type to its adapter"""

    def __init__(self, gateways: Optional[Dict[PaymentGatewayType, PaymentGateway]] = None):
        self._gateways: Dict[PaymentGatewayType, PaymentGateway] = dict(gateways or {})

    def register(self, gateway: PaymentGateway):
        self._gateways[gateway.gateway_type] = gateway

    def get(self, gateway_type) -> PaymentGateway:
        gateway_type = PaymentGatewayType(gateway_type)
        try:
            return self._gateways[gateway_type]
        except KeyError:
            raise ValueError(f"No adapter registered for gateway {gateway_type.value}")

    def __contains__(self, gateway_type) -> bool:
        return PaymentGatewayType(gateway_type) in self._gateways


def get_header(headers: Mapping[str, str], *names: str) -> Optional[str]:
    """Case-insensitive lookup of the first present header"""
    lowered = {key.lower(): value for key, value in headers.items()}
    for name in names:
        value = lowered.get(name.lower())
        if value:
            return value
    return None
