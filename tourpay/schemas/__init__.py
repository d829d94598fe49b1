"""
Pydantic schemas
"""

from tourpay.schemas.response import (
    ErrorResponse,
    PaginatedResponse,
    PaginationMeta,
)
from tourpay.schemas.booking import (
    ParticipantSchema,
    BookingCreate,
    BookingUpdate,
    BookingCancel,
    BookingStatusUpdate,
    BookingQuery,
    BookingStatsQuery,
    BookingResponse,
    BookingStats,
)
from tourpay.schemas.promo import PromoValidateRequest, PromoValidationResponse
from tourpay.schemas.payment import (
    PaymentCreate,
    PaymentResponse,
    PaymentInitResponse,
    RefundRequest,
    PaymentQuery,
    PaymentStats,
    StripeConfigResponse,
)
from tourpay.schemas.gateway import (
    GatewayStatus,
    StripeSnapshot,
    ChapaSnapshot,
    GatewaySnapshot,
    EventKind,
    WebhookEvent,
    WebhookAck,
)

__all__ = [
    "ErrorResponse",
    "PaginatedResponse",
    "PaginationMeta",
    "ParticipantSchema",
    "BookingCreate",
    "BookingUpdate",
    "BookingCancel",
    "BookingStatusUpdate",
    "BookingQuery",
    "BookingStatsQuery",
    "BookingResponse",
    "BookingStats",
    "PromoValidateRequest",
    "PromoValidationResponse",
    "PaymentCreate",
    "PaymentResponse",
    "PaymentInitResponse",
    "RefundRequest",
    "PaymentQuery",
    "PaymentStats",
    "StripeConfigResponse",
    "GatewayStatus",
    "StripeSnapshot",
    "ChapaSnapshot",
    "GatewaySnapshot",
    "EventKind",
    "WebhookEvent",
    "WebhookAck",
]
