"""
Database models
"""

from tourpay.models.user import User, UserRole
from tourpay.models.tour import Tour, TourStatus
from tourpay.models.promo_code import PromoCode, DiscountType
from tourpay.models.booking import Booking, BookingStatus
from tourpay.models.payment import Payment, PaymentStatus, PaymentGatewayType
from tourpay.models.notification import Notification, NotificationType, NotificationStatus
from tourpay.models.audit_log import AuditLog

__all__ = [
    "User",
    "UserRole",
    "Tour",
    "TourStatus",
    "PromoCode",
    "DiscountType",
    "Booking",
    "BookingStatus",
    "Payment",
    "PaymentStatus",
    "PaymentGatewayType",
    "Notification",
    "NotificationType",
    "NotificationStatus",
    "AuditLog",
]
