"""
Booking and payment lifecycle rules

Both aggregates move only along the edges declared here. Webhooks and
client confirmations can arrive duplicated or out of order, so callers
treat a disallowed edge as a no-op rather than an error.
"""

from typing import Dict, FrozenSet, Optional, Union
import logging

from tourpay.models.booking import BookingStatus
from tourpay.models.payment import PaymentStatus

logger = logging.getLogger(__name__)


BOOKING_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({
        BookingStatus.CANCELLED,
        BookingStatus.COMPLETED,
        BookingStatus.REFUNDED,
    }),
    BookingStatus.COMPLETED: frozenset({BookingStatus.REFUNDED}),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.REFUNDED: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
    }),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

TERMINAL_BOOKING_STATUSES = frozenset(
    status for status, targets in BOOKING_TRANSITIONS.items() if not targets
)
TERMINAL_PAYMENT_STATUSES = frozenset(
    status for status, targets in PAYMENT_TRANSITIONS.items() if not targets
)

Status = Union[BookingStatus, PaymentStatus]


def can_transition_booking(current: BookingStatus, target: BookingStatus) -> bool:
    return BookingStatus(target) in BOOKING_TRANSITIONS[BookingStatus(current)]


def can_transition_payment(current: PaymentStatus, target: PaymentStatus) -> bool:
    return PaymentStatus(target) in PAYMENT_TRANSITIONS[PaymentStatus(current)]


def next_booking_status(
    current: BookingStatus,
    target: BookingStatus,
    admin_override: bool = False
) -> Optional[BookingStatus]:
    """
    Resolve a requested booking transition.

    Returns the new status, or None when the edge is not allowed and the
    booking must stay as it is. An admin override accepts any target.
    """
    current, target = BookingStatus(current), BookingStatus(target)
    if admin_override or target in BOOKING_TRANSITIONS[current]:
        return target
    logger.debug(f"Ignored booking transition {current.value} -> {target.value}")
    return None


def next_payment_status(current: PaymentStatus, target: PaymentStatus) -> Optional[PaymentStatus]:
    """
    Resolve a requested payment transition; None means no-op.
    """
    current, target = PaymentStatus(current), PaymentStatus(target)
    if target in PAYMENT_TRANSITIONS[current]:
        return target
    logger.debug(f"Ignored payment transition {current.value} -> {target.value}")
    return None
