"""
API endpoints module
"""

from . import admin, bookings, health, payments, webhooks

__all__ = [
    "admin",
    "bookings",
    "health",
    "payments",
    "webhooks"
]
