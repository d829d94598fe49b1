"""
Custom application exceptions
"""

from typing import Optional, Dict, Any


class TourPayException(Exception):
    """Base exception for TourPay application"""

    def __init__(
        self,
        message: str,
        code: str,
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(TourPayException):
    """Resource not found errors"""

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with id {identifier} not found"
        super().__init__(
            message=message,
            code="NOT_FOUND",
            status_code=404,
            details={"resource": resource}
        )


class ValidationError(TourPayException):
    """Validation errors: bad dates, capacity exceeded, invalid promo"""

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict] = None):
        details = dict(details or {})
        if field:
            details["field"] = field
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            status_code=400,
            details=details
        )


class ForbiddenError(TourPayException):
    """Ownership or role mismatch"""

    def __init__(self, message: str = "Not authorized", details: Optional[Dict] = None):
        super().__init__(
            message=message,
            code="FORBIDDEN",
            status_code=403,
            details=details
        )


class ConflictError(TourPayException):
    """Resource conflict errors"""

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(
            message=message,
            code="CONFLICT",
            status_code=409,
            details=details
        )


class GatewayError(TourPayException):
    """External payment processor failure"""

    def __init__(self, gateway: str, message: str, status_code: int = 502, code: str = "GATEWAY_ERROR"):
        super().__init__(
            message=f"{gateway} error: {message}",
            code=code,
            status_code=status_code,
            details={"gateway": gateway, "processor_message": message}
        )
        self.gateway = gateway
        self.processor_message = message


class GatewayTimeoutError(GatewayError):
    """Outbound gateway call exceeded its time budget"""

    def __init__(self, gateway: str, operation: str):
        super().__init__(
            gateway,
            f"{operation} timed out",
            status_code=504,
            code="GATEWAY_TIMEOUT"
        )
        self.operation = operation


class SecurityError(TourPayException):
    """Webhook authenticity failure. The caller only ever sees the generic message."""

    def __init__(self, reason: str, status_code: int = 401):
        super().__init__(
            message="Webhook verification failed",
            code="SECURITY_ERROR",
            status_code=status_code
        )
        self.reason = reason


class ConfigurationError(TourPayException):
    """Missing or invalid server-side configuration"""

    def __init__(self, setting: str):
        super().__init__(
            message="Server configuration error",
            code="CONFIGURATION_ERROR",
            status_code=500,
            details={"setting": setting}
        )
        self.setting = setting



class RateLimitError(TourPayException):
    """Rate limit exceeded error"""

    def __init__(self, limit: int, window: int):
        super().__init__(
            message=f"Rate limit exceeded. Max {limit} requests per {window} seconds",
            code="RATE_LIMIT_EXCEEDED",
            status_code=429,
            details={"limit": limit, "window": window}
        )
        self.headers = {
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(window)
        }
