"""
Prometheus metrics and component health checks for the booking and payment flow
"""

import time
import logging
from typing import Dict, Any
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from prometheus_client import Counter, Histogram, REGISTRY
from sqlalchemy import text

logger = logging.getLogger(__name__)


def _counter(name: str, documentation: str, labels: list) -> Counter:
    # Re-imports under test reuse the already registered collector
    try:
        return Counter(name, documentation, labels)
    except ValueError:
        return REGISTRY._names_to_collectors[name]


def _histogram(name: str, documentation: str, labels: list) -> Histogram:
    try:
        return Histogram(name, documentation, labels)
    except ValueError:
        return REGISTRY._names_to_collectors[name]


BOOKING_OPERATIONS = _counter(
    "tourpay_booking_operations_total",
    "Booking operations by outcome",
    ["operation", "outcome"]
)
STATUS_TRANSITIONS = _counter(
    "tourpay_status_transitions_total",
    "Applied booking and payment status transitions",
    ["aggregate", "from_status", "to_status"]
)
WEBHOOK_EVENTS = _counter(
    "tourpay_webhook_events_total",
    "Webhook deliveries by gateway and outcome",
    ["gateway", "outcome"]
)
GATEWAY_CALL_DURATION = _histogram(
    "tourpay_gateway_call_duration_seconds",
    "Outbound gateway call duration",
    ["gateway", "operation"]
)


class MetricsCollector:
    """Thin recording facade over the Prometheus collectors"""

    @asynccontextmanager
    async def track_booking_operation(self, operation: str):
        """Count a booking operation as success or failure and log slow ones"""
        start_time = time.time()
        try:
            yield
        except Exception as e:
            BOOKING_OPERATIONS.labels(operation=operation, outcome="failure").inc()
            logger.info(f"{operation} failed: {type(e).__name__}")
            raise
        else:
            BOOKING_OPERATIONS.labels(operation=operation, outcome="success").inc()
        finally:
            duration = time.time() - start_time
            if duration > 5.0:
                logger.warning(f"Slow {operation} operation: {duration:.2f}s")

    @asynccontextmanager
    async def track_gateway_call(self, gateway: str, operation: str):
        start_time = time.time()
        try:
            yield
        finally:
            GATEWAY_CALL_DURATION.labels(gateway=gateway, operation=operation).observe(
                time.time() - start_time
            )

    def record_transition(self, aggregate: str, from_status: str, to_status: str):
        STATUS_TRANSITIONS.labels(
            aggregate=aggregate, from_status=from_status, to_status=to_status
        ).inc()

    def record_webhook(self, gateway: str, outcome: str):
        WEBHOOK_EVENTS.labels(gateway=gateway, outcome=outcome).inc()


class HealthChecker:
    """Health checking for the service's backing stores"""

    def __init__(self, redis_manager, db_manager):
        self.redis_manager = redis_manager
        self.db_manager = db_manager

    async def check_redis_health(self) -> Dict[str, Any]:
        try:
            start_time = time.time()
            client = await self.redis_manager.get_client()
            await client.ping()
            return {
                "status": "healthy",
                "response_time_ms": (time.time() - start_time) * 1000,
                "error": None
            }
        except Exception as e:
            return {"status": "unhealthy", "response_time_ms": None, "error": str(e)}

    async def check_database_health(self) -> Dict[str, Any]:
        try:
            start_time = time.time()
            async with self.db_manager.session_factory() as session:
                await session.execute(text("SELECT 1"))
            return {
                "status": "healthy",
                "response_time_ms": (time.time() - start_time) * 1000,
                "error": None
            }
        except Exception as e:
            return {"status": "unhealthy", "response_time_ms": None, "error": str(e)}

    async def get_system_health(self) -> Dict[str, Any]:
        """
        Overall status: healthy, degraded when only Redis is down (rate limits
        fail open), unhealthy when the database is down.
        """
        redis_health = await self.check_redis_health()
        db_health = await self.check_database_health()

        if db_health["status"] != "healthy":
            overall_status = "unhealthy"
        elif redis_health["status"] != "healthy":
            overall_status = "degraded"
        else:
            overall_status = "healthy"

        return {
            "status": overall_status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {
                "redis": redis_health,
                "database": db_health
            }
        }


# Global instances
metrics_collector = MetricsCollector()
