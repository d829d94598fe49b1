"""
Audit sink

Every booking and payment transition and every webhook verification
outcome is written to audit_logs and echoed to the structured log.
"""

from typing import Any, Dict, Optional
from uuid import UUID
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from tourpay.core.database import db_manager
from tourpay.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "value"):
        return value.value
    return str(value)


class AuditService:

    def record(
        self,
        session: AsyncSession,
        action: str,
        entity_type: str,
        entity_id: Any = None,
        actor_id: Optional[UUID] = None,
        outcome: str = "success",
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        """
        Add an audit row to the caller's open transaction, so it commits or
        rolls back together with the change it describes.
        """
        entry = AuditLog(
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            actor_id=actor_id,
            outcome=outcome,
            old_value=_jsonable(old_value),
            new_value=_jsonable(new_value),
            details=_jsonable(details),
        )
        session.add(entry)

        log = logger.warning if outcome != "success" else logger.info
        log(
            action,
            extra={
                "audit_action": action,
                "entity_type": entity_type,
                "entity_id": entry.entity_id,
                "actor_id": str(actor_id) if actor_id else None,
                "outcome": outcome,
                "old_value": entry.old_value,
                "new_value": entry.new_value,
                "details": entry.details,
            }
        )
        return entry

    async def record_standalone(self, action: str, entity_type: str, **kwargs) -> None:
        """
        Audit in a transaction of its own, for outcomes with no other write
        (rejected webhooks, unknown references).
        Failure to persist is logged and does not change the caller's outcome.
        """
        try:
            async with db_manager.atomic_transaction() as session:
                self.record(session, action, entity_type, **kwargs)
        except Exception:
            logger.exception(f"Failed to persist audit record {action}")


audit_service = AuditService()
