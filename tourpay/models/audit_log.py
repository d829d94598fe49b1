"""
Audit log model
"""

from sqlalchemy import Column, String, JSON
from sqlalchemy.dialects.postgresql import UUID

from tourpay.models.base import BaseModel


class AuditLog(BaseModel):
    """
    Append-only record of a state transition or webhook verification outcome
    """
    __tablename__ = "audit_logs"

    action = Column(String(100), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), index=True)
    actor_id = Column(UUID(as_uuid=True), nullable=True)
    outcome = Column(String(20), default="success", nullable=False)
    old_value = Column(JSON)
    new_value = Column(JSON)
    details = Column(JSON)

    def __repr__(self):
        return f"<AuditLog(action={self.action}, entity={self.entity_type}:{self.entity_id}, outcome={self.outcome})>"
