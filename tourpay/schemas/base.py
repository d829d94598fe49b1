"""
Base Pydantic schemas
"""

from pydantic import BaseModel, ConfigDict
from datetime import datetime
from typing import Optional
from uuid import UUID


class BaseSchema(BaseModel):
    """Reads ORM rows directly; enums serialise as their plain values"""
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class RecordSchema(BaseSchema):
    """Identity and timestamps shared by every persisted aggregate"""
    id: UUID
    created_at: datetime
    updated_at: Optional[datetime] = None
